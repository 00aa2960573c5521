"""Machine-readable error code constants."""

# Validation
VALIDATION_ERROR = "VALIDATION_ERROR"

# Lookup
NOT_FOUND = "NOT_FOUND"

# State machine
INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"

# Campaign activation preconditions, checked in this order
INVALID_STATUS = "INVALID_STATUS"
NO_STEPS = "NO_STEPS"
NO_SEND_STEP = "NO_SEND_STEP"
NO_SCHEDULE = "NO_SCHEDULE"
NO_TRIGGER_EVENT = "NO_TRIGGER_EVENT"

# Trigger endpoints
UNAUTHORIZED = "UNAUTHORIZED"

# Delivery
DELIVERY_FAILED = "DELIVERY_FAILED"
DELIVERY_TIMEOUT = "DELIVERY_TIMEOUT"
NO_RECIPIENT = "NO_RECIPIENT"
NO_SENDER = "NO_SENDER"
PERMANENTLY_FAILED = "PERMANENTLY_FAILED"

# Internal
INTERNAL_ERROR = "INTERNAL_ERROR"
