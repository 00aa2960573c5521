"""Delivery primitives: backoff, channel senders, claims, audit and the message dispatcher."""
