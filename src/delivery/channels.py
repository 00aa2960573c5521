"""Channel sender capability and its per-channel implementations.

Dispatch code never branches on the channel tag: it asks a
``ChannelRegistry`` for the sender registered for a message's channel and
calls it through ``ChannelRegistry.send``, which bounds every call with a
timeout and turns sender exceptions into failed ``SendOutcome`` values.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

import httpx

from config import settings
from errors import DeliveryError, codes
from models import MessageChannel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboundPayload:
    """Rendered content ready for a channel sender."""

    reference: str
    clinic_id: int
    patient_id: int
    channel: MessageChannel
    to_address: str | None
    body: str
    subject: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SendOutcome:
    """Result of one send attempt."""

    success: bool
    external_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    retryable: bool = True

    @classmethod
    def sent(cls, external_id: str | None = None) -> "SendOutcome":
        return cls(success=True, external_id=external_id)

    @classmethod
    def failed(cls, code: str, message: str, *, retryable: bool = True) -> "SendOutcome":
        return cls(success=False, error_code=code, error_message=message, retryable=retryable)


class ChannelSender(Protocol):
    """Capability that hands one payload to an external channel."""

    def send(self, payload: OutboundPayload, *, timeout: float) -> SendOutcome:
        """Deliver ``payload`` within ``timeout`` seconds."""
        ...


class InAppChannelSender:
    """In-app notifications are recorded locally and need no gateway."""

    def send(self, payload: OutboundPayload, *, timeout: float) -> SendOutcome:
        return SendOutcome.sent(external_id=f"in_app:{payload.reference}")


class HttpGatewayChannelSender:
    """Relay payloads to an HTTP gateway that owns the carrier integration."""

    def __init__(
        self,
        channel: MessageChannel,
        *,
        base_url: str,
        token: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._channel = channel
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._transport = transport

    def send(self, payload: OutboundPayload, *, timeout: float) -> SendOutcome:
        if not payload.to_address:
            return SendOutcome.failed(
                codes.NO_RECIPIENT,
                f"No {self._channel.value} address for patient {payload.patient_id}",
                retryable=False,
            )
        headers = {"Idempotency-Key": payload.reference}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        body = {
            "reference": payload.reference,
            "channel": self._channel.value,
            "to": payload.to_address,
            "subject": payload.subject,
            "body": payload.body,
            "metadata": dict(payload.metadata),
        }
        with httpx.Client(timeout=timeout, transport=self._transport) as client:
            response = client.post(
                f"{self._base_url}/{self._channel.value.lower()}",
                json=body,
                headers=headers,
            )
        if response.status_code >= 500 or response.status_code == 429:
            raise DeliveryError(
                f"Gateway returned {response.status_code}",
                retryable=True,
            )
        if response.status_code >= 400:
            raise DeliveryError(
                f"Gateway rejected message: {response.status_code} {response.text[:200]}",
                retryable=False,
            )
        data = response.json() if response.content else {}
        return SendOutcome.sent(external_id=data.get("id") or data.get("message_id"))


class ChannelRegistry:
    """Per-channel sender lookup with a bounded call timeout."""

    def __init__(
        self,
        senders: Mapping[MessageChannel, ChannelSender],
        *,
        timeout_seconds: float | None = None,
        max_workers: int = 4,
    ) -> None:
        self._senders = dict(senders)
        self._timeout = float(
            timeout_seconds
            if timeout_seconds is not None
            else settings.delivery.send_timeout_seconds
        )
        self._max_workers = max_workers
        self._executor: ThreadPoolExecutor | None = None

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    def sender_for(self, channel: MessageChannel) -> ChannelSender | None:
        return self._senders.get(MessageChannel(channel))

    def send(self, payload: OutboundPayload) -> SendOutcome:
        """Send through the channel's sender, never raising for delivery failures."""
        sender = self.sender_for(payload.channel)
        if sender is None:
            return SendOutcome.failed(
                codes.NO_SENDER,
                f"No sender registered for channel {payload.channel.value}",
                retryable=False,
            )
        future = self._get_executor().submit(sender.send, payload, timeout=self._timeout)
        try:
            # Small grace period so senders honoring the timeout report it themselves.
            return future.result(timeout=self._timeout + 1.0)
        except (FutureTimeoutError, httpx.TimeoutException):
            future.cancel()
            return SendOutcome.failed(
                codes.DELIVERY_TIMEOUT,
                f"{payload.channel.value} send timed out after {self._timeout:g}s",
            )
        except httpx.HTTPError as exc:
            return SendOutcome.failed(codes.DELIVERY_FAILED, f"Gateway error: {exc}")
        except DeliveryError as exc:
            return SendOutcome.failed(exc.code, exc.message, retryable=exc.retryable)
        except Exception as exc:
            logger.exception(
                "Channel sender raised unexpectedly: channel=%s reference=%s",
                payload.channel.value,
                payload.reference,
            )
            return SendOutcome.failed(codes.DELIVERY_FAILED, str(exc) or type(exc).__name__)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_workers,
                thread_name_prefix="channel-send",
            )
        return self._executor


def build_default_registry() -> ChannelRegistry:
    """Build the registry used by batch jobs from channel settings."""
    senders: dict[MessageChannel, ChannelSender] = {
        MessageChannel.IN_APP: InAppChannelSender(),
    }
    gateway_url = settings.channels.gateway_url
    if gateway_url:
        for channel in (MessageChannel.SMS, MessageChannel.EMAIL, MessageChannel.PUSH):
            senders[channel] = HttpGatewayChannelSender(
                channel,
                base_url=gateway_url,
                token=settings.channels.gateway_token,
            )
    else:
        logger.warning("No channel gateway configured; only IN_APP delivery is available")
    return ChannelRegistry(senders)


def attempt_reference(prefix: str, entity_id: object, attempt: int) -> str:
    """Build the idempotency reference for one attempt of one entity.

    A reclaimed stale claim repeats the attempt number, so the gateway sees the
    same reference and can drop the duplicate.
    """
    return f"{prefix}:{entity_id}:{attempt}"


def patient_address(patient: Any, channel: MessageChannel) -> str | None:
    """Return the patient's contact address for ``channel``, if any.

    IN_APP needs no address; PUSH is routed by the gateway using the phone number.
    """
    if channel == MessageChannel.IN_APP:
        return None
    if patient is None:
        return None
    if channel == MessageChannel.EMAIL:
        return patient.email or None
    return patient.phone or None
