"""Retry policy for failed list chunks."""

import enum

from customs_sync.config import Settings
from customs_sync.customs_gateway.client import GatewayError

_CHANNEL_TIMEOUT_MARKERS = (
    "истекло время ожидания канала",
    "время ожидания",
    "channel timeout",
    "sendtimeout",
)


class FailureClass(str, enum.Enum):
    TIMEOUT = "timeout"
    CHANNEL_TIMEOUT = "channel_timeout"
    SERVER_ERROR = "server_error"
    NETWORK = "network"
    PERMANENT = "permanent"

    @property
    def retryable(self) -> bool:
        return self is not FailureClass.PERMANENT


def classify_failure(error: GatewayError) -> FailureClass:
    if error.kind == "timeout":
        return FailureClass.TIMEOUT
    if error.kind == "network":
        return FailureClass.NETWORK
    if error.http_status == 500:
        return FailureClass.SERVER_ERROR
    if error.http_status == 400:
        body = (error.body or error.message or "").lower()
        if any(marker in body for marker in _CHANNEL_TIMEOUT_MARKERS):
            return FailureClass.CHANNEL_TIMEOUT
    return FailureClass.PERMANENT


def backoff_seconds(failure: FailureClass, settings: Settings) -> float:
    ms = {
        FailureClass.TIMEOUT: settings.retry_backoff_default_ms,
        FailureClass.SERVER_ERROR: settings.retry_backoff_server_error_ms,
        FailureClass.NETWORK: settings.retry_backoff_network_ms,
        FailureClass.CHANNEL_TIMEOUT: settings.retry_backoff_channel_timeout_ms,
    }.get(failure, settings.retry_backoff_default_ms)
    return ms / 1000
