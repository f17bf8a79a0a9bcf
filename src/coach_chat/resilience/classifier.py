"""Map send failures onto a FailureReason and a retry decision."""

from __future__ import annotations

from dataclasses import dataclass

from coach_chat.errors import ClientError, ServerError, TransportError
from coach_chat.types import FailureReason


@dataclass(frozen=True)
class Classification:
    reason: FailureReason
    retryable: bool


class ErrorClassifier:
    """Classify exceptions from a turn.

    Retryable: network errors, timeouts, HTTP 5xx and 429.
    Not retryable: other 4xx (including authentication) and anything
    unrecognized.
    """

    def classify(self, error: BaseException) -> Classification:
        if isinstance(error, TransportError):
            if error.timeout:
                return Classification(FailureReason.TIMEOUT, True)
            return Classification(FailureReason.NETWORK_ERROR, True)
        if isinstance(error, ServerError):
            if error.status_code == 429:
                return Classification(FailureReason.RATE_LIMIT, True)
            return Classification(FailureReason.SERVER_ERROR, True)
        if isinstance(error, ClientError):
            if error.authentication:
                return Classification(FailureReason.AUTHENTICATION, False)
            return Classification(FailureReason.CLIENT_ERROR, False)
        return Classification(FailureReason.UNKNOWN, False)
