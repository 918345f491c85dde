"""Error taxonomy for webhook ingestion and processing.

Permanent errors are acknowledged and recorded on the raw webhook row;
transient errors leave the queue message in place for redelivery.
"""


class WebhookError(Exception):
    """Base class for webhook pipeline errors."""


class SignatureVerificationError(WebhookError):
    """Missing, malformed or mismatched webhook signature (rejected with 401)."""


class RoutingError(WebhookError):
    """Payload cannot be mapped to a known user/device; acknowledged and dropped."""

    def __init__(self, reason: str, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message or reason)


class PermanentProcessingError(WebhookError):
    """Retrying cannot succeed; acknowledge the message and record the error."""


class InvalidUserIdError(PermanentProcessingError):
    """User id is not a well-formed identifier."""


class UserNotFoundError(PermanentProcessingError):
    """No local user matches the provider-supplied user id."""


class UnknownDataStructureError(PermanentProcessingError):
    """The payload's data_structure has no canonical category."""


class NoDataExtractedError(PermanentProcessingError):
    """A recognized structure carried no usable data."""


class MalformedMessageError(PermanentProcessingError):
    """Queue message body or payload cannot be decoded."""


class TransientProcessingError(WebhookError):
    """Temporary failure (network, storage); the message must be redelivered."""
