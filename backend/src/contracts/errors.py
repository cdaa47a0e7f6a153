from __future__ import annotations


class AlertError(Exception):
    """Base class for every error raised by the check-and-notify pipeline."""


class AuthorizationError(AlertError):
    """The trigger credential is missing or does not match the shared secret."""


class SourceFetchError(AlertError):
    """The inventory source was unreachable or returned a malformed payload."""


class StorageError(AlertError):
    """The persistence layer failed or rejected a write."""


class DataIntegrityError(AlertError):
    """An item or filter failed the identity allow-list check."""


class DeliveryError(AlertError):
    """A push delivery to a single subscription failed."""

    def __init__(self, endpoint: str, message: str, status_code: int | None = None) -> None:
        self.endpoint = endpoint
        self.status_code = status_code
        super().__init__(f"{message} ({endpoint[:60]})")


class TransientDeliveryError(DeliveryError):
    """Delivery failed for a reason that may clear up on a later cycle."""


class PermanentDeliveryError(DeliveryError):
    """The endpoint is gone, unknown, or no longer accepts our credentials."""
