"""Error taxonomy for secret synchronization.

Every error carries a ``kind`` that ends up in the sync report, and a
``retryable`` flag the orchestrator consults before trying again.
"""
from typing import Optional


class SyncError(Exception):
    """Base class for failures scoped to one environment or one secret."""

    kind = "sync"
    retryable = False

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class KeyResolutionError(SyncError):
    """Environment public key could not be fetched (missing env, auth, transport)."""

    kind = "key_resolution"


class ResolutionError(SyncError):
    """Secret value lookup found zero or several candidates, or produced nothing."""

    kind = "resolution"


class TransportError(SyncError):
    """Provider or API call failed at the network/HTTP level."""

    kind = "transport"
    retryable = True


class EncodingError(SyncError):
    """Key material is malformed."""

    kind = "encoding"


class PublishError(SyncError):
    """Remote store rejected the upload. Retried once after a key refresh."""

    kind = "publish"
    retryable = True


class StaleKeyError(PublishError):
    """Remote store no longer accepts the key id the value was sealed under."""

    kind = "stale_key"
