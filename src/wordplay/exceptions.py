"""Error taxonomy for the progress core and sync."""


class WordPlayError(Exception):
    """Base exception for WordPlay."""
    pass


class ValidationError(WordPlayError):
    """Raised when a record or query argument is out of range and cannot be clamped."""
    pass


class CorruptStateError(WordPlayError):
    """Raised when a locally persisted collection cannot be parsed.

    The store recovers by falling back to an empty collection.
    """

    def __init__(self, key: str, reason: str):
        super().__init__(f"Corrupt local collection '{key}': {reason}")
        self.key = key
        self.reason = reason


class MalformedSnapshotError(WordPlayError):
    """Raised when a remote or imported snapshot document cannot be decoded."""
    pass


class SyncError(WordPlayError):
    """Raised for transient sync failures (network, remote storage)."""
    pass


class AuthExpiredError(SyncError):
    """Raised when the remote storage session is no longer authorized."""
    pass


class SyncInProgressError(SyncError):
    """Raised when a sync is requested while another one is running."""
    pass
