"""Exception types shared across the ingestion pipeline."""


class MirrorError(Exception):
    """Base class for commit-mirror errors."""


class ConfigurationError(MirrorError):
    """Raised when required settings are missing at startup.

    This is the only fatal error class: everything else in the ingestion
    path is counted and logged instead of propagated.
    """


class InvalidCommitError(MirrorError):
    """Raised when a source commit payload cannot be normalized."""


class InvalidEventError(MirrorError):
    """Raised when an inbound push event cannot be decoded."""


class DuplicateRecordError(MirrorError):
    """Raised by a record store when the record already exists.

    Batch writers count this as a skip, not an error.
    """
