"""commit-mirror: mirror source-control commits into an external record store.

Provides:
- Configuration management with environment overrides
- GitHub (source) and Notion (record store) connectors
- Dedup cache, batch writer and sync coordinator
- Webhook receiver and FastAPI app

Python Version: 3.10+ required
"""

# Configure logging before other imports so module loggers inherit it
from .logging_config import StructuredFormatter, configure_logging

configure_logging()

from .__version__ import __version__
from .batch_writer import BatchWriter
from .config import MirrorConfig, get_config, reset_config
from .coordinator import SyncCoordinator
from .dedup_cache import DedupCache
from .errors import (
    ConfigurationError,
    DuplicateRecordError,
    InvalidCommitError,
    InvalidEventError,
    MirrorError,
)
from .models import (
    BatchResult,
    Capability,
    CommitRecord,
    KnownState,
    RepoSyncResult,
    StoredCommit,
    SyncMode,
    SyncStats,
    truncate_message,
)
from .receiver import Ack, EventReceiver
from .service import MirrorService
from .timing import timed_operation

__all__ = [
    "__version__",
    # Configuration
    "MirrorConfig",
    "get_config",
    "reset_config",
    # Logging
    "StructuredFormatter",
    "configure_logging",
    "timed_operation",
    # Errors
    "ConfigurationError",
    "DuplicateRecordError",
    "InvalidCommitError",
    "InvalidEventError",
    "MirrorError",
    # Models
    "BatchResult",
    "Capability",
    "CommitRecord",
    "KnownState",
    "RepoSyncResult",
    "StoredCommit",
    "SyncMode",
    "SyncStats",
    "truncate_message",
    # Pipeline
    "Ack",
    "BatchWriter",
    "DedupCache",
    "EventReceiver",
    "MirrorService",
    "SyncCoordinator",
]
