"""Version information for commit-mirror.

Single source of truth for version number.
Follows PEP 440 and semantic versioning principles.
"""

__version__ = "1.2.0"
__version_info__ = tuple(int(part) for part in __version__.split("."))

# Version history:
# 1.2.0 - Identifier-only backfill mode, /api/commits endpoint
# 1.1.0 - Incremental sync from stored cursor, race guard before writes
# 1.0.0 - Initial release (webhook + fixed-window backfill)
