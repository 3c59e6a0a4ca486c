"""Core constants for dotkeep.

This module defines constants used throughout the application:
- Data root layout (directory and file names)
- Lock staleness threshold
- Backup bucket naming and retention defaults
"""

from datetime import timedelta

# ============================================================================
# Data Root Layout
# ============================================================================

#: Environment variable overriding the data root location
DATA_ROOT_ENV_VAR = "DOTKEEP_HOME"

#: Default data root, relative to the user's home directory
DEFAULT_DATA_DIR_NAME = ".dotkeep"

#: Lock record file name inside the data root
LOCK_FILE_NAME = ".lock"

#: Backup buckets directory inside the data root
BACKUPS_DIR_NAME = "backups"

#: Content store directory inside the data root
FILES_DIR_NAME = "files"

#: Registry file name inside the data root
REGISTRY_FILE_NAME = "registry.json"

# ============================================================================
# Lock
# ============================================================================

#: Single authoritative staleness threshold for lock records. A record older
#: than this is stale even if its owner process is still running.
LOCK_STALE_AFTER = timedelta(hours=1)

#: Environment variable overriding LOCK_STALE_AFTER (in seconds)
LOCK_STALE_ENV_VAR = "DOTKEEP_LOCK_STALE_SECONDS"

#: An unreadable record younger than this is assumed to be mid-write by a
#: competing process rather than corrupt.
LOCK_WRITE_GRACE_SECONDS = 2.0

#: Attempts at the exclusive create when the record vanishes between the
#: failed create and the ownership read.
LOCK_CREATE_ATTEMPTS = 3

# ============================================================================
# Backups
# ============================================================================

#: strftime format of backup bucket directory names (sortable, filesystem-safe)
BACKUP_TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"

#: Default retention: delete buckets older than this
DEFAULT_BACKUP_MAX_AGE = timedelta(days=30)

#: Default retention: always keep this many newest buckets
DEFAULT_BACKUP_KEEP_LAST = 5

# ============================================================================
# Registry
# ============================================================================

#: Schema version written into the registry file
REGISTRY_SCHEMA_VERSION = "1.0"

#: Supported platform identifiers for managed files
PLATFORMS: tuple[str, ...] = ("darwin", "linux", "windows")
