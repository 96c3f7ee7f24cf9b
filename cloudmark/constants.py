"""
Constants for cloudmark.

These constants are used by various modules for sensible defaults.
Several are also available via the config system.
"""

# Snapshot files
SNAPSHOT_EXTENSION = ".json"
PAYLOAD_VERSION = 1
DEFAULT_CLIENT_IDENTIFIER = "CLOUDMARK"

# Filename prefixes, one per backup reason
PREFIX_SCHEDULE = "snapshot_schedule"
PREFIX_USER = "snapshot_user"
PREFIX_HANDLE = "snapshot_handle"
PREFIX_SYNC_BACKUP = "sync_backup"

# Retention
DEFAULT_MAX_SNAPSHOTS = 100
DEFAULT_FREQUENCY_HOURS = 4

# Conflict detection deadband (ms)
NEWER_DATA_THRESHOLD_MS = 2000

# Local data with no lastModified is treated as 2020-01-01T00:00:00Z
DEFAULT_LOCAL_TIMESTAMP_MS = 1577836800000

# Scheduling
DEBOUNCE_KEY = "backup"
DEBOUNCE_DELAY_MS = 4000
PERIODIC_TIMER_NAME = "cloudmark:auto-backup"
MIN_PERIOD_MINUTES = 15
WARMUP_SECONDS = 60

# Validation cache
VALIDATION_CACHE_TTL_SECONDS = 30 * 60
VALIDATION_CACHE_CAPACITY = 100
VALIDATION_CACHE_GC_THRESHOLD = 0.8
VALIDATION_CACHE_GC_TARGET = 0.7

# WebDAV
PROBE_FILE_PREFIX = ".cloudmark_probe_"
RELAY_PATH = "/api/webdav"
RELAY_METHOD_HEADER = "X-Dav-Method"
RELAY_OVERRIDE_METHODS = frozenset({"PROPFIND"})
RELAY_FORWARD_HEADERS = (
    "authorization",
    "content-type",
    "depth",
    "destination",
    "overwrite",
    "if-modified-since",
    "if-none-match",
    "if-match",
    "range",
)
