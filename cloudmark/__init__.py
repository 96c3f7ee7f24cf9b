"""
cloudmark - WebDAV backup and sync for a local bookmark dataset.

Snapshots of the dataset are uploaded to a WebDAV collection under names
that embed the client identifier, the backup reason and the dataset's
modification time. A newer remote snapshot can be restored safely: the
current data is backed up first and replaced only after the download
succeeds.

Example Usage:
    >>> from cloudmark import CloudService, LocalStore
    >>> service = CloudService(LocalStore("~/.cloudmark"))
    >>> await service.backup("user")
    >>> await service.check_remote()
"""

__version__ = "1.0.0"
__author__ = "cloudmark Contributors"

# Configuration
from cloudmark.config import CloudmarkConfig, Settings, get_config, init_config

# Storage
from cloudmark.storage import LocalStore, is_data_empty

# Transport
from cloudmark.validation_cache import ValidationCache
from cloudmark.webdav import SnapshotFile, WebDAVClient

# Backup and sync
from cloudmark.backup import BackupOrchestrator, BackupReason
from cloudmark.conflict import ConflictDetector
from cloudmark.sync import SyncExecutor, SyncState
from cloudmark.scheduler import ScheduleController
from cloudmark.service import CloudService, ServiceResponse

# Errors
from cloudmark.errors import (
    AuthError,
    CloudmarkError,
    ConfigError,
    NetworkError,
    ParseError,
    ProtocolError,
)

__all__ = [
    # Config
    "CloudmarkConfig",
    "Settings",
    "get_config",
    "init_config",
    # Storage
    "LocalStore",
    "is_data_empty",
    # Transport
    "ValidationCache",
    "SnapshotFile",
    "WebDAVClient",
    # Backup and sync
    "BackupOrchestrator",
    "BackupReason",
    "ConflictDetector",
    "SyncExecutor",
    "SyncState",
    "ScheduleController",
    "CloudService",
    "ServiceResponse",
    # Errors
    "CloudmarkError",
    "ConfigError",
    "AuthError",
    "NetworkError",
    "ProtocolError",
    "ParseError",
]
