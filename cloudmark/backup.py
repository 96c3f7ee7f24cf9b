"""
Snapshot backups.

A backup sanitizes the local dataset, uploads it under a name that embeds
the client identifier, the reason prefix and the dataset's lastModified
timestamp, then trims this client's snapshots down to the retention quota.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from cloudmark.config import Settings
from cloudmark.constants import (
    PAYLOAD_VERSION,
    PREFIX_HANDLE,
    PREFIX_SCHEDULE,
    PREFIX_SYNC_BACKUP,
    PREFIX_USER,
)
from cloudmark.errors import CloudmarkError, ConfigError
from cloudmark.storage import LocalStore, is_data_empty
from cloudmark.timestamps import build_snapshot_name, timestamp_from_filename
from cloudmark.utils import deep_copy, now_ms

logger = logging.getLogger(__name__)

# Fields that never leave the machine
LOCAL_ONLY_FIELDS = ("settings", "history")
INLINE_ICON_FIELD = "iconDataUrl"


class BackupReason(Enum):
    """Why a backup was taken; decides the filename prefix."""
    SCHEDULED = "scheduled"
    USER = "user"
    MUTATION = "mutation-triggered"
    PRE_SYNC_SAFETY = "pre-sync-safety"

    @property
    def prefix(self) -> str:
        return _PREFIXES[self]

    @property
    def label(self) -> str:
        return _LABELS[self]

    @classmethod
    def parse(cls, value: Any) -> "BackupReason":
        """Accept enum members, current values and legacy source names."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        if text in _LEGACY_NAMES:
            return _LEGACY_NAMES[text]
        return cls(text)


_PREFIXES = {
    BackupReason.SCHEDULED: PREFIX_SCHEDULE,
    BackupReason.USER: PREFIX_USER,
    BackupReason.MUTATION: PREFIX_HANDLE,
    BackupReason.PRE_SYNC_SAFETY: PREFIX_SYNC_BACKUP,
}

_LABELS = {
    BackupReason.SCHEDULED: "Scheduled",
    BackupReason.USER: "Manual",
    BackupReason.MUTATION: "Automatic",
    BackupReason.PRE_SYNC_SAFETY: "Safety",
}

_LEGACY_NAMES = {
    "alarm": BackupReason.SCHEDULED,
    "manual": BackupReason.USER,
    "auto": BackupReason.MUTATION,
    "sync_backup": BackupReason.PRE_SYNC_SAFETY,
}

# Unconfigured WebDAV is not an error for these
BACKGROUND_REASONS = frozenset({BackupReason.SCHEDULED, BackupReason.MUTATION})


@dataclass
class BackupResult:
    """Outcome of a backup call."""
    reason: BackupReason
    name: Optional[str] = None
    uploaded: bool = False
    skipped: Optional[str] = None  # "not_configured" or "empty"
    deleted: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'reason': self.reason.value,
            'name': self.name,
            'uploaded': self.uploaded,
            'skipped': self.skipped,
            'deleted': list(self.deleted),
        }


def _strip_icons(folders: Any):
    if not isinstance(folders, list):
        return
    for folder in folders:
        if not isinstance(folder, dict):
            continue
        for bookmark in folder.get("bookmarks") or []:
            if isinstance(bookmark, dict):
                bookmark.pop(INLINE_ICON_FIELD, None)
        _strip_icons(folder.get("children"))
        _strip_icons(folder.get("subfolders"))


def sanitize_dataset(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Copy of the dataset without settings, legacy history or inline icons.

    The input is left untouched.
    """
    clean = deep_copy(data) if isinstance(data, dict) else {}
    for key in LOCAL_ONLY_FIELDS:
        clean.pop(key, None)
    _strip_icons(clean.get("folders"))
    return clean


def build_payload(data: Optional[Dict[str, Any]], ts: int) -> Dict[str, Any]:
    """Wrap a dataset in the snapshot payload envelope."""
    return {'version': PAYLOAD_VERSION, 'ts': ts, 'data': sanitize_dataset(data)}


Notifier = Callable[[str, str], None]
ClientFactory = Callable[[Settings], Any]


class BackupOrchestrator:
    """
    Takes snapshot backups of the local store.

    Args:
        store: Local dataset and settings
        client_factory: Builds an async-context-managed WebDAV client for
            the current settings
        notifier: Optional ``notifier(title, message)`` for user-visible
            success/failure messages
    """

    def __init__(self, store: LocalStore, client_factory: ClientFactory,
                 notifier: Optional[Notifier] = None):
        self.store = store
        self.client_factory = client_factory
        self.notifier = notifier

    async def backup(self, reason: Any = BackupReason.USER) -> BackupResult:
        """
        Back up the current dataset.

        Args:
            reason: A ``BackupReason`` (or its value / legacy name)

        Returns:
            BackupResult; ``skipped`` is set when nothing was uploaded

        Raises:
            ConfigError: WebDAV unconfigured for a user or safety backup
            DavError: Upload failed
        """
        reason = BackupReason.parse(reason)
        data, settings = self.store.read_all()

        try:
            result = await self._run(data, settings, reason)
        except Exception as e:
            logger.warning(f"{reason.label} backup failed: {e}")
            self._notify(reason, "cloudmark backup failed", str(e))
            raise

        if result.uploaded:
            logger.info(f"Backup complete: {result.name} ({reason.value})")
            self._notify(reason, "cloudmark backup succeeded", f"{reason.label} backup complete")
        return result

    async def _run(self, data: Dict[str, Any], settings: Settings,
                   reason: BackupReason) -> BackupResult:
        if not settings.is_configured():
            if reason in BACKGROUND_REASONS:
                logger.debug(f"WebDAV not configured, skipping {reason.value} backup")
                return BackupResult(reason=reason, skipped="not_configured")
            raise ConfigError("WebDAV is not configured")

        # Never let an empty dataset push populated history out of retention
        if reason is not BackupReason.PRE_SYNC_SAFETY and is_data_empty(data):
            logger.info("Dataset is empty, skipping backup to protect remote history")
            return BackupResult(reason=reason, skipped="empty")

        client_id = settings.client_identifier
        ts = int(data.get("lastModified") or now_ms()) if isinstance(data, dict) else now_ms()
        name = build_snapshot_name(client_id, reason.prefix, ts)
        payload = build_payload(data, ts)

        async with self.client_factory(settings) as client:
            await client.upload(name, payload)
            deleted = await self.rotate(client, client_id, settings.backup.max_snapshots)

        return BackupResult(reason=reason, name=name, uploaded=True, deleted=deleted)

    async def rotate(self, client, client_id: str, max_snapshots: int) -> List[str]:
        """
        Delete this client's oldest snapshots beyond the quota.

        Deletion failures are logged and skipped.

        Returns:
            Names that were deleted
        """
        limit = max(1, int(max_snapshots))
        files = await client.list()
        own = [f for f in files if f.name.startswith(f"{client_id}_")]
        if len(own) <= limit:
            return []

        # Server mtimes often have one-second resolution; the name breaks ties
        own.sort(key=lambda f: (f.lastmod, timestamp_from_filename(f.name) or 0, f.name))
        deleted = []
        for f in own[:len(own) - limit]:
            try:
                await client.remove(f.name)
                deleted.append(f.name)
            except CloudmarkError as e:
                logger.warning(f"Could not delete old snapshot {f.name}: {e}")
        if deleted:
            logger.info(f"Rotated out {len(deleted)} old snapshot(s)")
        return deleted

    def _notify(self, reason: BackupReason, title: str, message: str):
        if self.notifier is None or reason is BackupReason.PRE_SYNC_SAFETY:
            return
        try:
            self.notifier(title, message)
        except Exception as e:
            logger.debug(f"Notification failed: {e}")
