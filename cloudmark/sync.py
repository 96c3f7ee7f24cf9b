"""
Safe restore from a remote snapshot.

A sync always takes a safety snapshot of the current local data before
anything is downloaded, and replaces the local dataset with one atomic
write only after the download succeeded. A failure at any earlier step
leaves local data untouched.

State machine::

    IDLE -> SAFETY_BACKUP -> DOWNLOADING -> APPLYING -> IDLE
      any state -> FAILED -> IDLE
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from cloudmark.backup import BackupOrchestrator, BackupReason
from cloudmark.errors import ConfigError
from cloudmark.storage import LocalStore
from cloudmark.timestamps import timestamp_from_filename
from cloudmark.utils import now_ms, utc_now_iso

logger = logging.getLogger(__name__)


class SyncState(Enum):
    IDLE = "idle"
    SAFETY_BACKUP = "safety_backup"
    DOWNLOADING = "downloading"
    APPLYING = "applying"
    FAILED = "failed"


class SyncStatus(Enum):
    SYNCED = "synced"
    RESTORED = "restored"
    ALREADY_SYNCING = "already_syncing"


@dataclass
class SyncOutcome:
    status: SyncStatus
    file_name: str
    synced_at: Optional[str] = None
    safety_snapshot: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'file_name': self.file_name,
            'synced_at': self.synced_at,
            'safety_snapshot': self.safety_snapshot,
        }


def build_restored_dataset(payload: Any, file_name: str) -> Dict[str, Any]:
    """
    Turn a downloaded payload into the replacement local dataset.

    ``lastModified`` comes from the filename timestamp, then ``payload.ts``,
    then the dataset's own ``lastModified``, then now.
    """
    payload = payload if isinstance(payload, dict) else {}
    data = payload.get("data")
    candidate = dict(data) if isinstance(data, dict) else {}

    candidate["syncedFrom"] = file_name
    candidate["syncedAt"] = utc_now_iso()
    candidate["lastModified"] = int(
        timestamp_from_filename(file_name)
        or payload.get("ts")
        or candidate.get("lastModified")
        or now_ms()
    )
    return candidate


Observer = Callable[[], Any]


class SyncExecutor:
    """
    Runs safe restores, one at a time.

    A second request while a restore is running is answered with
    ``SyncStatus.ALREADY_SYNCING`` instead of an error.
    """

    def __init__(self, store: LocalStore, orchestrator: BackupOrchestrator, client_factory,
                 observers: Optional[List[Observer]] = None):
        self.store = store
        self.orchestrator = orchestrator
        self.client_factory = client_factory
        self.observers: List[Observer] = list(observers or [])
        self._state = SyncState.IDLE
        self.transitions: List[SyncState] = []
        self.last_error: Optional[Exception] = None

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_busy(self) -> bool:
        return self._state is not SyncState.IDLE

    def add_observer(self, observer: Observer):
        self.observers.append(observer)

    def _enter(self, state: SyncState):
        self._state = state
        self.transitions.append(state)

    async def sync_from(self, file_name: str) -> SyncOutcome:
        """
        Replace local data with a remote snapshot, keeping a safety copy.

        Raises:
            ConfigError: WebDAV is not configured
            DavError: Safety backup or download failed (local data untouched)
        """
        if self.is_busy:
            logger.info(f"Sync already in progress, ignoring request for {file_name}")
            return SyncOutcome(status=SyncStatus.ALREADY_SYNCING, file_name=file_name)

        settings = self.store.read_settings()
        if not settings.is_configured():
            raise ConfigError("WebDAV is not configured")

        self.transitions = []
        self.last_error = None
        try:
            self._enter(SyncState.SAFETY_BACKUP)
            safety = await self.orchestrator.backup(BackupReason.PRE_SYNC_SAFETY)
            logger.info(f"Safety snapshot {safety.name} taken, syncing from {file_name}")

            self._enter(SyncState.DOWNLOADING)
            async with self.client_factory(settings) as client:
                payload = await client.download(file_name)

            self._enter(SyncState.APPLYING)
            candidate = build_restored_dataset(payload, file_name)
            self.store.write_data(candidate)
            logger.info(f"Local data replaced from {file_name}")
        except Exception as e:
            self._enter(SyncState.FAILED)
            self.last_error = e
            logger.error(f"Sync from {file_name} failed: {e}")
            raise
        finally:
            self._enter(SyncState.IDLE)

        await self._notify_observers()
        return SyncOutcome(
            status=SyncStatus.SYNCED,
            file_name=file_name,
            synced_at=candidate["syncedAt"],
            safety_snapshot=safety.name,
        )

    async def restore(self, file_name: str) -> SyncOutcome:
        """
        Plain restore: write the snapshot's data as-is, no safety copy.

        Raises:
            DavError: Download failed (local data untouched)
        """
        if self.is_busy:
            return SyncOutcome(status=SyncStatus.ALREADY_SYNCING, file_name=file_name)

        settings = self.store.read_settings()
        if not settings.is_configured():
            raise ConfigError("WebDAV is not configured")

        self.transitions = []
        try:
            self._enter(SyncState.DOWNLOADING)
            async with self.client_factory(settings) as client:
                payload = await client.download(file_name)
            self._enter(SyncState.APPLYING)
            data = payload.get("data") if isinstance(payload, dict) else None
            self.store.write_data(data if isinstance(data, dict) else {})
        except Exception as e:
            self._enter(SyncState.FAILED)
            self.last_error = e
            raise
        finally:
            self._enter(SyncState.IDLE)

        await self._notify_observers()
        return SyncOutcome(status=SyncStatus.RESTORED, file_name=file_name)

    async def _notify_observers(self):
        for observer in list(self.observers):
            try:
                result = observer()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning(f"Data-changed observer failed: {e}")
