"""
Remote freshness check.

Compares the newest remote snapshot against the local dataset. Only the
timestamp embedded in the filename is trusted; server modification times
vary with server clocks and upload delays.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from cloudmark.config import Settings
from cloudmark.constants import NEWER_DATA_THRESHOLD_MS
from cloudmark.errors import ParseError
from cloudmark.storage import local_timestamp
from cloudmark.timestamps import is_safety_snapshot, timestamp_from_filename
from cloudmark.webdav import SnapshotFile

logger = logging.getLogger(__name__)


@dataclass
class CheckResult:
    """Result of a remote freshness check."""
    has_newer_data: bool
    applicable: bool = True
    file: Optional[SnapshotFile] = None
    local_time: Optional[int] = None
    remote_time: Optional[int] = None
    diff_seconds: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'has_newer_data': self.has_newer_data,
            'applicable': self.applicable,
            'file': self.file.to_dict() if self.file else None,
            'local_time': self.local_time,
            'remote_time': self.remote_time,
            'diff_seconds': self.diff_seconds,
            'error': self.error,
        }


def select_latest(files: List[SnapshotFile]) -> Tuple[Optional[SnapshotFile], Optional[int]]:
    """
    Pick the newest non-safety snapshot by filename timestamp.

    Files whose names cannot be decoded rank below every decodable one;
    server mtime only breaks ties.

    Returns:
        (file, decoded timestamp), or (None, None) when nothing qualifies
    """
    candidates = [f for f in files if not is_safety_snapshot(f.name)]
    if not candidates:
        return None, None
    ranked = [(timestamp_from_filename(f.name), f) for f in candidates]
    ts, latest = max(ranked, key=lambda item: (item[0] is not None, item[0] or 0, item[1].lastmod))
    return latest, ts


class ConflictDetector:
    """
    Decides whether the remote holds data newer than the local dataset.

    Args:
        client_factory: Builds an async-context-managed WebDAV client
        threshold_ms: Deadband; the remote must be newer by more than this
    """

    def __init__(self, client_factory, threshold_ms: int = NEWER_DATA_THRESHOLD_MS):
        self.client_factory = client_factory
        self.threshold_ms = threshold_ms

    async def check_for_newer_remote(self, local_dataset: Optional[Dict[str, Any]],
                                     settings: Settings) -> CheckResult:
        if not settings.is_configured():
            logger.debug("WebDAV not configured, skipping remote check")
            return CheckResult(has_newer_data=False, applicable=False)

        async with self.client_factory(settings) as client:
            files = await client.list()

        latest, remote_time = select_latest(files)
        if latest is None:
            logger.info("No remote data snapshots found")
            return CheckResult(has_newer_data=False)

        local_time = local_timestamp(local_dataset)
        if remote_time is None:
            error = ParseError(f"Cannot decode timestamp from filename: {latest.name}")
            logger.warning(str(error))
            return CheckResult(has_newer_data=False, file=latest, local_time=local_time,
                               error=str(error))

        diff = remote_time - local_time
        has_newer = diff > self.threshold_ms
        logger.info(
            f"Remote check: {latest.name} remote={remote_time} local={local_time} "
            f"diff={diff}ms newer={has_newer}"
        )
        return CheckResult(
            has_newer_data=has_newer,
            file=latest,
            local_time=local_time,
            remote_time=remote_time,
            diff_seconds=round(diff / 1000),
        )
