"""
Snapshot filename timestamps.

New snapshots are named with a ``yyMMdd_HHmmss_sss`` token built from
local wall-clock components. Remote stores still hold files written by
earlier releases, so decoding runs an ordered chain of decoders:

1. structured ``yyMMdd_HHmmss_sss`` (current and intermediate names)
2. raw 13-digit epoch milliseconds (legacy names)
3. ``YYYY-MM-DDTHH-MM-SS-sssZ`` in UTC (oldest names)

None of the decoders raise; an unknown token decodes to ``None``.
"""
import re
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from cloudmark.constants import PREFIX_SYNC_BACKUP, SNAPSHOT_EXTENSION

_STRUCTURED_RE = re.compile(
    r"(?:^|_)(\d{2})(\d{2})(\d{2})_(\d{2})(\d{2})(\d{2})_(\d{3})$"
)
_EPOCH_RE = re.compile(r"(?:^|_)(\d{13})$")
_ISO_RE = re.compile(r"(?:^|_)(\d{4})-(\d{2})-(\d{2})T(\d{2})-(\d{2})-(\d{2})-(\d{3})Z$")

# Years further than this in the future belong to the previous century
CENTURY_ROLLBACK_YEARS = 10


def encode(ms: int) -> str:
    """Encode epoch milliseconds as a sortable ``yyMMdd_HHmmss_sss`` token."""
    ms = int(ms)
    local = datetime.fromtimestamp(ms // 1000)
    return f"{local:%y%m%d_%H%M%S}_{ms % 1000:03d}"


def resolve_year(yy: int, now: Optional[datetime] = None) -> int:
    """Pick the four-digit year closest to ``now`` for a two-digit year."""
    current_year = (now or datetime.now()).year
    year = (current_year // 100) * 100 + yy
    if year > current_year + CENTURY_ROLLBACK_YEARS:
        year -= 100
    return year


def _decode_structured(token: str, now: Optional[datetime]) -> Optional[int]:
    match = _STRUCTURED_RE.search(token)
    if not match:
        return None
    yy, mm, dd, hh, mi, ss, sss = (int(part) for part in match.groups())
    try:
        local = datetime(resolve_year(yy, now), mm, dd, hh, mi, ss)
        return int(local.timestamp()) * 1000 + sss
    except (ValueError, OverflowError, OSError):
        return None


def _decode_epoch(token: str, now: Optional[datetime]) -> Optional[int]:
    match = _EPOCH_RE.search(token)
    if not match:
        return None
    return int(match.group(1))


def _decode_iso(token: str, now: Optional[datetime]) -> Optional[int]:
    match = _ISO_RE.search(token)
    if not match:
        return None
    year, mm, dd, hh, mi, ss, sss = (int(part) for part in match.groups())
    try:
        utc = datetime(year, mm, dd, hh, mi, ss, tzinfo=timezone.utc)
        return int(utc.timestamp()) * 1000 + sss
    except (ValueError, OverflowError):
        return None


Decoder = Callable[[str, Optional[datetime]], Optional[int]]

# Order matters: first match wins
DECODERS: List[Tuple[str, Decoder]] = [
    ("structured", _decode_structured),
    ("epoch", _decode_epoch),
    ("iso", _decode_iso),
]


def decode(token: str, now: Optional[datetime] = None) -> Optional[int]:
    """
    Decode a timestamp token (or a filename stem ending in one).

    Args:
        token: ``yyMMdd_HHmmss_sss``, a 13-digit epoch, or an ISO-like token
        now: Reference time for two-digit year resolution

    Returns:
        Epoch milliseconds, or None when no decoder matches
    """
    if not isinstance(token, str) or not token:
        return None
    for _name, decoder in DECODERS:
        result = decoder(token, now)
        if result is not None:
            return result
    return None


def strip_extension(name: str) -> str:
    if name.lower().endswith(SNAPSHOT_EXTENSION):
        return name[: -len(SNAPSHOT_EXTENSION)]
    return name


def timestamp_from_filename(name: str, now: Optional[datetime] = None) -> Optional[int]:
    """Extract the embedded timestamp from any generation of snapshot name."""
    if not name:
        return None
    return decode(strip_extension(name), now)


def build_snapshot_name(client_id: str, prefix: str, ms: int) -> str:
    """Current filename grammar: ``{clientId}_{prefix}_{yyMMdd_HHmmss_sss}.json``."""
    return f"{client_id}_{prefix}_{encode(ms)}{SNAPSHOT_EXTENSION}"


def is_safety_snapshot(name: str) -> bool:
    """Whether a filename marks a pre-sync safety snapshot."""
    return name.startswith(f"{PREFIX_SYNC_BACKUP}_") or f"_{PREFIX_SYNC_BACKUP}_" in name
