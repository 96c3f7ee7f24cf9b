"""
Small shared helpers: clocks, deep copies, timing logs and Basic auth.
"""
import base64
import copy
import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 with millisecond precision and a Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def deep_copy(data: Any) -> Any:
    """Deep-copy JSON-like data."""
    return copy.deepcopy(data)


def basic_auth_header(username: str, password: str) -> Dict[str, str]:
    """
    Build an HTTP Basic Authorization header.

    Credentials are UTF-8 encoded before Base64 so non-ASCII names work.
    Returns an empty dict when both username and password are empty.
    """
    if not username and not password:
        return {}
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return {"Authorization": f"Basic {token}"}


def json_dumps(obj: Any) -> str:
    """Serialize a payload exactly as it is sent over the wire."""
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


@contextmanager
def log_timing(logger: logging.Logger, operation: str):
    """
    Log how long a block took at DEBUG, or the failure at WARNING.

    Usage:
        with log_timing(logger, "PROPFIND listing"):
            ...
    """
    start = time.perf_counter()
    logger.debug(f"{operation} started")
    try:
        yield
    except Exception as e:
        elapsed = (time.perf_counter() - start) * 1000
        logger.warning(f"{operation} failed after {elapsed:.2f}ms: {e}")
        raise
    elapsed = (time.perf_counter() - start) * 1000
    logger.debug(f"{operation} finished in {elapsed:.2f}ms")


def atomic_write(path: Path, text: str):
    """
    Replace ``path`` with ``text`` through a temp file and ``os.replace``.

    Readers see either the old or the new contents, never a partial file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
