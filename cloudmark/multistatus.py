"""
Multistatus (PROPFIND) response parsing.

Servers disagree on namespace prefixes (``d:``, ``D:``, ``lp1:`` or a
default namespace), so every element is matched by its local name only.
"""
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import List, Optional

from cloudmark.utils import now_ms

logger = logging.getLogger(__name__)


@dataclass
class DavEntry:
    """One ``response`` element of a multistatus document."""
    href: str
    displayname: str = ""
    lastmod: int = 0  # epoch ms
    size: int = 0


def _local_name(tag: str) -> str:
    if "}" in tag:
        tag = tag.rsplit("}", 1)[1]
    return tag.rsplit(":", 1)[-1].lower()


def _child_text(element: ET.Element, local_name: str) -> str:
    """Text of the first descendant with the given local name."""
    for node in element.iter():
        if node is not element and _local_name(node.tag) == local_name:
            return (node.text or "").strip()
    return ""


def parse_http_date(value: str) -> Optional[int]:
    """Parse an RFC 1123 date (``getlastmodified``) into epoch ms."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    # "-0000" zones come back naive
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        return int(parsed.timestamp() * 1000)
    except (ValueError, OverflowError):
        return None


def parse_multistatus(text: str) -> List[DavEntry]:
    """
    Extract entries from a multistatus response body.

    Missing ``getlastmodified`` falls back to now and a missing
    ``getcontentlength`` to 0. Malformed documents yield an empty list.
    """
    if not text or not text.strip():
        return []
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        logger.debug(f"Unparsable multistatus body: {e}")
        return []

    entries = []
    for response in root.iter():
        if _local_name(response.tag) != "response":
            continue
        href = _child_text(response, "href")
        lastmod = parse_http_date(_child_text(response, "getlastmodified"))
        size_text = _child_text(response, "getcontentlength")
        try:
            size = int(size_text) if size_text else 0
        except ValueError:
            size = 0
        entries.append(DavEntry(
            href=href,
            displayname=_child_text(response, "displayname"),
            lastmod=lastmod if lastmod is not None else now_ms(),
            size=size,
        ))
    return entries
