"""
parsers.py - Pure parsers for tool output and bridge-agent payloads.

Nothing in here touches a process, a socket or the event loop, so every
function can be tested with plain strings.
"""

import logging
import re
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from .models import (
    APPLICATIONS, ARCHIVES, DOCUMENTS, MUSIC, OTHER, PHOTOS, VIDEOS,
    ContentItem, Device, DevicePlatform,
)

log = logging.getLogger("databridge.parsers")

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------
_ADB_DEVICE_RE = re.compile(r"^(\S+)\s+(\w+)(.*)$")
_ADB_MODEL_RE = re.compile(r"model:(\S+)")
_ADB_NAME_RE = re.compile(r"device:(\S+)")

# -rw-rw---- 1 u0_a171 media_rw 3133747 2024-03-29 10:00 IMG_20240329_100000.jpg
_LS_LINE_RE = re.compile(
    r"^([-d])([rwx-]{9})\s+\d+\s+(\S+)\s+(\S+)\s+(\d+)"
    r"\s+(\d{4}-\d{2}-\d{2})\s+(\d{2}:\d{2})\s+(.+)$"
)

_CONTACT_ROW_RE = re.compile(
    r"Row:\s\d+\s_id=(\d+),.*"
    r"display_name=([^,]+),.*"
    r"times_contacted=(\d+),.*"
    r"last_time_contacted=(\d+)"
)
_MESSAGE_ROW_RE = re.compile(
    r"Row:\s\d+\s_id=(\d+),\s*"
    r"address=([^,]+),\s*"
    r"body=([^,]+),\s*"
    r"date=(\d+)"
)
_CALL_ROW_RE = re.compile(
    r"Row:\s\d+\s_id=(\d+),\s*"
    r"number=([^,]+),\s*"
    r"date=(\d+),\s*"
    r"duration=(\d+),\s*"
    r"type=(\d+)"
)

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp", ".heic", ".heif")
VIDEO_EXTENSIONS = (".mp4", ".3gp", ".mkv", ".avi", ".mov", ".webm")

_MEDIA_TYPE_TAGS = {"IMAGE": PHOTOS, "VIDEO": VIDEOS, "AUDIO": MUSIC}
_FILE_TYPE_TAGS = {"DOCUMENT": DOCUMENTS, "APK": APPLICATIONS, "ARCHIVE": ARCHIVES}

_EXTENSION_CATEGORIES = {
    ".jpg": PHOTOS, ".jpeg": PHOTOS, ".png": PHOTOS, ".gif": PHOTOS,
    ".mp4": VIDEOS, ".3gp": VIDEOS, ".mkv": VIDEOS, ".avi": VIDEOS,
    ".mp3": MUSIC, ".m4a": MUSIC, ".ogg": MUSIC, ".flac": MUSIC,
    ".pdf": DOCUMENTS, ".doc": DOCUMENTS, ".docx": DOCUMENTS, ".txt": DOCUMENTS,
    ".apk": APPLICATIONS,
}

CALL_TYPES = {1: "incoming", 2: "outgoing"}


# ---------------------------------------------------------------------------
# Device listings
# ---------------------------------------------------------------------------
def parse_adb_devices(output: str) -> List[Device]:
    """Parse ``adb devices -l`` output.

    A device is authorized only when its state is ``device``;
    ``unauthorized`` and ``offline`` entries are still listed.
    """
    devices: List[Device] = []
    for line in output.splitlines():
        line = line.strip()
        if not line or line.startswith("List of devices") or line.startswith("*"):
            continue
        m = _ADB_DEVICE_RE.match(line)
        if not m:
            log.debug("Ignoring adb devices line: %s", line)
            continue
        serial, state, props = m.group(1), m.group(2), m.group(3)
        model_m = _ADB_MODEL_RE.search(props)
        model = model_m.group(1) if model_m else "Android Device"
        name_m = _ADB_NAME_RE.search(props)
        devices.append(Device(
            id=serial,
            platform=DevicePlatform.ANDROID,
            model=model,
            name=name_m.group(1) if name_m else model,
            authorized=(state == "device"),
        ))
    return devices


def parse_idevice_ids(output: str) -> List[str]:
    """``idevice_id -l`` prints one UDID per line."""
    return [line.strip() for line in output.splitlines() if line.strip()]


# ---------------------------------------------------------------------------
# ls -l listings
# ---------------------------------------------------------------------------
def _fix_old_date(dt: datetime, today: date) -> datetime:
    """Devices without an RTC report 1970 dates; move them to a plausible year."""
    if dt.year >= 1980:
        return dt
    for year in (today.year, today.year - 1):
        try:
            candidate = dt.replace(year=year)
        except ValueError:  # 29 Feb in a non-leap year
            continue
        if year == today.year and candidate.date() > today:
            continue
        return candidate
    return dt


def parse_ls_listing(
    output: str,
    base_path: str,
    extensions: Iterable[str] = IMAGE_EXTENSIONS,
    today: Optional[date] = None,
) -> List[ContentItem]:
    """Parse ``ls -l`` output into file items with one of *extensions*.

    Directories and hidden files are skipped; unparseable lines are logged.
    """
    today = today or date.today()
    exts = tuple(e.lower() for e in extensions)
    base = base_path if base_path.endswith("/") else base_path + "/"
    items: List[ContentItem] = []

    for raw in output.splitlines():
        line = raw.strip()
        if not line or line.startswith("total "):
            continue
        m = _LS_LINE_RE.match(line)
        if not m:
            log.warning("Could not parse listing line: %s", line)
            continue
        if m.group(1) == "d":
            continue
        name = m.group(8)
        if name.startswith(".") or not name.lower().endswith(exts):
            continue

        try:
            stamp = datetime.strptime(f"{m.group(6)} {m.group(7)}", "%Y-%m-%d %H:%M")
            stamp = _fix_old_date(stamp, today)
        except ValueError:
            stamp = None

        path = base + name
        items.append(ContentItem(
            id=path,
            display_name=name,
            file_path=path,
            size=int(m.group(5)),
            timestamp=stamp,
        ))

    log.debug("Parsed %d items from %s", len(items), base)
    return items


# ---------------------------------------------------------------------------
# content query rows
# ---------------------------------------------------------------------------
def _from_millis(value: int) -> Optional[datetime]:
    if value <= 0:
        return None
    try:
        return datetime.fromtimestamp(value / 1000)
    except (OverflowError, ValueError, OSError):
        log.warning("Ignoring out-of-range timestamp: %s", value)
        return None


def parse_contact_rows(output: str) -> List[ContentItem]:
    contacts = []
    for line in output.splitlines():
        m = _CONTACT_ROW_RE.search(line)
        if not m:
            continue
        name = m.group(2).strip()
        contacts.append(ContentItem(
            id=m.group(1),
            display_name=name,
            size=1024 + 2 * len(name),
            timestamp=_from_millis(int(m.group(4))),
            extra={"times_contacted": int(m.group(3))},
        ))
    return contacts


def parse_message_rows(output: str) -> List[ContentItem]:
    messages = []
    for line in output.splitlines():
        m = _MESSAGE_ROW_RE.search(line)
        if not m:
            continue
        address = m.group(2).strip()
        body = m.group(3).strip()
        messages.append(ContentItem(
            id=m.group(1),
            display_name=f"Message from {address}",
            size=len(body) + len(address),
            timestamp=_from_millis(int(m.group(4))),
            extra={"address": address, "body": body},
        ))
    return messages


def parse_call_rows(output: str) -> List[ContentItem]:
    calls = []
    for line in output.splitlines():
        m = _CALL_ROW_RE.search(line)
        if not m:
            continue
        number = m.group(2).strip()
        duration = int(m.group(4))
        kind = CALL_TYPES.get(int(m.group(5)), "missed")
        calls.append(ContentItem(
            id=m.group(1),
            display_name=f"Call {kind} - {number}",
            size=duration * 10,
            timestamp=_from_millis(int(m.group(3))),
            extra={"number": number, "duration": duration, "type": kind},
        ))
    return calls


# ---------------------------------------------------------------------------
# Bridge-agent JSON payloads
# ---------------------------------------------------------------------------
def category_for_extension(name: str) -> str:
    dot = name.rfind(".")
    if dot < 0:
        return OTHER
    return _EXTENSION_CATEGORIES.get(name[dot:].lower(), OTHER)


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _file_item(obj: Dict[str, Any], tag_key: str, category: str) -> ContentItem:
    path = str(obj["path"])
    extra = {tag_key: category, "mime_type": obj.get("mimeType", "")}
    meta = obj.get("metadata")
    if isinstance(meta, dict):
        extra.update(meta)
    return ContentItem(
        id=path,
        display_name=str(obj["name"]),
        file_path=path,
        size=_as_int(obj.get("size")),
        timestamp=_from_millis(_as_int(obj.get("dateModified"))),
        extra=extra,
    )


def _categorize(obj: Dict[str, Any], tags: Dict[str, str]) -> str:
    tag = obj.get("type")
    if tag:
        return tags.get(str(tag), OTHER)
    return category_for_extension(str(obj.get("name") or obj.get("path")))


def parse_media_json(array: List[Any]) -> Dict[str, List[ContentItem]]:
    """Group a ``MEDIA_DATA`` batch by category."""
    grouped: Dict[str, List[ContentItem]] = {}
    for obj in array:
        if not isinstance(obj, dict) or not obj.get("path") or not obj.get("name"):
            continue
        category = _categorize(obj, _MEDIA_TYPE_TAGS)
        grouped.setdefault(category, []).append(_file_item(obj, "media_type", category))
    return grouped


def parse_files_json(array: List[Any]) -> Dict[str, List[ContentItem]]:
    """Group a ``FILES_DATA`` batch by category."""
    grouped: Dict[str, List[ContentItem]] = {}
    for obj in array:
        if not isinstance(obj, dict) or not obj.get("path") or not obj.get("name"):
            continue
        category = _categorize(obj, _FILE_TYPE_TAGS)
        grouped.setdefault(category, []).append(_file_item(obj, "file_type", category))
    return grouped


def parse_contacts_json(array: List[Any]) -> List[ContentItem]:
    contacts = []
    for obj in array:
        if not isinstance(obj, dict):
            continue
        cid, name = obj.get("id"), obj.get("displayName")
        if not cid or not name:
            continue
        extra: Dict[str, Any] = {}
        if isinstance(obj.get("phoneNumbers"), list):
            extra["phones"] = [str(p) for p in obj["phoneNumbers"]]
        if isinstance(obj.get("emails"), list):
            extra["emails"] = [str(e) for e in obj["emails"]]
        if "photoUri" in obj:
            extra["photo_uri"] = str(obj["photoUri"])
        contacts.append(ContentItem(id=str(cid), display_name=str(name), size=1024, extra=extra))
    return contacts


def parse_messages_json(array: List[Any]) -> List[ContentItem]:
    messages = []
    for obj in array:
        if not isinstance(obj, dict):
            continue
        mid, body = obj.get("id"), obj.get("body")
        if not mid or not body:
            continue
        address = str(obj.get("address") or "")
        body = str(body)
        messages.append(ContentItem(
            id=str(mid),
            display_name=f"Message from {address}",
            size=len(body) + len(address),
            timestamp=_from_millis(_as_int(obj.get("date"))),
            extra={
                "thread_id": str(obj.get("threadId") or ""),
                "address": address,
                "body": body,
                "is_read": bool(obj.get("isRead")),
                "type": _as_int(obj.get("type")),
            },
        ))
    return messages
