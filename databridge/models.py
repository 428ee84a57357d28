"""
models.py - Shared data types for devices and analyzed content.

Content categories are plain strings so that categories streamed by the
bridge agent (``archives``, ``other``) fit next to the built-in ones.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class DevicePlatform(Enum):
    ANDROID = "android"
    IOS = "ios"


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------
PHOTOS = "photos"
VIDEOS = "videos"
MUSIC = "music"
DOCUMENTS = "documents"
APPLICATIONS = "applications"
CONTACTS = "contacts"
MESSAGES = "messages"
CALLS = "calls"
CALENDAR = "calendar"
ARCHIVES = "archives"
OTHER = "other"

# Categories whose items are real files on the device
FILE_CATEGORIES = (PHOTOS, VIDEOS, MUSIC, DOCUMENTS)

ANDROID_CATEGORIES = (PHOTOS, VIDEOS, CONTACTS, MESSAGES, CALLS)
ANDROID_FAST_PATH_EXTRAS = (MUSIC, DOCUMENTS, APPLICATIONS)
IOS_CATEGORIES = (PHOTOS, CONTACTS, MESSAGES, CALLS)


# ---------------------------------------------------------------------------
# Device
# ---------------------------------------------------------------------------
@dataclass
class Device:
    """One attached phone as last seen by the device poll."""
    id: str
    platform: DevicePlatform
    model: str = ""
    name: str = ""
    authorized: bool = False

    @property
    def is_android(self) -> bool:
        return self.platform == DevicePlatform.ANDROID

    @property
    def is_ios(self) -> bool:
        return self.platform == DevicePlatform.IOS

    def friendly_name(self) -> str:
        if self.name and self.name != self.model:
            return f"{self.name} ({self.model})"
        return self.model or self.id


# ---------------------------------------------------------------------------
# Content
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ContentItem:
    id: str
    display_name: str
    file_path: str = ""
    size: int = 0
    timestamp: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        """Identity used for de-duplication."""
        return self.file_path or self.id


@dataclass
class ContentSet:
    """Analysis result for one (device, category) pair.

    ``supported=True`` with no items means "analyzed, nothing found";
    ``supported=False`` means the category could not be read at all.
    """
    category: str
    items: List[ContentItem] = field(default_factory=list)
    total_size: int = 0
    supported: bool = True
    error_message: str = ""

    @classmethod
    def from_items(cls, category: str, items: List[ContentItem]) -> "ContentSet":
        return cls(category, list(items), sum(i.size for i in items))

    @classmethod
    def unsupported(cls, category: str, message: str = "") -> "ContentSet":
        return cls(category, [], 0, supported=False, error_message=message)

    @property
    def is_empty(self) -> bool:
        return not self.items

    @property
    def usable(self) -> bool:
        """Supported, error-free and non-empty."""
        return self.supported and not self.error_message and bool(self.items)

    def merge(self, items: List[ContentItem]) -> int:
        """Append *items* whose key is not present yet; returns how many were added."""
        seen = {item.key for item in self.items}
        added = 0
        for item in items:
            if item.key in seen:
                continue
            seen.add(item.key)
            self.items.append(item)
            self.total_size += item.size
            added += 1
        return added

    def copy(self) -> "ContentSet":
        return replace(self, items=list(self.items))
