import base64
import binascii
import re
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterable, List, Optional, Union

DETECTED = "detected"
DEFAULT_DESCRIPTION = "Unknown creature detected"
DEFAULT_CAPACITY = 50
SLOT_COUNT = 3
SLOT_LABELS = {1: "Today", 2: "Yesterday", 3: "Day before yesterday"}

_DATA_URL_RE = re.compile(r"^data:(?P<media>[\w.+-]+/[\w.+-]+)?;base64,(?P<data>.*)$", re.DOTALL)


@dataclass(frozen=True)
class ImageReference:
    url: str


@dataclass(frozen=True)
class InlineImage:
    data: bytes
    media_type: Optional[str] = None

    @classmethod
    def from_base64(cls, raw: str) -> "InlineImage":
        media_type = None
        match = _DATA_URL_RE.match(raw.strip())
        if match:
            media_type = match.group("media")
            raw = match.group("data")
        try:
            data = base64.b64decode("".join(raw.split()), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("imageBase64 is not valid base64") from exc
        if not data:
            raise ValueError("imageBase64 is empty")
        return cls(data=data, media_type=media_type)

    def encoded(self) -> str:
        payload = base64.b64encode(self.data).decode("ascii")
        if self.media_type:
            return f"data:{self.media_type};base64,{payload}"
        return payload


ImagePayload = Union[ImageReference, InlineImage]


def image_from_payload(url: Any, inline: Any) -> Optional[ImagePayload]:
    """Build the image variant from the two wire fields; at most one may be set."""
    url = url.strip() if isinstance(url, str) else url
    inline = inline.strip() if isinstance(inline, str) else inline
    if url and inline:
        raise ValueError("Provide either imageUrl or imageBase64, not both")
    if url:
        if not isinstance(url, str):
            raise ValueError("imageUrl must be a string")
        return ImageReference(url=url)
    if inline:
        if not isinstance(inline, str):
            raise ValueError("imageBase64 must be a string")
        return InlineImage.from_base64(inline)
    return None


@dataclass
class DetectionRecord:
    id: int
    captured_at: datetime
    image: Optional[ImagePayload]
    description: str = DEFAULT_DESCRIPTION
    confidence: float = 0.0
    status: str = DETECTED

    def to_dict(self) -> Dict[str, Any]:
        image_url = self.image.url if isinstance(self.image, ImageReference) else None
        image_b64 = self.image.encoded() if isinstance(self.image, InlineImage) else None
        ts = self.captured_at.astimezone(timezone.utc).isoformat(timespec="milliseconds")
        return {
            "id": self.id,
            "imageUrl": image_url,
            "imageBase64": image_b64,
            "timestamp": ts.replace("+00:00", "Z"),
            "description": self.description,
            "confidence": self.confidence,
            "status": self.status,
        }


class DetectionEventWindow:
    """Three day slots of detection records: today, yesterday, the day before.

    Each slot keeps at most ``capacity`` records and drops the oldest first.
    Only the daily rollover rotates the slots.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._slots: List[Deque[DetectionRecord]] = [deque(maxlen=capacity) for _ in range(SLOT_COUNT)]

    def add_today(self, record: DetectionRecord) -> Optional[DetectionRecord]:
        today = self._slots[0]
        evicted = today[0] if len(today) == self.capacity else None
        today.append(record)
        return evicted

    def list_slot(self, day: int) -> List[DetectionRecord]:
        return list(self._slot(day))

    def remove_by_id(self, record_id: int) -> bool:
        for slot in self._slots:
            for record in slot:
                if record.id == record_id:
                    slot.remove(record)
                    return True
        return False

    def rotate(self) -> None:
        # day-before-yesterday drops off the end
        self._slots.pop()
        self._slots.insert(0, deque(maxlen=self.capacity))

    def replace(self, slots: Iterable[Iterable[DetectionRecord]]) -> None:
        fresh = [deque(records, maxlen=self.capacity) for records in slots]
        if len(fresh) != SLOT_COUNT:
            raise ValueError(f"expected {SLOT_COUNT} slots, got {len(fresh)}")
        self._slots = fresh

    def counts(self) -> List[int]:
        return [len(slot) for slot in self._slots]

    def _slot(self, day: int) -> Deque[DetectionRecord]:
        if day not in SLOT_LABELS:
            raise ValueError(f"day must be one of {sorted(SLOT_LABELS)}")
        return self._slots[day - 1]
