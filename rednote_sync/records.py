"""
Record parser: the single choke point turning untrusted extraction output into NoteRecord.
"""
from dataclasses import dataclass
from typing import Any, Mapping

from rednote_sync.config import MAX_CONTENT_LENGTH, MAX_TAGS_PER_NOTE, MAX_TITLE_LENGTH
from rednote_sync.errors import InvalidPayload

REQUIRED_FIELDS = ("id", "title", "url")


@dataclass(frozen=True)
class NoteRecord:
    id: str
    title: str
    url: str
    content: str | None = None
    image_url: str | None = None
    author_name: str | None = None
    author_avatar: str | None = None
    tags: tuple[str, ...] = ()

    def to_raw(self) -> dict:
        """Wire form (same keys the extractor emits)."""
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "imageURL": self.image_url,
            "url": self.url,
            "authorName": self.author_name,
            "authorAvatar": self.author_avatar,
            "tags": list(self.tags),
        }


def _optional_str(value: Any, limit: int | None = None) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not value:
        return None
    return value[:limit] if limit else value


def normalize_tags(value: Any) -> tuple[str, ...]:
    """Unique non-empty string tags, first occurrence wins, capped at MAX_TAGS_PER_NOTE."""
    if not isinstance(value, (list, tuple)):
        return ()
    seen: dict[str, None] = {}
    for tag in value:
        if not isinstance(tag, str):
            continue
        tag = tag.strip()
        if tag and tag not in seen:
            seen[tag] = None
    return tuple(seen)[:MAX_TAGS_PER_NOTE]


def parse_record(payload: Mapping[str, Any]) -> NoteRecord:
    """
    Build a NoteRecord from a raw `data` payload.
    Raises InvalidPayload when id, title or url is absent, not a string, or blank.
    Optional fields of the wrong type become None rather than failing the record.
    """
    if not isinstance(payload, Mapping):
        raise InvalidPayload(f"payload must be a mapping, got {type(payload).__name__}")
    for key in REQUIRED_FIELDS:
        value = payload.get(key)
        if not isinstance(value, str) or not value.strip():
            raise InvalidPayload(f"missing or invalid field: {key}")
    return NoteRecord(
        id=payload["id"].strip(),
        title=payload["title"].strip()[:MAX_TITLE_LENGTH],
        url=payload["url"].strip(),
        content=_optional_str(payload.get("content"), MAX_CONTENT_LENGTH),
        image_url=_optional_str(payload.get("imageURL")),
        author_name=_optional_str(payload.get("authorName")),
        author_avatar=_optional_str(payload.get("authorAvatar")),
        tags=normalize_tags(payload.get("tags")),
    )
