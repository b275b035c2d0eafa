"""MIME type normalization for request bodies."""

from __future__ import annotations

from enum import Enum


class MimeType(str, Enum):
    APPLICATION_JSON = "application/json"
    APPLICATION_JAVASCRIPT = "application/javascript"
    APPLICATION_XML = "application/xml"
    APPLICATION_OCTET_STREAM = "application/octet-stream"
    TEXT_PLAIN = "text/plain"
    TEXT_XML = "text/xml"


_ALIASES = {
    "application/json": MimeType.APPLICATION_JSON,
    "application/javascript": MimeType.APPLICATION_JAVASCRIPT,
    "application/xml": MimeType.APPLICATION_XML,
    "text/xml": MimeType.TEXT_XML,
    "text": MimeType.TEXT_PLAIN,
    "text/plain": MimeType.TEXT_PLAIN,
    "application/text": MimeType.TEXT_PLAIN,
}


def parse_mime_type(content_type: str | None) -> MimeType:
    """Map a ``Content-Type`` header to a :class:`MimeType`.

    Parameters such as ``charset`` are ignored. Unknown types fall back to
    ``application/octet-stream``.
    """

    if not content_type:
        return MimeType.APPLICATION_OCTET_STREAM
    media = content_type.split(";", 1)[0].strip().lower()
    return _ALIASES.get(media, MimeType.APPLICATION_OCTET_STREAM)


def media_type(content_type: str | None) -> str:
    """Return the bare, lowercased media type of *content_type*."""

    if not content_type:
        return MimeType.APPLICATION_OCTET_STREAM.value
    media = content_type.split(";", 1)[0].strip().lower()
    known = _ALIASES.get(media)
    return known.value if known is not None else media


__all__ = ["MimeType", "media_type", "parse_mime_type"]
