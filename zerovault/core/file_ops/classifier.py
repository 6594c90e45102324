"""
Content Classifier
==================

Determines the true media kind of decrypted content from its leading bytes.

The declared content type stored with a file is unreliable (uploads often
record a generic application/octet-stream), so rendering decisions are made
from evidence only:

1. Signature table, checked in priority order: pdf, images, audio, video.
   The first matching signature wins.
2. Text heuristic: the prefix decodes as strict UTF-8 and contains no
   control characters other than tab, newline, carriage return and form feed.
3. Otherwise binary.

Classification is pure: same bytes in, same result out.
"""

from __future__ import annotations

import codecs
import unicodedata
from dataclasses import dataclass
from enum import Enum
from typing import Final, Optional

from zerovault.core.errors import UnclassifiableContent

DEFAULT_SNIFF_PREFIX: Final[int] = 8192
TEXT_CONFIDENCE: Final[float] = 0.75
_ALLOWED_CONTROL: Final[frozenset[str]] = frozenset("\t\n\r\f")
_BOM: Final[str] = "\ufeff"


class DetectedKind(str, Enum):
    """Media kinds the rendering surface understands."""
    TEXT = "text"
    IMAGE = "image"
    PDF = "pdf"
    AUDIO = "audio"
    VIDEO = "video"
    BINARY = "binary"


@dataclass(frozen=True, slots=True)
class Signature:
    """
    A magic-number rule.

    Attributes:
        name: Short format name (e.g. "png")
        kind: Media kind reported on match
        media_type: MIME type to expose with the rendered resource
        patterns: (offset, bytes) pairs that must all match
        confidence: How specific the rule is, 0..1
    """

    name: str
    kind: DetectedKind
    media_type: str
    patterns: tuple[tuple[int, bytes], ...]
    confidence: float = 1.0

    def matches(self, data: bytes | memoryview) -> bool:
        for offset, magic in self.patterns:
            if data[offset:offset + len(magic)] != magic:
                return False
        return True


def _sig(name, kind, media_type, *patterns, confidence=1.0) -> Signature:
    return Signature(name, kind, media_type, tuple(patterns), confidence)


K = DetectedKind

# Priority order matters: pdf, image formats, audio formats, video formats
SIGNATURES: Final[tuple[Signature, ...]] = (
    _sig("pdf", K.PDF, "application/pdf", (0, b"%PDF")),

    _sig("png", K.IMAGE, "image/png", (0, b"\x89PNG\r\n\x1a\n")),
    _sig("jpeg", K.IMAGE, "image/jpeg", (0, b"\xff\xd8\xff"), confidence=0.95),
    _sig("gif87a", K.IMAGE, "image/gif", (0, b"GIF87a")),
    _sig("gif89a", K.IMAGE, "image/gif", (0, b"GIF89a")),
    _sig("webp", K.IMAGE, "image/webp", (0, b"RIFF"), (8, b"WEBP")),
    _sig("bmp", K.IMAGE, "image/bmp", (0, b"BM"), (6, b"\x00\x00\x00\x00"), confidence=0.7),
    _sig("tiff_le", K.IMAGE, "image/tiff", (0, b"II*\x00"), confidence=0.9),
    _sig("tiff_be", K.IMAGE, "image/tiff", (0, b"MM\x00*"), confidence=0.9),
    _sig("ico", K.IMAGE, "image/x-icon", (0, b"\x00\x00\x01\x00"), confidence=0.6),

    _sig("mp3_id3", K.AUDIO, "audio/mpeg", (0, b"ID3"), confidence=0.9),
    _sig("mp3_frame_v1", K.AUDIO, "audio/mpeg", (0, b"\xff\xfb"), confidence=0.7),
    _sig("mp3_frame_v2", K.AUDIO, "audio/mpeg", (0, b"\xff\xf3"), confidence=0.7),
    _sig("mp3_frame_v25", K.AUDIO, "audio/mpeg", (0, b"\xff\xf2"), confidence=0.7),
    _sig("aac_adts_mpeg4", K.AUDIO, "audio/aac", (0, b"\xff\xf1"), confidence=0.7),
    _sig("aac_adts_mpeg2", K.AUDIO, "audio/aac", (0, b"\xff\xf9"), confidence=0.7),
    _sig("wav", K.AUDIO, "audio/wav", (0, b"RIFF"), (8, b"WAVE")),
    _sig("flac", K.AUDIO, "audio/flac", (0, b"fLaC")),
    _sig("ogg", K.AUDIO, "audio/ogg", (0, b"OggS"), confidence=0.9),
    _sig("m4a", K.AUDIO, "audio/mp4", (4, b"ftypM4A ")),
    _sig("m4b", K.AUDIO, "audio/mp4", (4, b"ftypM4B ")),

    _sig("mp4", K.VIDEO, "video/mp4", (4, b"ftyp"), confidence=0.9),
    _sig("matroska", K.VIDEO, "video/webm", (0, b"\x1a\x45\xdf\xa3")),
    _sig("avi", K.VIDEO, "video/x-msvideo", (0, b"RIFF"), (8, b"AVI ")),
    _sig("flv", K.VIDEO, "video/x-flv", (0, b"FLV\x01")),
    _sig("mpeg_ps", K.VIDEO, "video/mpeg", (0, b"\x00\x00\x01\xba"), confidence=0.9),
)

del K

TEXT_MEDIA_TYPE: Final[str] = "text/plain; charset=utf-8"
BINARY_MEDIA_TYPE: Final[str] = "application/octet-stream"


@dataclass(frozen=True, slots=True)
class ClassifiedContent:
    """
    Transient classification result.

    Attributes:
        raw: The decrypted bytes that were inspected (not copied)
        kind: Detected media kind
        confidence: 1.0 for exact signatures, lower for weaker evidence,
            0.0 for the binary fallback
        signature: Name of the matching signature, "utf8-text", or None
        media_type: MIME type derived from the evidence
    """

    raw: bytes | memoryview
    kind: DetectedKind
    confidence: float
    signature: Optional[str]
    media_type: str

    def __repr__(self) -> str:
        return (
            f"ClassifiedContent(kind={self.kind.value}, size={len(self.raw)}, "
            f"signature={self.signature!r}, confidence={self.confidence})"
        )


def match_signature(data: bytes | memoryview) -> Optional[Signature]:
    """Return the first signature in priority order that matches."""
    for signature in SIGNATURES:
        if signature.matches(data):
            return signature
    return None


def looks_like_text(data: bytes | memoryview, prefix_size: int = DEFAULT_SNIFF_PREFIX) -> bool:
    """
    UTF-8 text heuristic over the leading `prefix_size` bytes.

    A multi-byte sequence cut off by the prefix boundary is tolerated; a
    sequence cut off by the end of the data is not.
    """
    if len(data) == 0:
        return False

    prefix = bytes(data[:prefix_size])
    complete = len(data) <= prefix_size
    decoder = codecs.getincrementaldecoder("utf-8")(errors="strict")
    try:
        text = decoder.decode(prefix, final=complete)
    except UnicodeDecodeError:
        return False

    if text.startswith(_BOM):
        text = text[1:]
    if not text:
        return False

    for ch in text:
        if ch in _ALLOWED_CONTROL:
            continue
        if unicodedata.category(ch) == "Cc":
            return False
    return True


class ContentClassifier:
    """
    Evidence-based content classification.

    Usage:
        classifier = ContentClassifier()
        result = classifier.classify(plaintext)
        if result.kind is DetectedKind.PDF:
            ...

    The declared content type is deliberately not an input.
    """

    __slots__ = ("_prefix_size",)

    def __init__(self, sniff_prefix_bytes: int = DEFAULT_SNIFF_PREFIX) -> None:
        self._prefix_size = sniff_prefix_bytes

    def detect_kind(self, data: bytes | memoryview) -> DetectedKind:
        return self.classify(data).kind

    def classify(self, data: bytes | memoryview, strict: bool = False) -> ClassifiedContent:
        """
        Classify decrypted bytes.

        Args:
            data: Plaintext to inspect
            strict: Raise UnclassifiableContent instead of falling back to
                binary when nothing matches

        Returns:
            ClassifiedContent

        Raises:
            UnclassifiableContent: Only in strict mode
        """
        signature = match_signature(data)
        if signature is not None:
            return ClassifiedContent(
                raw=data,
                kind=signature.kind,
                confidence=signature.confidence,
                signature=signature.name,
                media_type=signature.media_type,
            )

        if looks_like_text(data, self._prefix_size):
            return ClassifiedContent(
                raw=data,
                kind=DetectedKind.TEXT,
                confidence=TEXT_CONFIDENCE,
                signature="utf8-text",
                media_type=TEXT_MEDIA_TYPE,
            )

        if strict:
            raise UnclassifiableContent()

        return binary_fallback(data)


def binary_fallback(data: bytes | memoryview) -> ClassifiedContent:
    """Result used when nothing matched."""
    return ClassifiedContent(
        raw=data,
        kind=DetectedKind.BINARY,
        confidence=0.0,
        signature=None,
        media_type=BINARY_MEDIA_TYPE,
    )


def classify(data: bytes | memoryview) -> DetectedKind:
    """Module-level convenience: detected kind for `data`."""
    return ContentClassifier().detect_kind(data)
