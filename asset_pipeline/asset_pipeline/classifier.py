"""
File type classification.

Maps an inspected MIME type, file extension and (optionally) the first bytes of
the payload to the processing category that selects a decoder. Magic bytes win
over the declared MIME type, which wins over the extension. Unknown inputs are
``unsupported``.
"""

from __future__ import annotations

import logging
import os
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class FileCategory(str, Enum):
    RASTER_IMAGE = "raster-image"
    VECTOR_SKIP = "vector-skip"
    PDF_DOCUMENT = "pdf-document"
    ALT_DECODER_IMAGE = "alt-decoder-image"
    UNSUPPORTED = "unsupported"

    @property
    def has_pixels(self) -> bool:
        """True when the category yields a raster surface for previews."""
        return self in (
            FileCategory.RASTER_IMAGE,
            FileCategory.ALT_DECODER_IMAGE,
            FileCategory.PDF_DOCUMENT,
        )

    @property
    def is_image(self) -> bool:
        return self in (FileCategory.RASTER_IMAGE, FileCategory.ALT_DECODER_IMAGE)


MIME_CATEGORIES = {
    "image/jpeg": FileCategory.RASTER_IMAGE,
    "image/jpg": FileCategory.RASTER_IMAGE,
    "image/pjpeg": FileCategory.RASTER_IMAGE,
    "image/png": FileCategory.RASTER_IMAGE,
    "image/gif": FileCategory.RASTER_IMAGE,
    "image/webp": FileCategory.RASTER_IMAGE,
    "image/bmp": FileCategory.RASTER_IMAGE,
    "image/x-ms-bmp": FileCategory.RASTER_IMAGE,
    "image/svg+xml": FileCategory.VECTOR_SKIP,
    "application/postscript": FileCategory.VECTOR_SKIP,
    "image/x-eps": FileCategory.VECTOR_SKIP,
    "application/pdf": FileCategory.PDF_DOCUMENT,
    "image/tiff": FileCategory.ALT_DECODER_IMAGE,
    "image/tif": FileCategory.ALT_DECODER_IMAGE,
    "image/avif": FileCategory.ALT_DECODER_IMAGE,
    "image/heic": FileCategory.ALT_DECODER_IMAGE,
    "image/heif": FileCategory.ALT_DECODER_IMAGE,
    "image/heic-sequence": FileCategory.ALT_DECODER_IMAGE,
    "image/heif-sequence": FileCategory.ALT_DECODER_IMAGE,
}

EXTENSION_CATEGORIES = {
    "jpg": FileCategory.RASTER_IMAGE,
    "jpeg": FileCategory.RASTER_IMAGE,
    "jpe": FileCategory.RASTER_IMAGE,
    "png": FileCategory.RASTER_IMAGE,
    "gif": FileCategory.RASTER_IMAGE,
    "webp": FileCategory.RASTER_IMAGE,
    "bmp": FileCategory.RASTER_IMAGE,
    "svg": FileCategory.VECTOR_SKIP,
    "svgz": FileCategory.VECTOR_SKIP,
    "eps": FileCategory.VECTOR_SKIP,
    "ai": FileCategory.VECTOR_SKIP,
    "pdf": FileCategory.PDF_DOCUMENT,
    "tif": FileCategory.ALT_DECODER_IMAGE,
    "tiff": FileCategory.ALT_DECODER_IMAGE,
    "avif": FileCategory.ALT_DECODER_IMAGE,
    "heic": FileCategory.ALT_DECODER_IMAGE,
    "heif": FileCategory.ALT_DECODER_IMAGE,
}

# ISO-BMFF brands (bytes 8..12 of an "ftyp" box).
_HEIF_BRANDS = {b"heic", b"heix", b"hevc", b"hevx", b"heim", b"heis", b"mif1", b"msf1", b"avif", b"avis"}

# Containers we positively recognise as non-previewable.
_UNSUPPORTED_SIGNATURES = (
    b"PK\x03\x04",          # zip / office documents
    b"PK\x05\x06",          # empty zip
    b"Rar!\x1a\x07",        # rar
    b"7z\xbc\xaf\x27\x1c",  # 7z
    b"\x1f\x8b",            # gzip
)


def _sniff(head: bytes) -> Optional[FileCategory]:
    """Classify by magic bytes, or None when the signature is not recognised."""
    if not head:
        return None
    if head.startswith(b"\xff\xd8\xff"):
        return FileCategory.RASTER_IMAGE
    if head.startswith(b"\x89PNG\r\n\x1a\n"):
        return FileCategory.RASTER_IMAGE
    if head.startswith((b"GIF87a", b"GIF89a")):
        return FileCategory.RASTER_IMAGE
    if head.startswith(b"RIFF") and head[8:12] == b"WEBP":
        return FileCategory.RASTER_IMAGE
    if head.startswith(b"BM") and len(head) >= 14:
        return FileCategory.RASTER_IMAGE
    if head.startswith(b"%PDF-"):
        return FileCategory.PDF_DOCUMENT
    if head.startswith((b"II*\x00", b"MM\x00*")):
        return FileCategory.ALT_DECODER_IMAGE
    if head[4:8] == b"ftyp" and head[8:12] in _HEIF_BRANDS:
        return FileCategory.ALT_DECODER_IMAGE
    if head.startswith(b"%!PS"):
        return FileCategory.VECTOR_SKIP
    if head.startswith(_UNSUPPORTED_SIGNATURES):
        return FileCategory.UNSUPPORTED

    text = head[:1024].lstrip(b"\xef\xbb\xbf \t\r\n").lower()
    if text.startswith((b"<?xml", b"<svg", b"<!doctype svg")) and b"<svg" in text:
        return FileCategory.VECTOR_SKIP
    return None


def extension_of(filename: Optional[str]) -> Optional[str]:
    """Lower-case extension without the dot, or None."""
    if not filename:
        return None
    ext = os.path.splitext(filename)[1]
    return ext[1:].lower() if ext else None


def classify(
    mime_type: Optional[str] = None,
    extension: Optional[str] = None,
    head: Optional[bytes] = None,
) -> FileCategory:
    """
    Return the processing category for a file.

    Args:
        mime_type: Declared or inspected MIME type (parameters are ignored)
        extension: File extension, with or without the leading dot
        head: Optional first bytes of the payload

    Returns:
        Exactly one FileCategory; UNSUPPORTED when nothing matches
    """
    sniffed = _sniff(head) if head else None
    if sniffed is not None:
        return sniffed

    if mime_type:
        normalized = mime_type.split(";", 1)[0].strip().lower()
        category = MIME_CATEGORIES.get(normalized)
        if category is not None:
            return category

    if extension:
        category = EXTENSION_CATEGORIES.get(extension.lower().lstrip("."))
        if category is not None:
            return category

    return FileCategory.UNSUPPORTED


def classify_asset(asset, head: Optional[bytes] = None) -> FileCategory:
    """Classify an Asset using its mime type and original filename (falling back to its path)."""
    extension = extension_of(asset.original_filename) or extension_of(asset.storage_root_path)
    return classify(asset.mime_type, extension, head)


STORED_CATEGORY_KEY = "_file_category"


def category_of(asset) -> FileCategory:
    """The category recorded at dispatch time; classifies afresh only when none was stored."""
    stored = (asset.metadata or {}).get(STORED_CATEGORY_KEY)
    if stored:
        try:
            return FileCategory(stored)
        except ValueError:
            logger.warning("[%s] Ignoring unknown stored category %r", asset.id, stored)
    return classify_asset(asset)


__all__ = [
    "FileCategory",
    "STORED_CATEGORY_KEY",
    "category_of",
    "classify",
    "classify_asset",
    "extension_of",
]
