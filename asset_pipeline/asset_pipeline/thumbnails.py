"""
Thumbnail/preview engine.

One decoder per file category turns the stored bytes into a single raster
surface; the engine then renders every configured style from that surface and
encodes it. Decoders are picked once from the classifier's category.

Degraded mode: when the source pixel area exceeds
``PipelineSettings.max_pixel_area`` only the two smallest styles are rendered,
the decode is drafted down where the format allows it, and the result is
flagged ``degraded``. Sources above ``hard_pixel_limit`` are refused with
OversizedInputError.
"""

from __future__ import annotations

import io
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from PIL import Image, ImageFilter, ImageOps, UnidentifiedImageError, features

from .classifier import FileCategory
from .config import PipelineSettings, ThumbnailStyle
from .pipeline.errors import (
    DecodeError,
    MissingCapabilityError,
    OversizedInputError,
    UnsupportedFormatError,
)

# Optional decoders
try:
    from pillow_heif import register_heif_opener
    register_heif_opener()
    HEIF_AVAILABLE = True
except ImportError:
    register_heif_opener = None  # type: ignore
    HEIF_AVAILABLE = False

try:
    import fitz  # PyMuPDF
    FITZ_AVAILABLE = True
except ImportError:
    fitz = None  # type: ignore
    FITZ_AVAILABLE = False

logger = logging.getLogger(__name__)

FORMAT_INFO = {
    "webp": ("WEBP", "image/webp", "webp"),
    "jpeg": ("JPEG", "image/jpeg", "jpg"),
    "png": ("PNG", "image/png", "png"),
}

LQIP_BLUR_RADIUS = 2
PDF_MAX_ZOOM = 4.0


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class DecodedSource:
    """A raster surface ready for resizing."""
    image: Image.Image
    width: int
    height: int
    degraded: bool = False
    source_format: Optional[str] = None


@dataclass
class RenderedThumbnail:
    style: str
    data: bytes
    width: int
    height: int
    format: str
    content_type: str
    extension: str

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass
class ThumbnailResult:
    """
    Output of one engine run.

    Attributes:
        thumbnails: Rendered styles, smallest first
        source_width / source_height: Dimensions of the decoded source
        degraded: True when only the two smallest styles were rendered
        skipped_styles: Styles left out by degraded mode
        output_format: Encoding actually used (after any fallback)
        vector: True for vector sources (no raster output)
    """
    thumbnails: List[RenderedThumbnail] = field(default_factory=list)
    source_width: Optional[int] = None
    source_height: Optional[int] = None
    degraded: bool = False
    skipped_styles: List[str] = field(default_factory=list)
    output_format: Optional[str] = None
    vector: bool = False

    @property
    def quality(self) -> str:
        return "degraded" if self.degraded else "full"


# ---------------------------------------------------------------------------
# Decoders
# ---------------------------------------------------------------------------

def _check_area(width: int, height: int, settings: PipelineSettings) -> bool:
    """Return True for degraded mode; raise when beyond the hard limit."""
    area = width * height
    if area > settings.hard_pixel_limit:
        raise OversizedInputError(
            f"Source is {width}x{height} ({area} px), above the hard limit of "
            f"{settings.hard_pixel_limit} px",
            reason="oversized",
        )
    return area > settings.max_pixel_area


def _draft_box(settings: PipelineSettings) -> Tuple[int, int]:
    largest = max(settings.degraded_styles(), key=lambda s: s.area)
    return largest.width * 2, largest.height * 2


def _normalise_mode(image: Image.Image) -> Image.Image:
    if image.mode in ("RGB", "RGBA"):
        return image
    if image.mode in ("P", "LA", "PA") or "transparency" in image.info:
        return image.convert("RGBA")
    return image.convert("RGB")


class Decoder(ABC):
    """One variant per file category."""

    category: FileCategory
    produces_raster: bool = True

    @abstractmethod
    def decode(self, data: bytes, settings: PipelineSettings) -> DecodedSource:
        pass


class RasterDecoder(Decoder):
    """Formats Pillow reads natively (JPEG, PNG, GIF, WebP, BMP)."""

    category = FileCategory.RASTER_IMAGE

    def _open(self, data: bytes) -> Image.Image:
        try:
            return Image.open(io.BytesIO(data))
        except UnidentifiedImageError as e:
            raise DecodeError(f"Unrecognised image payload: {e}", cause=e, reason="decode_failed")
        except Image.DecompressionBombError as e:
            raise OversizedInputError(str(e), cause=e, reason="oversized")

    def decode(self, data: bytes, settings: PipelineSettings) -> DecodedSource:
        image = self._open(data)
        width, height = image.size
        degraded = _check_area(width, height, settings)
        source_format = image.format

        try:
            if getattr(image, "n_frames", 1) > 1:
                image.seek(0)
            if degraded:
                # JPEG can decode at 1/2..1/8 scale; other formats ignore the draft.
                image.draft("RGB", _draft_box(settings))
            image.load()
            image = ImageOps.exif_transpose(image)
            image = _normalise_mode(image)
        except Image.DecompressionBombError as e:
            raise OversizedInputError(str(e), cause=e, reason="oversized")
        except MemoryError as e:
            raise OversizedInputError(
                f"Out of memory decoding {width}x{height} source", cause=e, reason="oversized"
            )
        except (OSError, SyntaxError, ValueError) as e:
            raise DecodeError(f"Corrupt image data: {e}", cause=e, reason="decode_failed")

        return DecodedSource(image, width, height, degraded, source_format)


class AltDecoder(RasterDecoder):
    """
    Wide-gamut and multi-page formats: TIFF (first frame) through Pillow,
    HEIC/HEIF/AVIF through pillow-heif.
    """

    category = FileCategory.ALT_DECODER_IMAGE

    @staticmethod
    def _is_heif_container(data: bytes) -> bool:
        return len(data) >= 12 and data[4:8] == b"ftyp"

    def _open(self, data: bytes) -> Image.Image:
        if self._is_heif_container(data) and not HEIF_AVAILABLE:
            raise MissingCapabilityError("pillow-heif")
        return super()._open(data)


class PdfDecoder(Decoder):
    """Renders page 1 of a PDF with PyMuPDF."""

    category = FileCategory.PDF_DOCUMENT

    def decode(self, data: bytes, settings: PipelineSettings) -> DecodedSource:
        if not FITZ_AVAILABLE:
            raise MissingCapabilityError("pymupdf")
        if len(data) > settings.pdf_max_bytes:
            raise OversizedInputError(
                f"PDF is {len(data)} bytes, above the {settings.pdf_max_bytes} byte limit",
                reason="oversized",
            )

        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except Exception as e:
            raise DecodeError(f"Unreadable PDF: {e}", cause=e, reason="decode_failed")

        try:
            if doc.page_count == 0:
                raise DecodeError("PDF has no pages", reason="decode_failed")
            page = doc.load_page(0)
            rect = page.rect
            longest_target = max(max(s.width, s.height) for s in settings.thumbnail_styles)
            zoom = min(PDF_MAX_ZOOM, longest_target / max(rect.width, rect.height, 1))
            degraded = _check_area(int(rect.width * zoom), int(rect.height * zoom), settings)
            if degraded:
                box_w, box_h = _draft_box(settings)
                zoom = min(zoom, max(box_w, box_h) / max(rect.width, rect.height, 1))
            pix = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
            image = Image.frombytes("RGB", (pix.width, pix.height), pix.samples)
        except (DecodeError, OversizedInputError):
            raise
        except RuntimeError as e:
            raise DecodeError(f"PDF render failed: {e}", cause=e, reason="decode_failed")
        finally:
            doc.close()

        return DecodedSource(image, image.width, image.height, degraded, "PDF")


class VectorDecoder(Decoder):
    """Vector sources get no raster preview."""

    category = FileCategory.VECTOR_SKIP
    produces_raster = False

    def decode(self, data: bytes, settings: PipelineSettings) -> DecodedSource:
        raise UnsupportedFormatError("Vector sources have no raster preview", reason="vector_no_preview")


DECODERS: Dict[FileCategory, Decoder] = {
    FileCategory.RASTER_IMAGE: RasterDecoder(),
    FileCategory.ALT_DECODER_IMAGE: AltDecoder(),
    FileCategory.PDF_DOCUMENT: PdfDecoder(),
    FileCategory.VECTOR_SKIP: VectorDecoder(),
}


# ---------------------------------------------------------------------------
# Resizing / encoding
# ---------------------------------------------------------------------------

def resize_to_style(image: Image.Image, style: ThumbnailStyle) -> Image.Image:
    """Resize a surface for one style. Never upscales."""
    src_w, src_h = image.size
    if style.fit == "cover" and src_w >= style.width and src_h >= style.height:
        out = ImageOps.fit(image, (style.width, style.height), Image.Resampling.LANCZOS)
    elif style.fit == "width":
        out = image.copy()
        if src_w > style.width:
            new_h = max(1, round(src_h * style.width / src_w))
            out = image.resize((style.width, new_h), Image.Resampling.LANCZOS)
    elif style.fit == "height":
        out = image.copy()
        if src_h > style.height:
            new_w = max(1, round(src_w * style.height / src_h))
            out = image.resize((new_w, style.height), Image.Resampling.LANCZOS)
    else:
        out = image.copy()
        out.thumbnail((style.width, style.height), Image.Resampling.LANCZOS)

    if style.blur:
        out = out.filter(ImageFilter.GaussianBlur(radius=LQIP_BLUR_RADIUS))
    return out


def encode(image: Image.Image, fmt: str, quality: int) -> bytes:
    pil_format = FORMAT_INFO[fmt][0]
    if pil_format == "JPEG" and image.mode != "RGB":
        background = Image.new("RGB", image.size, (255, 255, 255))
        if image.mode == "RGBA":
            background.paste(image, mask=image.split()[-1])
        else:
            background.paste(image.convert("RGB"))
        image = background

    buffer = io.BytesIO()
    if pil_format == "WEBP":
        image.save(buffer, format="WEBP", quality=quality, method=4)
    elif pil_format == "JPEG":
        image.save(buffer, format="JPEG", quality=quality, optimize=True, progressive=True)
    else:
        image.save(buffer, format="PNG", optimize=True)
    return buffer.getvalue()


def encoder_available(fmt: str) -> bool:
    if fmt == "webp":
        return features.check("webp")
    return fmt in FORMAT_INFO


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ThumbnailEngine:
    """
    Renders previews for one source.

    Usage:
        engine = ThumbnailEngine(settings)
        result = engine.render(data, FileCategory.RASTER_IMAGE)
        for thumb in result.thumbnails:
            storage.put(bucket, key_for(thumb), thumb.data, thumb.content_type)
    """

    def __init__(self, settings: PipelineSettings, decoders: Optional[Dict[FileCategory, Decoder]] = None):
        self.settings = settings
        self.decoders = dict(decoders or DECODERS)
        self._output_format: Optional[str] = None

    def decoder_for(self, category: FileCategory) -> Decoder:
        decoder = self.decoders.get(category)
        if decoder is None:
            raise UnsupportedFormatError(
                f"No preview decoder for category '{category.value}'",
                reason="unsupported_file_type",
            )
        return decoder

    @property
    def output_format(self) -> str:
        """Preferred encoding, or the fallback when its encoder is missing."""
        if self._output_format is None:
            preferred = self.settings.output_format
            if encoder_available(preferred):
                self._output_format = preferred
            else:
                logger.warning(
                    "Encoder for %s unavailable, falling back to %s",
                    preferred, self.settings.fallback_format,
                )
                self._output_format = self.settings.fallback_format
        return self._output_format

    def decode(self, data: bytes, category: FileCategory) -> DecodedSource:
        return self.decoder_for(category).decode(data, self.settings)

    def render(self, data: bytes, category: FileCategory) -> ThumbnailResult:
        decoder = self.decoder_for(category)
        if not decoder.produces_raster:
            return ThumbnailResult(vector=True)

        source = decoder.decode(data, self.settings)
        styles = self.settings.styles_by_size()
        skipped: List[str] = []
        if source.degraded:
            kept = self.settings.degraded_styles()
            skipped = [s.name for s in styles if s not in kept]
            styles = kept
            logger.info(
                "Degraded mode for %dx%d source: rendering %s only",
                source.width, source.height, ", ".join(s.name for s in styles),
            )

        fmt = self.output_format
        _, content_type, extension = FORMAT_INFO[fmt]
        rendered: List[RenderedThumbnail] = []
        for style in styles:
            try:
                out = resize_to_style(source.image, style)
                payload = encode(out, fmt, style.quality)
            except MemoryError as e:
                raise OversizedInputError(
                    f"Out of memory rendering style '{style.name}'", cause=e, reason="oversized"
                )
            rendered.append(
                RenderedThumbnail(
                    style=style.name,
                    data=payload,
                    width=out.width,
                    height=out.height,
                    format=fmt,
                    content_type=content_type,
                    extension=extension,
                )
            )

        return ThumbnailResult(
            thumbnails=rendered,
            source_width=source.width,
            source_height=source.height,
            degraded=source.degraded,
            skipped_styles=skipped,
            output_format=fmt,
        )


__all__ = [
    "ThumbnailEngine",
    "ThumbnailResult",
    "RenderedThumbnail",
    "DecodedSource",
    "Decoder",
    "RasterDecoder",
    "AltDecoder",
    "PdfDecoder",
    "VectorDecoder",
    "resize_to_style",
    "encode",
    "HEIF_AVAILABLE",
    "FITZ_AVAILABLE",
]
