"""
Stage 1: Extract Metadata

Records file size and content type for every asset, plus a selected set of
EXIF fields and the ICC profile description for images.
"""

from __future__ import annotations

import io
import logging
from typing import Any, Dict, Optional

from PIL import ExifTags, Image, ImageCms, UnidentifiedImageError

from ...config import PipelineSettings
from ...thumbnails import HEIF_AVAILABLE  # noqa: F401  (registers the HEIF opener)
from ..base import Stage
from ..chain import EXTRACT_METADATA
from ..context import StageContext
from ..errors import StageError

logger = logging.getLogger("asset_pipeline.pipeline.extract_metadata")

EXIF_FIELDS = (
    "Make",
    "Model",
    "Software",
    "Artist",
    "Copyright",
    "Orientation",
    "DateTime",
    "DateTimeOriginal",
    "ExposureTime",
    "FNumber",
    "ISOSpeedRatings",
    "FocalLength",
    "LensModel",
    "ColorSpace",
)


def _json_safe(value: Any) -> Any:
    if isinstance(value, (str, int, bool)) or value is None:
        return value.strip("\x00 ") if isinstance(value, str) else value
    if isinstance(value, float):
        return round(value, 6)
    if isinstance(value, (tuple, list)):
        return [_json_safe(v) for v in value]
    if isinstance(value, bytes):
        return None
    try:
        return round(float(value), 6)  # IFDRational
    except (TypeError, ValueError, ZeroDivisionError):
        return str(value)


def read_exif(image: Image.Image) -> Dict[str, Any]:
    """Selected EXIF tags from the base IFD and the Exif sub-IFD."""
    exif = image.getexif()
    if not exif:
        return {}
    raw: Dict[int, Any] = dict(exif)
    raw.update(exif.get_ifd(ExifTags.IFD.Exif))
    named = {ExifTags.TAGS.get(tag, str(tag)): value for tag, value in raw.items()}
    selected: Dict[str, Any] = {}
    for key in EXIF_FIELDS:
        if key in named:
            value = _json_safe(named[key])
            if value not in (None, "", []):
                selected[key] = value
    return selected


def read_icc_description(image: Image.Image) -> Optional[str]:
    icc = image.info.get("icc_profile")
    if not icc:
        return None
    try:
        profile = ImageCms.ImageCmsProfile(io.BytesIO(icc))
        return ImageCms.getProfileDescription(profile).strip() or None
    except (ImageCms.PyCMSError, OSError) as e:
        logger.debug("Unreadable ICC profile: %s", e)
        return None


class ExtractMetadataStage(Stage):
    """
    Responsibilities:
    - Head the working object for size and content type
    - Read EXIF / ICC from image sources (header only, no full decode)
    - Set metadata_extracted on the asset

    Unreadable image headers are left for the preview stage to categorise.
    """

    name = EXTRACT_METADATA

    def should_run(self, ctx: StageContext, settings: PipelineSettings) -> bool:
        return True

    def execute(self, ctx: StageContext, settings: PipelineSettings) -> StageContext:
        info = ctx.storage.head(ctx.bucket, ctx.source_path)
        ctx.version_patch["file_size"] = info.get("size")
        ctx.version_patch["content_type"] = info.get("content_type") or ctx.asset.mime_type

        if ctx.category.is_image:
            self._extract_image_fields(ctx)

        ctx.asset_patch["metadata_extracted"] = True
        return ctx

    def _extract_image_fields(self, ctx: StageContext) -> None:
        try:
            with Image.open(io.BytesIO(ctx.read_source())) as image:
                width, height = image.size
                exif = read_exif(image)
                icc_description = read_icc_description(image)
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
            logger.warning("[%s] Could not read image header: %s", ctx.asset_id, str(e)[:100])
            ctx.version_patch["metadata_extraction_warning"] = str(e)[:200]
            return

        ctx.version_patch["image_width"] = width
        ctx.version_patch["image_height"] = height
        if exif:
            ctx.version_patch["exif"] = exif
        if icc_description:
            ctx.version_patch["icc_profile_description"] = icc_description
        if ctx.version_writable:
            ctx.repo.update_version(ctx.version.id, width=width, height=height)

    def validate_inputs(self, ctx: StageContext) -> None:
        if not ctx.source_path:
            raise StageError("Asset has no storage path", self.name)
