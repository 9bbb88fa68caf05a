"""
Stage 3: Populate Computed Metadata

Derives orientation, resolution class, colour space and dominant colours from
what the earlier stages recorded. Gated on previews: dominant colours are
sampled from a rendered preview rather than the (possibly huge) original.
Values the asset already carries are never overwritten.
"""

from __future__ import annotations

import io
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from PIL import Image, UnidentifiedImageError

from ...config import PipelineSettings
from ...metadata import is_meaningful
from ...types import DominantColor, ReasonCode
from ..base import Stage
from ..chain import POPULATE_COMPUTED_METADATA
from ..context import StageContext
from ..errors import StageSkipped

logger = logging.getLogger("asset_pipeline.pipeline.computed_metadata")

COMPUTED_FIELDS = ("orientation", "resolution_class", "color_space", "dominant_colors")

DOMINANT_COLOR_COUNT = 3
SAMPLE_SIZE = (128, 128)

# (minimum megapixels, label), largest first
RESOLUTION_CLASSES = (
    (12.0, "ultra"),
    (4.0, "high"),
    (1.0, "medium"),
    (0.0, "low"),
)

# EXIF ColorSpace tag values
EXIF_COLOR_SPACES = {1: "srgb", 2: "adobe rgb", 65535: "uncalibrated"}

# Substrings of ICC profile descriptions, checked in order
ICC_COLOR_SPACES = (
    ("display p3", "display p3"),
    ("p3", "display p3"),
    ("adobe rgb", "adobe rgb"),
    ("adobergb", "adobe rgb"),
    ("srgb", "srgb"),
)


def orientation_for(width: Optional[int], height: Optional[int]) -> Optional[str]:
    """
    >>> orientation_for(1920, 1080)
    'landscape'
    >>> orientation_for(500, 500)
    'square'
    """
    if not width or not height:
        return None
    if width == height:
        return "square"
    return "landscape" if width > height else "portrait"


def resolution_class_for(width: Optional[int], height: Optional[int]) -> Optional[str]:
    """
    >>> resolution_class_for(1920, 1080)
    'medium'
    >>> resolution_class_for(3000, 2000)
    'high'
    """
    if not width or not height:
        return None
    megapixels = width * height / 1_000_000
    for minimum, label in RESOLUTION_CLASSES:
        if megapixels >= minimum:
            return label
    return None


def color_space_for(exif: Optional[Mapping[str, Any]], icc_description: Optional[str]) -> Optional[str]:
    """ICC profile description wins; EXIF ColorSpace is the fallback."""
    if icc_description:
        lowered = icc_description.lower()
        for needle, label in ICC_COLOR_SPACES:
            if needle in lowered:
                return label
        return lowered.strip()
    value = (exif or {}).get("ColorSpace")
    if value is None:
        return None
    try:
        return EXIF_COLOR_SPACES.get(int(value), "unknown")
    except (TypeError, ValueError):
        return None


def dominant_colors_for(data: bytes, count: int = DOMINANT_COLOR_COUNT) -> List[DominantColor]:
    """
    Quantize a downsampled copy of the image and return the most common colours.

    Coverage is the share of sampled pixels nearest to each palette entry.
    """
    with Image.open(io.BytesIO(data)) as image:
        sample = image.convert("RGB")
    sample.thumbnail(SAMPLE_SIZE)
    quantized = sample.quantize(colors=max(count * 2, 8), method=Image.Quantize.MEDIANCUT)
    palette = quantized.getpalette() or []
    counts = sorted(quantized.getcolors() or [], reverse=True)
    total = sum(n for n, _ in counts) or 1

    colors: List[DominantColor] = []
    seen = set()
    for n, index in counts:
        r, g, b = palette[index * 3: index * 3 + 3]
        hex_value = f"#{r:02x}{g:02x}{b:02x}"
        if hex_value in seen:
            continue
        seen.add(hex_value)
        colors.append({"hex": hex_value, "coverage": round(n / total, 4)})
        if len(colors) >= count:
            break
    return colors


def derive_computed_metadata(
    metadata: Mapping[str, Any],
    load_preview: Callable[[], Optional[bytes]],
    fields: Sequence[str] = COMPUTED_FIELDS,
) -> Dict[str, Any]:
    """
    Compute the requested fields from a metadata view.

    Args:
        metadata: Merged view holding image_width/height, exif, icc_profile_description
        load_preview: Returns preview bytes, or None; only called for dominant_colors
        fields: Subset of COMPUTED_FIELDS to derive

    Returns:
        Field -> value for every field that could be derived
    """
    width = metadata.get("image_width")
    height = metadata.get("image_height")
    derived: Dict[str, Any] = {}

    for field_name in fields:
        if field_name == "orientation":
            value = orientation_for(width, height)
        elif field_name == "resolution_class":
            value = resolution_class_for(width, height)
        elif field_name == "color_space":
            value = color_space_for(metadata.get("exif"), metadata.get("icc_profile_description"))
        elif field_name == "dominant_colors":
            data = load_preview()
            if data is None:
                continue
            try:
                value = dominant_colors_for(data)
            except (UnidentifiedImageError, OSError) as e:
                logger.warning("Could not sample preview for dominant colours: %s", e)
                continue
        else:
            raise ValueError(f"Unknown computed field '{field_name}'")
        if value is not None:
            derived[field_name] = value
    return derived


class PopulateComputedMetadataStage(Stage):
    """
    Responsibilities:
    - Fill computed fields the asset does not already have
    - Write them to the version (folded into the asset once finalized)
    """

    name = POPULATE_COMPUTED_METADATA
    gated = True

    def should_run(self, ctx: StageContext, settings: PipelineSettings) -> bool:
        return True

    def execute(self, ctx: StageContext, settings: PipelineSettings) -> StageContext:
        if not ctx.category.has_pixels:
            raise StageSkipped(self.name, ReasonCode.NOT_AN_IMAGE)

        missing = [f for f in COMPUTED_FIELDS if not is_meaningful(ctx.asset.metadata.get(f))]
        if not missing:
            raise StageSkipped(self.name, ReasonCode.ALREADY_GENERATED)

        view = ctx.metadata_view()
        derived = derive_computed_metadata(view, ctx.preview_bytes, missing)
        if not derived:
            raise StageSkipped(self.name, ReasonCode.THUMBNAIL_UNAVAILABLE)

        ctx.version_patch.update(derived)
        logger.debug("[%s] Computed %s", ctx.asset_id, ", ".join(sorted(derived)))
        return ctx
