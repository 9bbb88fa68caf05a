"""
AI-vision collaborator.

Sends a preview image to an OpenAI-compatible vision model and returns tag and
metadata candidates with confidence scores. Calls are best-effort: API errors
are mapped onto the pipeline's error taxonomy so the stage runner retries
transient ones and records the rest.
"""

from __future__ import annotations

import base64
import json
import logging
from functools import lru_cache
from typing import Any, Dict, List, Optional, Sequence

import openai
from openai import OpenAI

from .config import get_openai_config
from .pipeline.errors import StageError, TransientIOError
from .types import MetadataCandidate, TagCandidate

logger = logging.getLogger(__name__)

MAX_TAGS = 15

TAGGING_SYSTEM_PROMPT = (
    "You label images for a digital asset library. "
    "Return JSON of the form {\"tags\": [{\"tag\": str, \"confidence\": number}]} "
    "with at most %d short, lower-case, descriptive tags. Confidence is between 0 and 1."
)

METADATA_SYSTEM_PROMPT = (
    "You fill metadata fields for a digital asset library from an image. "
    "Return JSON of the form {\"fields\": {<field>: {\"value\": str, \"confidence\": number}}} "
    "using only the field names you are given. Omit fields you cannot determine. "
    "Confidence is between 0 and 1."
)

TRANSIENT_API_ERRORS = (
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)


@lru_cache(maxsize=1)
def _get_openai_client() -> OpenAI:
    cfg = get_openai_config()
    return OpenAI(api_key=cfg.api_key, base_url=cfg.api_base)


def _data_url(image: bytes, content_type: str) -> str:
    return f"data:{content_type};base64,{base64.b64encode(image).decode('ascii')}"


def _coerce_confidence(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, min(1.0, confidence))


class VisionClient:
    """
    Thin wrapper over chat.completions with image input.

    Usage:
        vision = VisionClient()
        tags = vision.tag_image(preview_bytes, "image/webp")
        fields = vision.generate_metadata(preview_bytes, "image/webp", ["title", "mood"])
    """

    def __init__(self, client: Optional[OpenAI] = None, model: Optional[str] = None):
        self._client = client
        self._model = model

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = _get_openai_client()
        return self._client

    @property
    def model(self) -> str:
        if self._model is None:
            self._model = get_openai_config().vision_model_name
        return self._model

    def _call(self, system_prompt: str, user_text: str, image: bytes, content_type: str) -> Dict[str, Any]:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                temperature=0,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": system_prompt},
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": user_text},
                            {"type": "image_url", "image_url": {"url": _data_url(image, content_type)}},
                        ],
                    },
                ],
            )
        except TRANSIENT_API_ERRORS as e:
            raise TransientIOError(f"Vision API temporarily unavailable: {e}", cause=e)
        except openai.APIError as e:
            raise StageError(f"Vision API error: {e}", cause=e)

        content = response.choices[0].message.content or ""
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            raise StageError(f"Vision model returned invalid JSON: {content[:200]}", cause=e)
        if not isinstance(parsed, dict):
            raise StageError("Vision model returned a non-object JSON payload")
        return parsed

    def tag_image(self, image: bytes, content_type: str = "image/webp", max_tags: int = MAX_TAGS) -> List[TagCandidate]:
        parsed = self._call(
            TAGGING_SYSTEM_PROMPT % max_tags,
            "Suggest tags for this image.",
            image,
            content_type,
        )
        candidates: List[TagCandidate] = []
        seen = set()
        for item in parsed.get("tags") or []:
            if isinstance(item, str):
                tag, confidence = item, None
            elif isinstance(item, dict):
                tag, confidence = item.get("tag"), _coerce_confidence(item.get("confidence"))
            else:
                continue
            if not isinstance(tag, str) or not tag.strip():
                continue
            key = tag.strip().lower()
            if key in seen:
                continue
            seen.add(key)
            candidates.append(TagCandidate(tag=tag.strip(), confidence=confidence))
        logger.debug("Vision model returned %d tag candidates", len(candidates))
        return candidates[:max_tags]

    def generate_metadata(
        self,
        image: bytes,
        content_type: str,
        fields: Sequence[str],
    ) -> List[MetadataCandidate]:
        if not fields:
            return []
        parsed = self._call(
            METADATA_SYSTEM_PROMPT,
            "Fields: " + ", ".join(fields),
            image,
            content_type,
        )
        raw_fields = parsed.get("fields") or {}
        if not isinstance(raw_fields, dict):
            return []
        candidates: List[MetadataCandidate] = []
        for key in fields:
            entry = raw_fields.get(key)
            if entry is None:
                continue
            if isinstance(entry, dict):
                value, confidence = entry.get("value"), entry.get("confidence")
            else:
                value, confidence = entry, None
            if value in (None, "", []):
                continue
            candidates.append(
                MetadataCandidate(field_key=key, value=value, confidence=_coerce_confidence(confidence))
            )
        return candidates


__all__ = ["VisionClient", "TRANSIENT_API_ERRORS"]
