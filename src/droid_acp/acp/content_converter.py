"""ACP to droid prompt conversion.

A prompt from the editor is a list of ACP content blocks. The droid takes a
single user message: one text plus base64 images. Embedded resources become
``<context ref="...">`` elements in the text.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from acp.schema import (  # type: ignore[import-untyped]
    AudioContentBlock,
    EmbeddedResourceContentBlock,
    ImageContentBlock,
    ResourceContentBlock,
    TextContentBlock,
)

from .text import normalize_base64_data_url

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"
IMAGES_ONLY_TEXT = "Please see the attached image(s)."


@dataclass
class ConversionResult:
    """A prompt converted to a droid user message.

    Attributes:
        text: Message text
        images: ``{"type": "base64", "data", "mediaType"}`` images
        warnings: Notes about content that was dropped
    """

    text: str = ""
    images: list[dict[str, str]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def has_images(self) -> bool:
        return bool(self.images)


def _field(block: Any, *names: str) -> Any:
    """Attribute or key lookup, so plain dict blocks work too."""
    for name in names:
        value = block.get(name) if isinstance(block, dict) else getattr(block, name, None)
        if value is not None:
            return value
    return None


def _image(data: str, mime_type: str) -> dict[str, str]:
    mime, b64 = normalize_base64_data_url(data, mime_type)
    return {"type": "base64", "data": b64, "mediaType": mime}


@dataclass
class AcpToDroidContentConverter:
    """Converts ACP content blocks into a droid user message.

    Supported content types:
    - TextContentBlock -> text
    - ImageContentBlock -> base64 image, or ``(image: <uri>)`` without data
    - EmbeddedResourceContentBlock -> ``<context>`` text, image or binary note
    - ResourceContentBlock -> ``@<uri>`` mention
    - AudioContentBlock -> NOT SUPPORTED (warning generated)
    """

    def convert(self, blocks: list[Any]) -> ConversionResult:
        result = ConversionResult()
        text_parts: list[str] = []

        for block in blocks:
            self._process_block(block, result, text_parts)

        text = "\n".join(text_parts).strip()
        if not text and result.images:
            text = IMAGES_ONLY_TEXT
        result.text = text
        return result

    def _process_block(self, block: Any, result: ConversionResult, text_parts: list[str]) -> None:
        block_type = _field(block, "type")

        if isinstance(block, TextContentBlock) or block_type == "text":
            text_parts.append(_field(block, "text") or "")

        elif isinstance(block, ImageContentBlock) or block_type == "image":
            mime_type = _field(block, "mime_type", "mimeType") or DEFAULT_MIME_TYPE
            data = _field(block, "data")
            uri = _field(block, "uri")
            if data:
                result.images.append(_image(data, mime_type))
            elif uri:
                text_parts.append(f"(image: {uri})")

        elif isinstance(block, EmbeddedResourceContentBlock) or block_type == "resource":
            self._convert_embedded_resource(_field(block, "resource"), result, text_parts)

        elif isinstance(block, ResourceContentBlock) or block_type == "resource_link":
            text_parts.append(f"@{_field(block, 'uri')}")

        elif isinstance(block, AudioContentBlock) or block_type == "audio":
            logger.warning("Audio content is not supported; dropping it")
            result.warnings.append("Audio content is not currently supported.")

        else:
            logger.debug(f"Skipping unsupported block type: {block_type}")

    def _convert_embedded_resource(
        self, resource: Any, result: ConversionResult, text_parts: list[str]
    ) -> None:
        if resource is None:
            return
        uri = _field(resource, "uri")

        text = _field(resource, "text")
        if text is not None:
            text_parts.append(f'\n<context ref="{uri}">\n{text}\n</context>')
            return

        blob = _field(resource, "blob")
        if blob is None:
            return
        mime_type = _field(resource, "mime_type", "mimeType") or DEFAULT_MIME_TYPE
        if mime_type.startswith("image/"):
            if isinstance(blob, str) and blob:
                result.images.append(_image(blob, mime_type))
        elif uri:
            text_parts.append(f'\n<context ref="{uri}">\n(binary resource: {mime_type})\n</context>')
        else:
            text_parts.append(f"\n(binary resource: {mime_type})")


def convert_prompt(blocks: list[Any]) -> ConversionResult:
    return AcpToDroidContentConverter().convert(blocks)
