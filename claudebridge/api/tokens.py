"""Heuristic token estimation with image-aware accounting.

Serializes a value to compact JSON and divides the character count by a
fixed chars-per-token ratio. Embedded images are swapped for a short
placeholder and charged a fixed per-image cost instead, since a base64
payload's length says nothing about what the image really costs.
"""

from __future__ import annotations

import json
import math
import re
from typing import Any

CHARS_PER_TOKEN = 3.5
TOKENS_PER_IMAGE = 1600
IMAGE_PLACEHOLDER = "[IMAGE]"

_BASE64_DATA_URI = re.compile(r"^data:image/[^;]+;base64,")


def _serialize(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


def _strip_block(block: Any) -> tuple[Any, int]:
    """Return (block with image payloads replaced, number of images found)."""
    if not isinstance(block, dict):
        return block, 0

    source = block.get("source")
    if isinstance(source, dict) and source.get("type") == "base64":
        return {**block, "source": {**source, "data": IMAGE_PLACEHOLDER}}, 1

    if block.get("type") == "image_url":
        image_url = block.get("image_url")
        url = image_url.get("url") if isinstance(image_url, dict) else None
        if isinstance(url, str) and _BASE64_DATA_URI.match(url):
            return {**block, "image_url": {**image_url, "url": IMAGE_PLACEHOLDER}}, 1

    if block.get("type") == "image":
        return {"type": "image", "source": {"type": "placeholder"}}, 1

    # Tool results may carry screenshots as nested content blocks
    if block.get("type") == "tool_result" and isinstance(block.get("content"), list):
        nested, count = _strip_content(block["content"])
        if count:
            return {**block, "content": nested}, count

    return block, 0


def _strip_content(content: list[Any]) -> tuple[list[Any], int]:
    cleaned: list[Any] = []
    total = 0
    for block in content:
        new_block, count = _strip_block(block)
        cleaned.append(new_block)
        total += count
    return cleaned, total


def strip_images(messages: list[Any]) -> tuple[list[Any], int]:
    """Copy-on-write image stripping over a message list.

    Messages without images are returned as the same objects; the input
    is never mutated.
    """
    cleaned: list[Any] = []
    image_count = 0
    for msg in messages:
        content = msg.get("content") if isinstance(msg, dict) else None
        if not isinstance(content, list):
            cleaned.append(msg)
            continue
        new_content, count = _strip_content(content)
        if count:
            image_count += count
            cleaned.append({**msg, "content": new_content})
        else:
            cleaned.append(msg)
    return cleaned, image_count


class TokenEstimator:
    """Estimates token counts for JSON-like values.

    Works the same on a single message, a list of messages, or a full
    request body (a mapping with a "messages" key).
    """

    def __init__(
        self,
        chars_per_token: float = CHARS_PER_TOKEN,
        tokens_per_image: int = TOKENS_PER_IMAGE,
    ) -> None:
        self.chars_per_token = chars_per_token
        self.tokens_per_image = tokens_per_image

    def _text_tokens(self, value: Any) -> int:
        return math.ceil(len(_serialize(value)) / self.chars_per_token)

    def estimate(self, value: Any) -> int:
        """Estimate tokens for any JSON-like value. None counts as 0."""
        if value is None:
            return 0

        image_count = 0
        if isinstance(value, list):
            value, image_count = strip_images(value)
        elif isinstance(value, dict) and isinstance(value.get("messages"), list):
            messages, image_count = strip_images(value["messages"])
            value = {**value, "messages": messages}

        return self._text_tokens(value) + image_count * self.tokens_per_image

    def estimate_message(self, message: dict[str, Any]) -> int:
        """Estimate tokens for one message (per-round / per-pair accounting)."""
        if message is None:
            return 0
        content = message.get("content")
        if not isinstance(content, list):
            return self._text_tokens(message)
        cleaned, image_count = _strip_content(content)
        return (
            self._text_tokens({**message, "content": cleaned})
            + image_count * self.tokens_per_image
        )
