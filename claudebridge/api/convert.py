"""Conversion between OpenAI chat-completions and Anthropic Messages formats.

Requests go OpenAI -> Anthropic before forwarding; complete (non-streaming)
responses come back Anthropic -> OpenAI. Streaming responses are handled
by claudebridge.api.streaming.
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any

from claudebridge.api.models import TextBlock, ThinkingBlock, ToolUseBlock, parse_block
from claudebridge.api.thinking import format_thinking_block
from claudebridge.config import Settings

logger = logging.getLogger(__name__)

# OpenAI-only parameters the Messages API rejects
_OPENAI_ONLY_PARAMS = (
    "stream_options",
    "frequency_penalty",
    "presence_penalty",
    "logit_bias",
    "logprobs",
    "top_logprobs",
    "n",
    "user",
    "response_format",
    "parallel_tool_calls",
    "seed",
    "store",
    "metadata",
    "reasoning_effort",
)

# Sampling parameters not allowed together with extended thinking
_THINKING_INCOMPATIBLE = ("temperature", "top_p", "top_k")

# Anthropic minimum for thinking.budget_tokens
_MIN_THINKING_BUDGET = 1024

_DATA_URI = re.compile(r"^data:(image/[^;]+);base64,(.*)$", re.DOTALL)


def map_stop_reason(stop_reason: str | None) -> str | None:
    """Map an Anthropic stop_reason to an OpenAI finish_reason."""
    if stop_reason == "end_turn":
        return "stop"
    if stop_reason == "tool_use":
        return "tool_calls"
    return stop_reason or None


def completion_id(message_id: str | None) -> str:
    if message_id:
        return "chatcmpl-" + message_id.replace("msg_", "", 1)
    return f"chatcmpl-{int(time.time() * 1000)}"


# ------------------------------------------------------------------
# Responses: Anthropic -> OpenAI
# ------------------------------------------------------------------


def convert_response(data: dict[str, Any]) -> dict[str, Any]:
    """Convert one complete Messages API response to a chat.completion."""
    usage = data.get("usage") or {}
    input_tokens = usage.get("input_tokens") or 0
    output_tokens = usage.get("output_tokens") or 0

    text_parts: list[str] = []
    tool_calls: list[dict[str, Any]] = []
    for raw in data.get("content") or []:
        block = parse_block(raw)
        if isinstance(block, ThinkingBlock):
            if block.text:
                text_parts.append(format_thinking_block(block.text))
        elif isinstance(block, TextBlock):
            text_parts.append(block.text)
        elif isinstance(block, ToolUseBlock) and block.id and block.name:
            tool_calls.append({
                "id": block.id,
                "type": "function",
                "function": {
                    "name": block.name,
                    "arguments": json.dumps(
                        block.input or {}, separators=(",", ":"), ensure_ascii=False
                    ),
                },
            })

    text = "".join(text_parts)
    return {
        "id": completion_id(data.get("id")),
        "object": "chat.completion",
        "created": int(time.time()),
        "model": data.get("model") or "claude-unknown",
        "choices": [{
            "index": 0,
            "message": {
                "role": "assistant",
                "content": text or None,
                "tool_calls": tool_calls,
            },
            "finish_reason": map_stop_reason(data.get("stop_reason")),
        }],
        "usage": {
            "prompt_tokens": input_tokens,
            "completion_tokens": output_tokens,
            "total_tokens": input_tokens + output_tokens,
        },
    }


# ------------------------------------------------------------------
# Requests: OpenAI -> Anthropic
# ------------------------------------------------------------------


def convert_request(body: dict[str, Any], settings: Settings) -> dict[str, Any]:
    """Convert an OpenAI chat-completions body into a Messages API body.

    Returns a new dict; the input body is not modified.
    """
    body = dict(body)
    for key in _OPENAI_ONLY_PARAMS:
        body.pop(key, None)

    if "tool_choice" in body:
        tool_choice = convert_tool_choice(body.pop("tool_choice"))
        if tool_choice is not None:
            body["tool_choice"] = tool_choice

    if body.get("tools"):
        body["tools"] = [convert_tool(tool) for tool in body["tools"]]

    messages, system_texts = convert_messages(body.get("messages") or [])
    body["messages"] = messages

    system_blocks: list[dict[str, Any]] = []
    if settings.system_preamble:
        system_blocks.append({"type": "text", "text": settings.system_preamble})
    system_blocks.extend(_as_blocks(body.get("system")))
    system_blocks.extend({"type": "text", "text": text} for text in system_texts if text)
    if system_blocks:
        body["system"] = system_blocks
    else:
        body.pop("system", None)

    stop = body.pop("stop", None)
    if stop:
        body["stop_sequences"] = [stop] if isinstance(stop, str) else list(stop)

    max_completion_tokens = body.pop("max_completion_tokens", None)
    max_tokens = body.get("max_tokens") or max_completion_tokens or settings.default_max_tokens
    body["max_tokens"] = max_tokens

    if settings.thinking_enabled and "thinking" not in body:
        budget = min(settings.thinking_budget, max_tokens - 1000)
        if budget >= _MIN_THINKING_BUDGET:
            body["thinking"] = {"type": "enabled", "budget_tokens": budget}
        else:
            logger.debug("max_tokens=%d too small for thinking, leaving it off", max_tokens)

    if body.get("thinking"):
        for key in _THINKING_INCOMPATIBLE:
            body.pop(key, None)

    return body


def convert_tool_choice(tool_choice: Any) -> dict[str, Any] | None:
    if tool_choice == "auto":
        return {"type": "auto"}
    if tool_choice == "none":
        return None
    if tool_choice == "required":
        return {"type": "any"}
    if isinstance(tool_choice, dict):
        function = tool_choice.get("function") or {}
        if tool_choice.get("type") == "function" and function.get("name"):
            return {"type": "tool", "name": function["name"]}
        return tool_choice
    return None


def convert_tool(tool: dict[str, Any]) -> dict[str, Any]:
    function = tool.get("function")
    if tool.get("type") == "function" and function:
        return {
            "name": function.get("name", ""),
            "description": function.get("description") or "",
            "input_schema": function.get("parameters") or {"type": "object", "properties": {}},
        }
    return tool


def convert_messages(
    messages: list[dict[str, Any]],
) -> tuple[list[dict[str, Any]], list[str]]:
    """Convert OpenAI messages. Returns (anthropic_messages, system_texts).

    Consecutive messages that end up with the same role are merged, so the
    results of parallel tool calls share one user message.
    """
    converted: list[dict[str, Any]] = []
    system_texts: list[str] = []

    for msg in messages:
        role = msg.get("role")
        if role in ("system", "developer"):
            system_texts.append(_text_of(msg.get("content")))
        elif role == "assistant" and msg.get("tool_calls"):
            content: list[dict[str, Any]] = []
            text = _text_of(msg.get("content"))
            if text:
                content.append({"type": "text", "text": text})
            for call in msg["tool_calls"]:
                function = call.get("function") or {}
                content.append({
                    "type": "tool_use",
                    "id": call.get("id"),
                    "name": function.get("name") or "",
                    "input": _parse_arguments(function.get("arguments")),
                })
            _append_message(converted, "assistant", content)
        elif role == "tool":
            _append_message(converted, "user", [{
                "type": "tool_result",
                "tool_use_id": msg.get("tool_call_id"),
                "content": _text_of(msg.get("content")),
            }])
        else:
            _append_message(converted, role, _convert_content(msg.get("content")))

    return converted, system_texts


def _append_message(
    messages: list[dict[str, Any]], role: str, content: str | list[dict[str, Any]]
) -> None:
    if messages and messages[-1]["role"] == role:
        previous = messages[-1]
        previous["content"] = _as_blocks(previous["content"]) + _as_blocks(content)
        return
    messages.append({"role": role, "content": content})


def _as_blocks(content: Any) -> list[dict[str, Any]]:
    if not content:
        return []
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    return list(content)


def _convert_content(content: Any) -> str | list[dict[str, Any]]:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return str(content)
    return [_convert_part(part) for part in content]


def _convert_part(part: Any) -> Any:
    if not isinstance(part, dict):
        return {"type": "text", "text": str(part)}
    if part.get("type") == "text":
        return {**part, "text": str(part.get("text") or "")}
    if part.get("type") == "image_url":
        image_url = part.get("image_url") or {}
        url = image_url.get("url", "") if isinstance(image_url, dict) else str(image_url)
        match = _DATA_URI.match(url)
        if match:
            return {
                "type": "image",
                "source": {"type": "base64", "media_type": match.group(1), "data": match.group(2)},
            }
        return {"type": "image", "source": {"type": "url", "url": url}}
    return part


def _text_of(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            str(part.get("text") or "") if isinstance(part, dict) else str(part)
            for part in content
        )
    return str(content)


def _parse_arguments(arguments: Any) -> dict[str, Any]:
    if isinstance(arguments, dict):
        return arguments
    if not arguments:
        return {}
    try:
        parsed = json.loads(arguments)
    except (TypeError, json.JSONDecodeError):
        logger.warning("Tool call arguments are not valid JSON, sending empty input")
        return {}
    return parsed if isinstance(parsed, dict) else {}
