"""Streaming conversion of Anthropic SSE events to OpenAI chat chunks.

One StreamConverter (and one ConverterState) per in-flight request. The
converter is fed upstream text as it arrives and returns the client
frames that became ready; nothing is buffered beyond a partial line.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator
from typing import Any

from claudebridge.api.convert import completion_id, map_stop_reason
from claudebridge.api.models import ConverterState, StreamOutput, ToolCallTracker
from claudebridge.api.thinking import ThinkingRenderer

logger = logging.getLogger(__name__)

KEEPALIVE_FRAME = ": ping\n\n"
DONE_FRAME = "data: [DONE]\n\n"
UNKNOWN_MODEL = "claude-unknown"


# ------------------------------------------------------------------
# SSE parsing
# ------------------------------------------------------------------


def parse_sse_line(line: str) -> dict[str, Any] | None:
    """Parse one upstream SSE line into an event dict.

    Skips event: lines, comments, blank lines and [DONE]. Malformed JSON
    is dropped so one bad frame never ends the stream.
    """
    line = line.strip()
    if not line or line.startswith(("event:", ":")):
        return None
    if line.startswith("data:"):
        line = line[5:].strip()
    if not line.startswith("{"):
        return None
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        logger.debug("Dropping malformed stream frame: %s", e)
        return None
    return data if isinstance(data, dict) else None


def _token_count(usage: dict[str, Any], key: str) -> int:
    value = usage.get(key)
    return value if isinstance(value, int) else 0


# ------------------------------------------------------------------
# Tool call argument assembly
# ------------------------------------------------------------------


class ToolCallAssembler:
    """Rebuilds tool-call argument strings per content block index.

    Upstream sends partial_json either as incremental pieces or as
    cumulative snapshots; both are turned into incremental deltas.
    """

    def __init__(self, trackers: dict[int, ToolCallTracker]) -> None:
        self._trackers = trackers

    def start(self, index: int, tool_id: str, name: str) -> ToolCallTracker:
        tracker = ToolCallTracker(id=tool_id, name=name)
        self._trackers[index] = tracker
        return tracker

    def feed(self, index: int, fragment: str) -> str | None:
        """Return the new argument text, or None if index was never started."""
        tracker = self._trackers.get(index)
        if tracker is None:
            return None
        if tracker.arguments and fragment.startswith(tracker.arguments):
            piece = fragment[len(tracker.arguments):]
            tracker.arguments = fragment
        else:
            piece = fragment
            tracker.arguments += fragment
        return piece


# ------------------------------------------------------------------
# Converter
# ------------------------------------------------------------------


class StreamConverter:
    """Anthropic stream events in, OpenAI chat.completion.chunk dicts out."""

    def __init__(self, state: ConverterState | None = None) -> None:
        self.state = state or ConverterState()
        self._thinking = ThinkingRenderer(self.state.thinking)
        self._tools = ToolCallAssembler(self.state.tool_calls)
        self._pending = ""
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def process_chunk(self, text: str) -> list[StreamOutput]:
        """Feed raw upstream text. A trailing partial line waits for the next chunk."""
        self._pending += text
        *lines, self._pending = self._pending.split("\n")
        outputs: list[StreamOutput] = []
        for line in lines:
            outputs.extend(self.process_line(line))
        return outputs

    def process_line(self, line: str) -> list[StreamOutput]:
        if self._done:
            return []
        event = parse_sse_line(line)
        if event is None:
            return []
        return self.process_event(event)

    def finish(self) -> list[StreamOutput]:
        """Flush the last partial line and make sure the stream is terminated."""
        outputs: list[StreamOutput] = []
        if self._pending:
            line, self._pending = self._pending, ""
            outputs.extend(self.process_line(line))
        if not self._done:
            logger.warning("Upstream stream ended without message_stop")
            closing = self._thinking.close()
            if closing:
                outputs.append(self._content(closing))
            outputs.append(StreamOutput("done"))
            self._done = True
        return outputs

    def process_event(self, event: dict[str, Any]) -> list[StreamOutput]:
        try:
            return self._dispatch(event)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.debug("Skipping malformed stream event %r: %s", event.get("type"), e)
            return []

    def _dispatch(self, event: dict[str, Any]) -> list[StreamOutput]:
        event_type = event.get("type")

        if event_type == "ping":
            return [StreamOutput("ping")]

        if event_type == "error":
            error = event.get("error") or {}
            logger.warning(
                "Upstream stream error: %s: %s",
                error.get("type", "unknown"),
                error.get("message", ""),
            )
            return []

        self._update_metrics(event)

        if event_type == "message_start":
            return [self._chunk({"role": "assistant", "content": ""})]

        if event_type == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") != "tool_use":
                return []
            index = event.get("index", 0)
            tool_id = block.get("id") or ""
            name = block.get("name") or ""
            self._tools.start(index, tool_id, name)
            return [self._chunk({
                "tool_calls": [{
                    "index": index,
                    "id": tool_id,
                    "type": "function",
                    "function": {"name": name, "arguments": ""},
                }],
            })]

        if event_type == "content_block_delta":
            return self._handle_delta(event.get("index", 0), event.get("delta") or {})

        if event_type == "content_block_stop":
            closing = self._thinking.close()
            return [self._content(closing)] if closing else []

        if event_type == "message_delta":
            stop_reason = (event.get("delta") or {}).get("stop_reason")
            if not stop_reason:
                return []
            return [self._chunk({}, finish_reason=map_stop_reason(stop_reason))]

        if event_type == "message_stop":
            outputs: list[StreamOutput] = []
            closing = self._thinking.close()
            if closing:
                outputs.append(self._content(closing))
            usage = self._usage_chunk()
            if usage is not None:
                outputs.append(usage)
            outputs.append(StreamOutput("done"))
            self._done = True
            return outputs

        return []

    def _handle_delta(self, index: int, delta: dict[str, Any]) -> list[StreamOutput]:
        if delta.get("partial_json"):
            piece = self._tools.feed(index, delta["partial_json"])
            if not piece:
                return []
            return [self._chunk({
                "tool_calls": [{"index": index, "function": {"arguments": piece}}],
            })]

        if delta.get("thinking"):
            content = self._thinking.feed(delta["thinking"])
            return [self._content(content)] if content else []

        if delta.get("text"):
            return [self._content(self._thinking.answer_prefix() + delta["text"])]

        return []

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def _update_metrics(self, event: dict[str, Any]) -> None:
        metrics = self.state.metrics
        message = event.get("message")
        if not isinstance(message, dict):
            message = {}

        if event.get("type") == "message_start" and message:
            upstream_id = message.get("id") or ""
            metrics.upstream_message_id = upstream_id
            if upstream_id:
                metrics.client_message_id = completion_id(upstream_id)
        if message.get("model"):
            metrics.model = message["model"]
        if event.get("model"):
            metrics.model = event["model"]

        stop_reason = (
            (event.get("delta") or {}).get("stop_reason")
            or event.get("stop_reason")
            or message.get("stop_reason")
        )
        if stop_reason:
            metrics.stop_reason = stop_reason

        for usage in (event.get("usage"), message.get("usage")):
            if not isinstance(usage, dict):
                continue
            metrics.input_tokens += _token_count(usage, "input_tokens")
            metrics.output_tokens += _token_count(usage, "output_tokens")
            metrics.cache_creation_tokens += _token_count(usage, "cache_creation_input_tokens")
            metrics.cache_read_tokens += _token_count(usage, "cache_read_input_tokens")

    def _usage_chunk(self) -> StreamOutput | None:
        metrics = self.state.metrics
        if metrics.input_tokens == 0 and metrics.output_tokens == 0:
            return None
        output = self._chunk({})
        usage: dict[str, Any] = {
            "prompt_tokens": metrics.input_tokens,
            "completion_tokens": metrics.output_tokens,
            "total_tokens": metrics.input_tokens + metrics.output_tokens,
        }
        if metrics.cache_read_tokens:
            usage["prompt_tokens_details"] = {"cached_tokens": metrics.cache_read_tokens}
        output.chunk["usage"] = usage
        return output

    # ------------------------------------------------------------------
    # Chunk builders
    # ------------------------------------------------------------------

    def _content(self, text: str) -> StreamOutput:
        return self._chunk({"content": text})

    def _chunk(
        self,
        delta: dict[str, Any],
        finish_reason: str | None = None,
    ) -> StreamOutput:
        metrics = self.state.metrics
        chunk = {
            "id": metrics.client_message_id or f"chatcmpl-{int(time.time() * 1000)}",
            "object": "chat.completion.chunk",
            "created": int(time.time()),
            "model": metrics.model or UNKNOWN_MODEL,
            "choices": [{
                "index": 0,
                "delta": delta,
                "finish_reason": finish_reason,
            }],
        }
        return StreamOutput("chunk", chunk)


# ------------------------------------------------------------------
# Client framing
# ------------------------------------------------------------------


def encode_chunk(chunk: dict[str, Any]) -> str:
    return f"data: {json.dumps(chunk, ensure_ascii=False)}\n\n"


def encode_output(output: StreamOutput) -> str:
    if output.kind == "ping":
        return KEEPALIVE_FRAME
    if output.kind == "done":
        return DONE_FRAME
    return encode_chunk(output.chunk or {})


async def convert_stream(chunks: AsyncIterator[str]) -> AsyncIterator[str]:
    """Per-connection transform: upstream text chunks in, client SSE frames out.

    Each frame is yielded (and so written by the caller) before the next
    upstream chunk is read.
    """
    converter = StreamConverter()
    async for text in chunks:
        for output in converter.process_chunk(text):
            yield encode_output(output)
        if converter.done:
            return
    for output in converter.finish():
        yield encode_output(output)
