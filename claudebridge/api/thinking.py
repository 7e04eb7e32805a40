"""Render thinking segments as readable markup for OpenAI-format clients.

OpenAI chat clients have no notion of a reasoning channel, so thinking
text is folded into the content stream: an opening marker, every
non-empty line as its own italic paragraph, a closing marker and a
one-time pointer in front of the answer that follows.
"""

from __future__ import annotations

import re

from claudebridge.api.models import ThinkingFlags

THINKING_OPEN = "🧠💭\n\n"
THINKING_CLOSE = "\n\n💤🧠\n\n---\n\n"
ANSWER_MARKER = "👉🏼 "
EMPHASIS = "*"
PARAGRAPH_BREAK = "\n\n"

_LINE_SPLIT = re.compile(r"\n+")


class ThinkingRenderer:
    """Streams thinking fragments into bulleted italic markup.

    State lives in the ThinkingFlags of the caller's ConverterState, so
    emphasis spans stay balanced across fragment boundaries.
    """

    def __init__(self, flags: ThinkingFlags) -> None:
        self._flags = flags

    @property
    def in_thinking(self) -> bool:
        return self._flags.in_thinking

    def feed(self, text: str) -> str:
        """Render one thinking fragment. Opens the segment on first use."""
        flags = self._flags
        out: list[str] = []
        if not flags.in_thinking:
            flags.in_thinking = True
            flags.had_thinking = True
            flags.answer_started = False
            flags.needs_bullet = True
            out.append(THINKING_OPEN)

        for ch in text:
            if ch == "\n":
                # A newline ends the current italic line, if one is open
                if not flags.needs_bullet:
                    out.append(EMPHASIS)
                    flags.needs_bullet = True
                continue
            if flags.needs_bullet and not ch.isspace():
                out.append(PARAGRAPH_BREAK + EMPHASIS)
                flags.needs_bullet = False
            out.append(ch)

        return "".join(out)

    def close(self) -> str:
        """Close an open segment. Returns "" when no segment is open."""
        flags = self._flags
        if not flags.in_thinking:
            return ""
        flags.in_thinking = False
        # needs_bullet means the last italic line was already closed by a newline
        closing = "" if flags.needs_bullet else EMPHASIS
        flags.needs_bullet = True
        return closing + THINKING_CLOSE

    def answer_prefix(self) -> str:
        """Marker for the first answer text after thinking, consumed once."""
        flags = self._flags
        if flags.had_thinking and not flags.answer_started:
            flags.answer_started = True
            return ANSWER_MARKER
        return ""


def format_thinking_block(text: str) -> str:
    """Render a complete thinking block (non-streaming responses)."""
    lines = [line.strip() for line in _LINE_SPLIT.split(text)]
    body = PARAGRAPH_BREAK.join(f"{EMPHASIS}{line}{EMPHASIS}" for line in lines if line)
    return f"{THINKING_OPEN}{body}{THINKING_CLOSE}{ANSWER_MARKER}"
