"""Token-budget transcript truncation.

Removes the least content needed to bring an over-budget request under
the token limit while keeping the transcript valid backend input:
  Strategy A: drop whole interior conversational rounds (oldest first)
  Strategy B: drop assistant tool_use / user tool_result message pairs

The first round (original question) and the trailing window of recent
messages are never touched. Removal is computed as an index set and the
message list is rebuilt in one pass.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from claudebridge.api.models import (
    Round,
    TokenLimitError,
    ToolPair,
    parse_messages,
)
from claudebridge.api.tokens import TokenEstimator
from claudebridge.config import Settings

logger = logging.getLogger(__name__)

_TOKEN_LIMIT_PATTERN = re.compile(
    r"prompt is too long:\s*(\d+)\s*tokens?\s*>\s*(\d+)\s*maximum",
    re.IGNORECASE,
)


# ------------------------------------------------------------------
# Transcript analysis
# ------------------------------------------------------------------


def group_rounds(
    messages: list[dict[str, Any]], estimator: TokenEstimator
) -> list[Round]:
    """Partition a transcript into conversational rounds.

    A round starts at index 0 or at a real user turn (a user message not
    made up entirely of tool results) and runs up to the next one.
    Rounds cover the transcript exactly once, in order.
    """
    if not messages:
        return []

    parsed = parse_messages(messages)
    costs = [estimator.estimate_message(m) for m in messages]

    rounds: list[Round] = []
    start = 0
    for i in range(1, len(parsed)):
        if parsed[i].is_real_user_turn:
            rounds.append(Round(start, i, sum(costs[start:i])))
            start = i
    rounds.append(Round(start, len(parsed), sum(costs[start:])))
    return rounds


def find_tool_pairs(
    messages: list[dict[str, Any]], estimator: TokenEstimator
) -> list[ToolPair]:
    """Find adjacent (assistant tool_use, user tool_result) message pairs.

    Pairing is positional; whether the ids actually match is left to
    validate_transcript().
    """
    parsed = parse_messages(messages)
    pairs: list[ToolPair] = []
    for i in range(len(parsed) - 1):
        current, following = parsed[i], parsed[i + 1]
        if (
            current.role == "assistant"
            and current.has_tool_use()
            and following.role == "user"
            and following.has_tool_result()
        ):
            cost = estimator.estimate_message(messages[i]) + estimator.estimate_message(
                messages[i + 1]
            )
            pairs.append(ToolPair(i, i + 1, cost))
    return pairs


# Issue keys identify problems by the message objects involved, not by
# position, so they stay comparable after messages are removed.
IssueKey = tuple[Any, ...]


def _find_issues(messages: list[dict[str, Any]]) -> list[tuple[IssueKey, str]]:
    if not messages:
        return [(("empty",), "transcript is empty")]

    parsed = parse_messages(messages)
    issues: list[tuple[IssueKey, str]] = []

    if parsed[0].role != "user":
        issues.append((
            ("first_role", id(messages[0])),
            f"first message has role '{parsed[0].role}', expected 'user'",
        ))

    for i in range(1, len(parsed)):
        if parsed[i].role == parsed[i - 1].role:
            issues.append((
                ("same_role", id(messages[i - 1]), id(messages[i])),
                f"messages {i - 1} and {i} both have role '{parsed[i].role}'",
            ))

    for i, msg in enumerate(parsed):
        previous = parsed[i - 1].tool_use_ids() if i > 0 else set()
        for tool_id in sorted(msg.tool_result_ids() - previous):
            issues.append((
                ("orphaned_tool_result", tool_id, id(messages[i])),
                f"orphaned tool_result '{tool_id}' in message {i}: "
                f"no matching tool_use in the preceding message",
            ))

    for i, msg in enumerate(parsed):
        following = parsed[i + 1].tool_result_ids() if i + 1 < len(parsed) else set()
        for tool_id in sorted(msg.tool_use_ids() - following):
            issues.append((
                ("orphaned_tool_use", tool_id, id(messages[i])),
                f"orphaned tool_use '{tool_id}' in message {i}: "
                f"no matching tool_result in the following message",
            ))

    return issues


def validate_transcript(messages: list[dict[str, Any]]) -> list[str]:
    """Check structural invariants. Returns issue descriptions (empty = valid).

    Advisory only: nothing is repaired here.
    """
    return [description for _, description in _find_issues(messages)]


def parse_token_limit_error(error_text: str) -> TokenLimitError | None:
    """Parse an upstream "prompt is too long: N tokens > M maximum" error."""
    if not error_text:
        return None
    match = _TOKEN_LIMIT_PATTERN.search(error_text)
    if not match:
        return None
    return TokenLimitError(
        actual_tokens=int(match.group(1)),
        max_tokens=int(match.group(2)),
    )


# ------------------------------------------------------------------
# Truncator
# ------------------------------------------------------------------


class TranscriptTruncator:
    """Shrinks over-budget request bodies in place.

    Owns a TokenEstimator configured from settings. A removal that
    introduces a structural issue the transcript did not already have is
    rolled back: after Strategy A the truncator falls back to Strategy B,
    after Strategy B it gives up and leaves the body untouched.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self.estimator = TokenEstimator(
            chars_per_token=settings.chars_per_token,
            tokens_per_image=settings.tokens_per_image,
        )

    def truncate(self, body: dict[str, Any], token_limit: int | None = None) -> bool:
        """Truncate body["messages"] to fit token_limit. Returns True if mutated."""
        limit = self._settings.token_limit if token_limit is None else token_limit
        messages = body.get("messages")
        min_keep = self._settings.min_messages_to_keep

        total = self.estimator.estimate(body)
        logger.debug(
            "Truncation check: total=%d system=%d tools=%d messages=%d limit=%d count=%d",
            total,
            self.estimator.estimate(body.get("system")),
            self.estimator.estimate(body.get("tools")),
            self.estimator.estimate(messages),
            limit,
            len(messages) if isinstance(messages, list) else 0,
        )
        if total <= limit:
            return False

        if not isinstance(messages, list) or len(messages) <= min_keep:
            logger.warning(
                "Over limit by ~%d tokens but only %d messages -- cannot truncate further",
                total - limit,
                len(messages) if isinstance(messages, list) else 0,
            )
            return False

        overage = total - limit
        baseline = {key for key, _ in _find_issues(messages)}
        logger.info(
            "Need to remove ~%d tokens from %d messages", overage, len(messages)
        )

        if self._drop_rounds(messages, overage, baseline):
            return True
        if self._drop_tool_pairs(messages, overage, baseline):
            return True

        logger.warning(
            "Could not free ~%d tokens (%d messages); forwarding as-is",
            overage,
            len(messages),
        )
        return False

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _drop_rounds(
        self, messages: list[dict[str, Any]], overage: int, baseline: set[IssueKey]
    ) -> bool:
        """Strategy A: remove interior rounds oldest-first until overage is covered."""
        rounds = group_rounds(messages, self.estimator)
        if len(rounds) <= 2:
            return False

        selected: list[Round] = []
        freed = 0
        for rnd in rounds[1:-1]:
            if freed >= overage:
                break
            selected.append(rnd)
            freed += rnd.token_estimate

        indices = {i for rnd in selected for i in rnd.span}
        if not self._remove(messages, indices, baseline):
            return False

        logger.info(
            "Removed %d of %d rounds (%d messages, ~%d tokens). Remaining: %d messages",
            len(selected),
            len(rounds),
            len(indices),
            freed,
            len(messages),
        )
        return True

    def _drop_tool_pairs(
        self, messages: list[dict[str, Any]], overage: int, baseline: set[IssueKey]
    ) -> bool:
        """Strategy B: remove tool pairs outside the first exchange and trailing window."""
        tail_start = len(messages) - self._settings.min_messages_to_keep
        candidates = [
            pair
            for pair in find_tool_pairs(messages, self.estimator)
            if pair.assistant_index >= 2 and pair.user_index < tail_start
        ]

        selected: list[ToolPair] = []
        freed = 0
        for pair in candidates:
            if freed >= overage:
                break
            selected.append(pair)
            freed += pair.token_estimate

        if not selected:
            return False

        indices = {i for pair in selected for i in (pair.assistant_index, pair.user_index)}
        if not self._remove(messages, indices, baseline):
            return False

        logger.info(
            "Removed %d tool pairs (%d messages, ~%d tokens). Remaining: %d messages",
            len(selected),
            len(indices),
            freed,
            len(messages),
        )
        return True

    @staticmethod
    def _remove(
        messages: list[dict[str, Any]], indices: set[int], baseline: set[IssueKey]
    ) -> bool:
        """Remove indices in one pass; restore the list if it introduced new issues."""
        if not indices:
            return False

        original = list(messages)
        messages[:] = [m for i, m in enumerate(original) if i not in indices]

        issues = _find_issues(messages)
        introduced = [text for key, text in issues if key not in baseline]
        if introduced:
            logger.warning(
                "Removal would break transcript structure, rolling back: %s",
                "; ".join(introduced),
            )
            messages[:] = original
            return False
        if issues:
            logger.warning(
                "Transcript has pre-existing issues: %s",
                "; ".join(text for _, text in issues),
            )
        return True
