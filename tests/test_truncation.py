"""Tests for transcript analysis and token-budget truncation."""

import copy
import logging

from claudebridge.api.models import Round, ToolPair
from claudebridge.api.tokens import TokenEstimator
from claudebridge.api.truncation import (
    TranscriptTruncator,
    find_tool_pairs,
    group_rounds,
    parse_token_limit_error,
    validate_transcript,
)
from tests.conftest import make_settings


def _user(text: str) -> dict:
    return {"role": "user", "content": text}


def _assistant(text: str) -> dict:
    return {"role": "assistant", "content": [{"type": "text", "text": text}]}


def _tool_use(tool_id: str, text: str = "calling") -> dict:
    return {
        "role": "assistant",
        "content": [
            {"type": "text", "text": text},
            {"type": "tool_use", "id": tool_id, "name": "read_file", "input": {"path": "a.py"}},
        ],
    }


def _tool_result(tool_id: str, output: str = "ok") -> dict:
    return {
        "role": "user",
        "content": [{"type": "tool_result", "tool_use_id": tool_id, "content": output}],
    }


def _mixed_user(tool_id: str, text: str) -> dict:
    """Tool result plus a fresh user question in one message."""
    return {
        "role": "user",
        "content": [
            {"type": "tool_result", "tool_use_id": tool_id, "content": "done"},
            {"type": "text", "text": text},
        ],
    }


def _body(messages: list[dict]) -> dict:
    return {"model": "claude-sonnet-4-5", "max_tokens": 1024, "messages": messages}


def _four_rounds() -> list[dict]:
    return [
        _user("first question " * 10),
        _assistant("first answer " * 10),
        _user("second question " * 10),
        _assistant("second answer " * 10),
        _user("third question " * 10),
        _assistant("third answer " * 10),
        _user("fourth question " * 10),
        _assistant("fourth answer " * 10),
    ]


def _over_by(truncator: TranscriptTruncator, body: dict, overage: int) -> int:
    """Token limit that puts body exactly `overage` tokens over budget."""
    return truncator.estimator.estimate(body) - overage


# ------------------------------------------------------------------
# Rounds
# ------------------------------------------------------------------


class TestGroupRounds:
    def test_empty(self):
        assert group_rounds([], TokenEstimator()) == []

    def test_simple_exchanges(self):
        est = TokenEstimator()
        messages = [_user("a"), _assistant("b"), _user("c"), _assistant("d")]
        rounds = group_rounds(messages, est)
        assert [(r.start, r.end) for r in rounds] == [(0, 2), (2, 4)]
        assert rounds[0].token_estimate == est.estimate_message(messages[0]) + est.estimate_message(
            messages[1]
        )

    def test_tool_results_do_not_start_rounds(self):
        messages = [
            _user("go"),
            _tool_use("t1"),
            _tool_result("t1"),
            _assistant("done"),
            _user("next"),
            _assistant("ok"),
        ]
        rounds = group_rounds(messages, TokenEstimator())
        assert [(r.start, r.end) for r in rounds] == [(0, 4), (4, 6)]

    def test_mixed_user_message_starts_round(self):
        messages = [_user("go"), _tool_use("t1"), _mixed_user("t1", "and also"), _assistant("ok")]
        rounds = group_rounds(messages, TokenEstimator())
        assert [(r.start, r.end) for r in rounds] == [(0, 2), (2, 4)]

    def test_leading_assistant_forms_first_round(self):
        messages = [_assistant("hello"), _user("hi"), _assistant("how can I help")]
        rounds = group_rounds(messages, TokenEstimator())
        assert [(r.start, r.end) for r in rounds] == [(0, 1), (1, 3)]

    def test_rounds_cover_every_index_once(self):
        messages = _four_rounds()
        rounds = group_rounds(messages, TokenEstimator())
        covered = [i for r in rounds for i in r.span]
        assert covered == list(range(len(messages)))

    def test_round_span(self):
        assert list(Round(2, 5, 10).span) == [2, 3, 4]


# ------------------------------------------------------------------
# Tool pairs
# ------------------------------------------------------------------


class TestFindToolPairs:
    def test_finds_adjacent_pairs(self):
        est = TokenEstimator()
        messages = [
            _user("go"),
            _tool_use("t1"),
            _tool_result("t1"),
            _tool_use("t2"),
            _tool_result("t2"),
            _assistant("done"),
        ]
        pairs = find_tool_pairs(messages, est)
        assert [(p.assistant_index, p.user_index) for p in pairs] == [(1, 2), (3, 4)]
        assert pairs[0].token_estimate == est.estimate_message(messages[1]) + est.estimate_message(
            messages[2]
        )

    def test_pairing_is_positional(self):
        messages = [_user("go"), _tool_use("t1"), _tool_result("other")]
        pairs = find_tool_pairs(messages, TokenEstimator())
        assert pairs == [ToolPair(1, 2, pairs[0].token_estimate)]

    def test_no_pairs_in_plain_chat(self):
        assert find_tool_pairs(_four_rounds(), TokenEstimator()) == []

    def test_assistant_without_tool_use_not_paired(self):
        messages = [_user("go"), _assistant("text only"), _tool_result("t1")]
        assert find_tool_pairs(messages, TokenEstimator()) == []


# ------------------------------------------------------------------
# Validation
# ------------------------------------------------------------------


class TestValidateTranscript:
    def test_valid(self):
        messages = [_user("go"), _tool_use("t1"), _tool_result("t1"), _assistant("done")]
        assert validate_transcript(messages) == []

    def test_empty(self):
        assert validate_transcript([]) == ["transcript is empty"]

    def test_first_message_not_user(self):
        issues = validate_transcript([_assistant("hi"), _user("hello")])
        assert issues == ["first message has role 'assistant', expected 'user'"]

    def test_consecutive_roles(self):
        issues = validate_transcript([_user("a"), _user("b")])
        assert issues == ["messages 0 and 1 both have role 'user'"]

    def test_orphaned_tool_result(self):
        issues = validate_transcript([_user("go"), _assistant("sure"), _tool_result("t9")])
        assert issues == [
            "orphaned tool_result 't9' in message 2: no matching tool_use in the preceding message"
        ]

    def test_orphaned_tool_use(self):
        issues = validate_transcript([_user("go"), _tool_use("t1"), _user("never mind")])
        assert issues == [
            "orphaned tool_use 't1' in message 1: no matching tool_result in the following message"
        ]

    def test_reports_multiple_issues(self):
        issues = validate_transcript([_assistant("a"), _assistant("b")])
        assert len(issues) == 2

    def test_does_not_mutate(self):
        messages = [_assistant("a"), _tool_result("t1")]
        original = copy.deepcopy(messages)
        validate_transcript(messages)
        assert messages == original


# ------------------------------------------------------------------
# Truncation
# ------------------------------------------------------------------


class TestTruncate:
    def test_under_limit_untouched(self):
        truncator = TranscriptTruncator(make_settings())
        body = _body(_four_rounds())
        original = copy.deepcopy(body)
        assert truncator.truncate(body) is False
        assert body == original

    def test_exactly_at_limit_untouched(self):
        truncator = TranscriptTruncator(make_settings())
        body = _body(_four_rounds())
        assert truncator.truncate(body, token_limit=_over_by(truncator, body, 0)) is False
        assert len(body["messages"]) == 8

    def test_too_few_messages(self):
        truncator = TranscriptTruncator(make_settings())
        body = _body(_four_rounds()[:4])
        assert truncator.truncate(body, token_limit=10) is False
        assert len(body["messages"]) == 4

    def test_min_messages_setting(self):
        truncator = TranscriptTruncator(make_settings(min_messages_to_keep=8))
        body = _body(_four_rounds())
        assert truncator.truncate(body, token_limit=10) is False
        assert len(body["messages"]) == 8

    def test_uses_settings_limit_by_default(self):
        truncator = TranscriptTruncator(make_settings())
        body = _body(_four_rounds())
        limit = _over_by(truncator, body, 1)
        truncator = TranscriptTruncator(make_settings(token_limit=limit))
        assert truncator.truncate(body) is True

    def test_drops_oldest_interior_round_first(self):
        truncator = TranscriptTruncator(make_settings())
        messages = _four_rounds()
        body = _body(list(messages))
        assert truncator.truncate(body, token_limit=_over_by(truncator, body, 1)) is True
        assert body["messages"] == messages[:2] + messages[4:]
        assert validate_transcript(body["messages"]) == []

    def test_drops_rounds_until_overage_covered(self):
        truncator = TranscriptTruncator(make_settings())
        messages = _four_rounds()
        body = _body(list(messages))
        rounds = group_rounds(messages, truncator.estimator)
        overage = rounds[1].token_estimate + 1
        assert truncator.truncate(body, token_limit=_over_by(truncator, body, overage)) is True
        assert body["messages"] == messages[:2] + messages[6:]

    def test_first_and_last_rounds_always_kept(self):
        truncator = TranscriptTruncator(make_settings())
        messages = _four_rounds()
        body = _body(list(messages))
        truncator.truncate(body, token_limit=10)
        assert body["messages"][:2] == messages[:2]
        assert body["messages"][-2:] == messages[-2:]

    def test_images_charged_per_image(self):
        truncator = TranscriptTruncator(make_settings())
        screenshot = {
            "role": "user",
            "content": [
                {"type": "text", "text": "what is this"},
                {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": "A" * 200_000}},
            ],
        }
        messages = _four_rounds()
        messages[2] = screenshot
        body = _body(messages)
        # 200k base64 chars would be ~57k tokens as text; the image costs 1600
        assert truncator.estimator.estimate(body) < 3000
        assert truncator.truncate(body, token_limit=5000) is False

    def test_tool_pairs_when_single_round(self):
        truncator = TranscriptTruncator(make_settings())
        messages = [
            _user("fix the bug"),
            _tool_use("t1"),
            _tool_result("t1", "x" * 200),
            _tool_use("t2"),
            _tool_result("t2", "y" * 200),
            _tool_use("t3"),
            _tool_result("t3", "z" * 200),
            _tool_use("t4"),
            _tool_result("t4", "w" * 200),
            _assistant("fixed"),
        ]
        body = _body(list(messages))
        assert truncator.truncate(body, token_limit=_over_by(truncator, body, 1)) is True
        assert body["messages"] == messages[:3] + messages[5:]
        assert validate_transcript(body["messages"]) == []

    def test_tool_pairs_respect_recent_window(self):
        truncator = TranscriptTruncator(make_settings())
        messages = [
            _user("fix the bug"),
            _tool_use("t1"),
            _tool_result("t1"),
            _tool_use("t2"),
            _tool_result("t2"),
            _tool_use("t3"),
            _tool_result("t3"),
            _tool_use("t4"),
            _tool_result("t4"),
            _assistant("fixed"),
        ]
        body = _body(list(messages))
        # Even a huge overage may only take the one eligible pair
        assert truncator.truncate(body, token_limit=10) is True
        assert body["messages"] == messages[:3] + messages[5:]

    def test_round_removal_rolled_back_then_tool_pairs(self):
        truncator = TranscriptTruncator(make_settings())
        messages = [
            _user("start"),
            _tool_use("t1"),
            _mixed_user("t1", "also check the tests"),
            _tool_use("t2"),
            _tool_result("t2"),
            _assistant("checked"),
            _user("thanks"),
            _assistant("welcome"),
            _user("one more"),
            _assistant("sure"),
        ]
        body = _body(list(messages))
        assert truncator.truncate(body, token_limit=_over_by(truncator, body, 1)) is True
        # Dropping round [2, 6) would orphan t1; the t2 pair goes instead
        assert body["messages"] == messages[:3] + messages[5:]
        assert validate_transcript(body["messages"]) == []

    def test_rollback_with_nothing_else_leaves_body_untouched(self):
        truncator = TranscriptTruncator(make_settings())
        messages = [
            _user("start"),
            _tool_use("t1"),
            _mixed_user("t1", "also check the tests"),
            _assistant("checked"),
            _user("thanks"),
            _assistant("welcome"),
            _user("one more"),
            _assistant("sure"),
        ]
        body = _body(copy.deepcopy(messages))
        assert truncator.truncate(body, token_limit=_over_by(truncator, body, 1)) is False
        assert body["messages"] == messages

    def test_preexisting_issues_do_not_block_removal(self):
        truncator = TranscriptTruncator(make_settings())
        messages = [_assistant("greeting")] + _four_rounds()
        body = _body(list(messages))
        assert validate_transcript(messages) != []
        assert truncator.truncate(body, token_limit=_over_by(truncator, body, 1)) is True
        assert len(body["messages"]) < len(messages)

    def test_new_issue_rolled_back_even_when_old_one_disappears(self):
        truncator = TranscriptTruncator(make_settings())
        messages = [
            _user("start"),
            _assistant("ok"),
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "continue"},
                    {"type": "tool_result", "tool_use_id": "zz", "content": "stale"},
                ],
            },
            _tool_use("t1"),
            _mixed_user("t1", "and then"),
            _assistant("done"),
            _user("thanks"),
            _assistant("welcome"),
        ]
        body = _body(copy.deepcopy(messages))
        assert len(validate_transcript(messages)) == 1
        # Dropping round [2, 4) clears the 'zz' orphan but orphans t1
        assert truncator.truncate(body, token_limit=_over_by(truncator, body, 1)) is False
        assert body["messages"] == messages

    def test_preexisting_issues_logged(self, caplog):
        truncator = TranscriptTruncator(make_settings())
        body = _body([_assistant("greeting")] + _four_rounds())
        with caplog.at_level(logging.WARNING, logger="claudebridge.api.truncation"):
            truncator.truncate(body, token_limit=_over_by(truncator, body, 1))
        warnings = [r.getMessage() for r in caplog.records if "pre-existing" in r.getMessage()]
        assert warnings == [
            "Transcript has pre-existing issues: first message has role 'assistant', expected 'user'"
        ]

    def test_only_messages_mutated(self):
        truncator = TranscriptTruncator(make_settings())
        body = _body(_four_rounds())
        body["system"] = "be brief"
        body["tools"] = [{"name": "read_file", "input_schema": {"type": "object"}}]
        messages_list = body["messages"]
        truncator.truncate(body, token_limit=_over_by(truncator, body, 1))
        assert body["messages"] is messages_list
        assert body["system"] == "be brief"
        assert body["model"] == "claude-sonnet-4-5"


# ------------------------------------------------------------------
# Token limit errors
# ------------------------------------------------------------------


class TestParseTokenLimitError:
    def test_parses_counts(self):
        result = parse_token_limit_error("prompt is too long: 205000 tokens > 200000 maximum")
        assert result.actual_tokens == 205000
        assert result.max_tokens == 200000

    def test_inside_json_error_body(self):
        text = (
            '{"type":"error","error":{"type":"invalid_request_error",'
            '"message":"prompt is too long: 212345 tokens > 200000 maximum"}}'
        )
        result = parse_token_limit_error(text)
        assert (result.actual_tokens, result.max_tokens) == (212345, 200000)

    def test_case_insensitive_and_singular(self):
        result = parse_token_limit_error("Prompt is too long: 1 token > 0 maximum")
        assert (result.actual_tokens, result.max_tokens) == (1, 0)

    def test_unrelated_error(self):
        assert parse_token_limit_error("overloaded_error") is None

    def test_empty(self):
        assert parse_token_limit_error("") is None
