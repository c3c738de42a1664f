"""Tests for inbound conversation history normalization."""

import json

from history_filter import (
    find_turn_boundary,
    normalize_messages,
    normalize_request_body,
    split_think_block,
)


def _body(messages, **extra) -> bytes:
    return json.dumps({"model": "deepseek-reasoner", "messages": messages, **extra}).encode("utf-8")


def _messages(body: bytes) -> list:
    return json.loads(body)["messages"]


class TestFindTurnBoundary:
    """Tests for locating the last user message."""

    def test_returns_last_user_index(self):
        messages = [
            {"role": "system", "content": "s"},
            {"role": "user", "content": "a"},
            {"role": "assistant", "content": "b"},
            {"role": "user", "content": "c"},
            {"role": "assistant", "content": "d"},
        ]
        assert find_turn_boundary(messages) == 3

    def test_returns_minus_one_without_user(self):
        messages = [{"role": "system", "content": "s"}, {"role": "assistant", "content": "x"}]
        assert find_turn_boundary(messages) == -1

    def test_skips_non_dict_entries(self):
        assert find_turn_boundary([{"role": "user"}, "user", None]) == 0


class TestSplitThinkBlock:
    """Tests for extracting the inline thought marker."""

    def test_splits_reasoning_and_answer(self):
        assert split_think_block("<think>REASON</think>ANSWER") == ("REASON", "ANSWER")

    def test_trims_whitespace(self):
        assert split_think_block("<think>\nREASON\n</think>\n\nANSWER\n") == ("REASON", "ANSWER")

    def test_unmatched_open_marker_is_ignored(self):
        assert split_think_block("<think>never closed") is None

    def test_close_before_open_is_ignored(self):
        assert split_think_block("</think> then <think>") is None

    def test_non_string_content_is_ignored(self):
        assert split_think_block(None) is None
        assert split_think_block([{"type": "text", "text": "<think>x</think>"}]) is None

    def test_uses_first_pair_only(self):
        reasoning, answer = split_think_block("<think>a</think>b<think>c</think>")
        assert reasoning == "a"
        assert answer == "b<think>c</think>"


class TestNormalizeRequestBody:
    """Tests for the request body normalizer."""

    def test_marker_moves_into_reasoning_content_for_current_turn(self):
        body = _body([
            {"role": "user", "content": "q"},
            {"role": "assistant", "content": "<think>REASON</think>ANSWER"},
        ])
        msg = _messages(normalize_request_body(body))[1]
        assert msg["content"] == "ANSWER"
        assert msg["reasoning_content"] == "REASON"

    def test_history_assistant_loses_reasoning(self):
        body = _body([
            {"role": "user", "content": "q1"},
            {"role": "assistant", "content": "<think>old thoughts</think>old answer", "reasoning_content": "old"},
            {"role": "user", "content": "q2"},
        ])
        msg = _messages(normalize_request_body(body))[1]
        assert msg["content"] == "old answer"
        assert "reasoning_content" not in msg
        assert "thoughts" not in msg["content"]
        assert "<think>" not in msg["content"]

    def test_current_turn_assistant_gets_empty_reasoning(self):
        body = _body([
            {"role": "user", "content": "q"},
            {"role": "assistant", "content": None, "tool_calls": [{"id": "call_1"}]},
            {"role": "tool", "tool_call_id": "call_1", "content": "42"},
            {"role": "assistant", "content": "done"},
        ])
        messages = _messages(normalize_request_body(body))
        assert messages[1]["reasoning_content"] == ""
        assert messages[3]["reasoning_content"] == ""
        assert "reasoning_content" not in messages[2]

    def test_existing_reasoning_content_is_kept_for_current_turn(self):
        body = _body([
            {"role": "user", "content": "q"},
            {"role": "assistant", "content": "a", "reasoning_content": "kept"},
        ])
        assert normalize_request_body(body) is body

    def test_without_user_every_assistant_is_current_turn(self):
        body = _body([
            {"role": "system", "content": "s"},
            {"role": "assistant", "content": "<think>r</think>hello"},
            {"role": "assistant", "content": "again", "reasoning_content": "kept"},
        ])
        messages = _messages(normalize_request_body(body))
        assert messages[1] == {"role": "assistant", "content": "hello", "reasoning_content": "r"}
        assert messages[2]["reasoning_content"] == "kept"

    def test_history_only_document_is_byte_identical(self):
        body = _body([
            {"role": "user", "content": "q1"},
            {"role": "assistant", "content": "a1"},
            {"role": "user", "content": "q2"},
        ])
        assert normalize_request_body(body) is body

    def test_normalizing_twice_is_a_no_op(self):
        body = _body([
            {"role": "user", "content": "q1"},
            {"role": "assistant", "content": "<think>r1</think>a1", "reasoning_content": "r1"},
            {"role": "user", "content": "q2"},
            {"role": "assistant", "content": "<think>r2</think>a2"},
        ])
        once = normalize_request_body(body)
        assert once is not body
        assert normalize_request_body(once) is once

    def test_malformed_marker_left_untouched(self):
        body = _body([
            {"role": "user", "content": "q1"},
            {"role": "assistant", "content": "<think>unterminated", "reasoning_content": "r"},
            {"role": "user", "content": "q2"},
        ])
        msg = _messages(normalize_request_body(body))[1]
        assert msg["content"] == "<think>unterminated"
        assert "reasoning_content" not in msg

    def test_other_fields_pass_through(self):
        body = _body([{"role": "assistant", "content": "x"}], stream=True, temperature=0.2)
        data = json.loads(normalize_request_body(body))
        assert data["stream"] is True
        assert data["temperature"] == 0.2
        assert data["model"] == "deepseek-reasoner"

    def test_non_ascii_is_preserved(self):
        body = _body([{"role": "assistant", "content": "你好"}])
        out = normalize_request_body(body)
        assert "你好".encode("utf-8") in out

    def test_invalid_json_returned_unchanged(self):
        body = b"{not json"
        assert normalize_request_body(body) is body

    def test_deeply_nested_json_returned_unchanged(self):
        body = b"[" * 200000 + b"]" * 200000
        assert normalize_request_body(body) is body

    def test_empty_body_returned_unchanged(self):
        body = b""
        assert normalize_request_body(body) is body

    def test_missing_or_non_list_messages_returned_unchanged(self):
        for body in (b'{"model": "x"}', b'{"messages": "nope"}', b"[1, 2, 3]"):
            assert normalize_request_body(body) is body


class TestClearMode:
    """Tests for the clear-reasoning policy."""

    def test_every_assistant_gets_empty_reasoning(self):
        messages = [
            {"role": "user", "content": "q1"},
            {"role": "assistant", "content": "<think>r</think>a1"},
            {"role": "user", "content": "q2"},
            {"role": "assistant", "content": "a2"},
        ]
        assert normalize_messages(messages, mode="clear") is True
        assert messages[1] == {"role": "assistant", "content": "<think>r</think>a1", "reasoning_content": ""}
        assert messages[3]["reasoning_content"] == ""

    def test_existing_field_not_changed(self):
        messages = [{"role": "assistant", "content": "a", "reasoning_content": "r"}]
        assert normalize_messages(messages, mode="clear") is False
        assert messages[0]["reasoning_content"] == "r"
