"""Tests for ContextWindow accounting, thresholds, thinning and reset."""

import json

import pytest

from ctxloop.context_window import ContextWindow, ThinScope
from ctxloop.messages import Message, Role, Usage
from ctxloop.tokenizer import estimate_tokens

# 288 plain chars estimate to exactly 80 tokens
EIGHTY = "x" * 288


def _window_with(messages, total=100_000):
    window = ContextWindow(total)
    for msg in messages:
        window.add_message(msg)
    return window


def _sum_estimates(window):
    return sum(estimate_tokens(m.content) for m in window.conversation_history)


def _padding(start_role, count):
    """Alternating user/assistant filler starting with ``start_role``."""
    msgs = []
    role = start_role
    for i in range(count):
        msgs.append(Message(role, f"filler message {i}"))
        role = Role.USER if role == Role.ASSISTANT else Role.ASSISTANT
    return msgs


class TestAccounting:
    def test_add_message_counts_tokens(self):
        window = ContextWindow(1000)
        assert window.add_message(Message.user(EIGHTY)) is True
        assert window.used_tokens == 80
        assert window.cumulative_tokens == 80

    def test_empty_message_skipped(self):
        window = ContextWindow(1000)
        assert window.add_message(Message.user("   ")) is False
        assert len(window) == 0
        assert window.used_tokens == 0

    def test_consecutive_assistant_rejected(self):
        window = _window_with([Message.user("hi"), Message.assistant("hello")])
        with pytest.raises(ValueError):
            window.add_message(Message.assistant("hello again"))
        assert len(window) == 2

    def test_provider_usage_only_feeds_cumulative(self):
        window = _window_with([Message.user(EIGHTY)], total=1000)
        window.update_usage_from_response(Usage(100, 50, 150))
        assert window.used_tokens == 80
        assert window.cumulative_tokens == 230

    def test_update_usage_none(self):
        window = _window_with([Message.user(EIGHTY)], total=1000)
        window.update_usage_from_response(None)
        assert window.cumulative_tokens == 80

    def test_percentage_and_remaining(self):
        window = _window_with([Message.user(EIGHTY)], total=1000)
        assert window.percentage_used() == pytest.approx(8.0)
        assert window.remaining_tokens() == 920

    def test_zero_capacity(self):
        window = ContextWindow(0)
        assert window.percentage_used() == 0.0
        assert window.remaining_tokens() == 0

    def test_recalculate_matches_sum(self):
        window = _window_with([Message.system("sys"), Message.user(EIGHTY)])
        window.conversation_history[1].content = "short"
        assert window.recalculate_tokens() == _sum_estimates(window)


class TestThresholds:
    def test_seventy_two_percent_then_crossing_eighty(self, memory_store):
        window = ContextWindow(1000)
        window.add_message(Message.system(EIGHTY))
        for _ in range(8):
            window.add_message(Message.user(EIGHTY))
        assert window.percentage_used() == pytest.approx(72.0)
        assert window.should_compact() is False

        assert window.should_thin() is True
        window.thin_context(memory_store)
        assert window.should_thin() is False

        window.add_message(Message.user(EIGHTY))
        assert window.percentage_used() == pytest.approx(80.0)
        assert window.should_compact() is True
        assert window.should_thin() is True

    def test_below_fifty_never_thins(self):
        window = _window_with([Message.user(EIGHTY) for _ in range(6)], total=1000)
        assert window.percentage_used() == pytest.approx(48.0)
        assert window.should_thin() is False

    def test_each_ladder_step_fires_once(self, memory_store):
        window = _window_with([Message.user(EIGHTY) for _ in range(7)], total=1000)
        fired = []
        for _ in range(5):
            if window.should_thin():
                fired.append(int(window.percentage_used()))
                window.thin_context(memory_store)
            assert window.should_thin() is False
            window.add_message(Message.user(EIGHTY))
        assert fired == [56, 64, 72, 80]
        assert window.last_thinning_percentage == 80

    def test_thin_all_does_not_consume_ladder_step(self, memory_store):
        window = _window_with([Message.user(EIGHTY) for _ in range(7)], total=1000)
        window.thin_context_all(memory_store)
        assert window.should_thin() is True


class TestPinned:
    def test_empty(self):
        assert ContextWindow(100).pinned_count() == 0

    def test_single_system(self):
        window = _window_with([Message.system("sys"), Message.user("hi")])
        assert window.pinned_count() == 1

    def test_agent_configuration_is_pinned(self):
        window = _window_with([Message.system("sys"), Message.system("# Agent Configuration")])
        assert window.pinned_count() == 2

    def test_other_system_message_is_not_pinned(self):
        window = _window_with([Message.system("sys"), Message.system("stub from an earlier turn")])
        assert window.pinned_count() == 1


class TestResetWithSummary:
    def test_keeps_pinned_and_embeds_summary(self):
        window = _window_with([
            Message.system("SYSTEM PROMPT"),
            Message.system("# Agent Configuration\n\nproject notes"),
            Message.user("please refactor"),
            Message.assistant("done"),
        ])
        window.reset_with_summary("X")

        history = window.conversation_history
        assert [m.role for m in history] == [Role.SYSTEM, Role.SYSTEM, Role.USER]
        assert history[0].content == "SYSTEM PROMPT"
        assert history[1].content == "# Agent Configuration\n\nproject notes"
        assert "X" in history[2].content
        assert window.used_tokens == _sum_estimates(window)

    def test_latest_user_message_appended(self):
        window = _window_with([Message.system("sys"), Message.user("a"), Message.assistant("b")])
        window.reset_with_summary("summary text", latest_user_message="next step")
        assert window.conversation_history[-1].content == "next step"
        assert window.conversation_history[-2].content.startswith("Previous conversation summary:")

    def test_dehydration_stub_placed_before_summary(self):
        window = _window_with([Message.system("sys"), Message.user("a")])
        window.reset_with_summary("S", dehydration_stub="stub text")
        roles = [m.role for m in window.conversation_history]
        assert roles == [Role.SYSTEM, Role.SYSTEM, Role.USER]
        assert window.conversation_history[1].content == "stub text"

    def test_stub_replaced_on_second_reset(self):
        window = _window_with([Message.system("SYS"), Message.user("a"), Message.assistant("b")])
        window.reset_with_summary("S1", dehydration_stub="STUB-A")
        window.add_message(Message.assistant("c"))
        window.add_message(Message.user("d"))
        window.reset_with_summary("S2", dehydration_stub="STUB-B")

        contents = [m.content for m in window.conversation_history]
        assert contents == ["SYS", "STUB-B", "Previous conversation summary:\n\nS2"]
        assert window.pinned_count() == 1
        assert window.used_tokens == _sum_estimates(window)

    def test_resets_thinning_ladder(self, memory_store):
        window = _window_with([Message.user(EIGHTY) for _ in range(7)], total=1000)
        window.thin_context(memory_store)
        assert window.last_thinning_percentage == 50
        window.reset_with_summary("S")
        assert window.last_thinning_percentage == 0

    def test_reports_chars_saved(self):
        window = _window_with([Message.system("sys"), Message.user("u" * 5000)])
        saved = window.reset_with_summary("short")
        assert saved > 4000

    def test_repeated_resets_keep_system_prompt(self):
        window = _window_with([Message.system("ORIGINAL")])
        for i in range(5):
            window.add_message(Message.user(f"turn {i}"))
            window.add_message(Message.assistant(f"reply {i}"))
            window.reset_with_summary(f"summary {i}")
        assert window.conversation_history[0].content == "ORIGINAL"
        assert window.conversation_history[0].role == Role.SYSTEM


class TestThinning:
    def _tool_history(self):
        return _window_with([
            Message.system("sys"),
            Message.assistant('Reading.\n\n{"tool": "read_file", "args": {"path": "a.py"}}'),
            Message.user("Tool result: " + "a" * 2000),
            Message.assistant('{"tool": "read_file", "args": {"path": "b.py"}}'),
            Message.user("Tool result: " + "b" * 2000),
            Message.assistant("Looks fine."),
            Message.user("continue"),
            Message.assistant('{"tool": "shell", "args": {"command": "ls"}}'),
            Message.user("Tool result: " + "c" * 2000),
        ])

    def test_first_third_thins_large_tool_result(self, memory_store):
        window = self._tool_history()
        original = window.conversation_history[2].content

        result = window.thin_context(memory_store)

        thinned = window.conversation_history[2].content
        assert thinned.startswith("Tool result saved to memory://test-session/thinned/leaned_tool_result_")
        path = thinned[len("Tool result saved to "):]
        assert memory_store.read_thinned(path) == original
        assert result.had_changes
        assert result.leaned_count == 1
        assert result.count_modified == 1
        assert result.chars_saved == len(original) - len(thinned)
        assert window.used_tokens == _sum_estimates(window)

    def test_never_touches_index_at_or_after_third(self, memory_store):
        window = self._tool_history()
        cut = len(window) // 3
        before = [m.content for m in window.conversation_history[cut:]]
        window.thin_context(memory_store)
        assert [m.content for m in window.conversation_history[cut:]] == before

    def test_thin_all_covers_whole_history(self, memory_store):
        window = self._tool_history()
        result = window.thin_context_all(memory_store)
        assert result.leaned_count == 3
        assert all(
            "/skinny_tool_result_" in m.content
            for m in window.conversation_history if m.is_tool_result
        )

    def test_small_results_untouched(self, memory_store):
        messages = [Message.system("sys"), Message.assistant('{"tool": "shell", "args": {}}'),
                    Message.user("Tool result: " + "s" * 900)]
        window = _window_with(messages + _padding(Role.ASSISTANT, 6))
        result = window.thin_context(memory_store)
        assert result.had_changes is False
        assert window.conversation_history[2].content == "Tool result: " + "s" * 900

    def test_todo_result_exempt(self, memory_store):
        todo = "Tool result: 📝 TODO list:\n" + "- [ ] item\n" * 300
        messages = [Message.system("sys"), Message.assistant('{"tool": "todo_read", "args": {}}'),
                    Message.user(todo)]
        window = _window_with(messages + _padding(Role.ASSISTANT, 6))
        result = window.thin_context_all(memory_store)
        assert result.leaned_count == 0
        assert window.conversation_history[2].content == todo

    def test_todo_exemption_maps_results_to_calls(self, memory_store):
        todo = "Tool result: " + "t" * 2000
        messages = [
            Message.system("sys"),
            Message.assistant('Two calls.\n\n{"tool": "read_file", "args": {"path": "a"}}\n'
                              '{"tool": "todo_read", "args": {}}'),
            Message.user("Tool result: " + "a" * 2000),
            Message.user(todo),
        ]
        window = _window_with(messages + _padding(Role.ASSISTANT, 8))
        assert len(window) // 3 == 4

        result = window.thin_context(memory_store)

        assert result.leaned_count == 1
        assert window.conversation_history[2].content.startswith("Tool result saved to ")
        assert window.conversation_history[3].content == todo

    def test_write_file_payload_elided(self, memory_store):
        call = {"tool": "write_file", "args": {"path": "big.py", "content": "z" * 600}}
        messages = [Message.system("sys"), Message.assistant(json.dumps(call)),
                    Message.user("Tool result: ✅ wrote big.py")]
        window = _window_with(messages + _padding(Role.ASSISTANT, 3))

        result = window.thin_context(memory_store)

        obj = json.loads(window.conversation_history[1].content)
        assert obj["args"]["path"] == "big.py"
        assert obj["args"]["content"].startswith("<content saved to memory://test-session/thinned/leaned_write_file_content_")
        path = obj["args"]["content"][len("<content saved to "):-1]
        assert memory_store.read_thinned(path) == "z" * 600
        assert result.tool_call_leaned_count == 1

    def test_str_replace_diff_elided(self, memory_store):
        call = {"tool": "str_replace", "args": {"path": "m.py", "diff": "-a\n+b\n" * 100}}
        messages = [Message.system("sys"), Message.assistant("Patching.\n\n" + json.dumps(call)),
                    Message.user("Tool result: ✅ patched")]
        window = _window_with(messages + _padding(Role.ASSISTANT, 3))

        window.thin_context(memory_store)

        content = window.conversation_history[1].content
        assert content.startswith("Patching.\n\n")
        obj = json.loads(content[len("Patching.\n\n"):])
        assert obj["args"]["diff"].startswith("<diff saved to ")

    def test_small_payload_kept(self, memory_store):
        call = json.dumps({"tool": "write_file", "args": {"path": "s.py", "content": "z" * 100}})
        messages = [Message.system("sys"), Message.assistant(call), Message.user("Tool result: ok")]
        window = _window_with(messages + _padding(Role.ASSISTANT, 3))
        window.thin_context(memory_store)
        assert window.conversation_history[1].content == call

    def test_pinned_messages_never_thinned(self, memory_store):
        big_system = "Tool result: " + "p" * 5000
        window = _window_with([Message.system("sys"), Message.system(big_system)]
                              + _padding(Role.USER, 10))
        window.thin_context_all(memory_store)
        assert window.conversation_history[1].content == big_system


class TestPersistence:
    def test_round_trip_recomputes_used_tokens(self):
        window = _window_with([Message.system("sys"), Message.user(EIGHTY)], total=1000)
        data = window.to_dict()
        data["used_tokens"] = 999_999

        restored = ContextWindow.from_dict(data)

        assert restored.used_tokens == _sum_estimates(window)
        assert restored.total_tokens == 1000
        assert [m.content for m in restored.conversation_history] == ["sys", EIGHTY]

    def test_clear_conversation_keeps_system_messages(self):
        window = _window_with([Message.system("sys"), Message.user("a"), Message.assistant("b")])
        window.clear_conversation()
        assert [m.role for m in window.conversation_history] == [Role.SYSTEM]
        assert window.used_tokens == estimate_tokens("sys")
