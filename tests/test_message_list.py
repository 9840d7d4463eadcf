"""Tests for MessageList reconciliation and materialisation."""

from datetime import UTC, datetime, timedelta

import pytest

from agentloop_core.message_list import MessageList, merge_messages, sanitize_messages
from agentloop_core.messages import Message, TextPart, ToolCallPart, ToolResultPart, normalize_origin


def _tool_call(call_id: str = "c1") -> ToolCallPart:
    return ToolCallPart(tool_call_id=call_id, tool_name="weather", args={"city": "Paris"})


def _tool_result(call_id: str = "c1", result: str = "sunny") -> ToolResultPart:
    return ToolResultPart(tool_call_id=call_id, tool_name="weather", result=result)


# =============================================================================
# Adding
# =============================================================================


class TestAdd:
    """Tests for adding messages from different origins."""

    def test_string_becomes_user_message(self):
        """A plain string is added as a user message."""
        ml = MessageList()
        ml.add("hello")

        [message] = ml.raw_messages()
        assert message.role == "user"
        assert message.text == "hello"
        assert ml.input_messages()[0].id == message.id

    def test_response_string_becomes_assistant_message(self):
        """A string added as a response is an assistant message."""
        ml = MessageList()
        ml.add("hi there", "response")

        assert ml.response_messages()[0].role == "assistant"

    def test_user_origin_alias(self):
        """The ``user`` origin is an alias of ``input``."""
        ml = MessageList()
        ml.add("hello", "user")

        assert len(ml.input_messages()) == 1

    def test_unknown_origin_raises(self):
        """Unknown origins are rejected."""
        with pytest.raises(ValueError, match="Unknown message origin"):
            normalize_origin("somewhere")

    def test_fills_thread_and_resource(self):
        """Messages inherit the list's thread and resource ids."""
        ml = MessageList(thread_id="t1", resource_id="u1")
        ml.add({"role": "user", "content": "hi"})

        [message] = ml.raw_messages()
        assert message.thread_id == "t1"
        assert message.resource_id == "u1"

    def test_same_id_merges(self):
        """Re-adding a message id updates the existing message in place."""
        ml = MessageList()
        ml.add(Message(id="m1", role="user", content="first", metadata={"a": {"x": 1}}))
        ml.add(Message(id="m1", role="user", content="second", metadata={"a": {"y": 2}}))

        [message] = ml.raw_messages()
        assert message.text == "second"
        assert message.metadata == {"a": {"x": 1, "y": 2}}

    def test_memory_duplicate_is_ignored(self):
        """A recalled copy of a message already present changes nothing."""
        ml = MessageList()
        ml.add(Message(id="m1", role="user", content="hello"), "input")
        ml.add(Message(id="m1", role="user", content="hello"), "memory")

        assert len(ml) == 1
        assert len(ml.input_messages()) == 1

    def test_memory_content_duplicate_is_ignored(self):
        """Recalled messages equal in role, time and content are added once."""
        created = datetime(2024, 1, 1, tzinfo=UTC)
        ml = MessageList()
        ml.add(Message(role="user", content="hello", created_at=created), "memory")
        ml.add(Message(role="user", content="hello", created_at=created), "memory")

        assert len(ml) == 1

    def test_system_messages_kept_apart(self):
        """System messages go to the system list, never the conversation."""
        ml = MessageList()
        ml.add({"role": "system", "content": "be nice"})
        ml.add({"role": "system", "content": "stale"}, "memory")

        assert len(ml) == 0
        assert [m.text for m in ml.get_all_system_messages()] == ["be nice"]

    def test_created_at_strictly_increasing(self):
        """Messages without a timestamp keep their arrival order."""
        ml = MessageList()
        for i in range(20):
            ml.add(f"message {i}")

        messages = ml.raw_messages()
        assert [m.text for m in messages] == [f"message {i}" for i in range(20)]
        assert all(a.created_at < b.created_at for a, b in zip(messages, messages[1:]))

    def test_memory_sorted_before_input(self):
        """Older recalled messages are placed before the current input."""
        ml = MessageList()
        ml.add("new question")
        old = datetime.now(UTC) - timedelta(days=1)
        ml.add(Message(role="assistant", content="old answer", created_at=old), "memory")

        assert [m.text for m in ml.raw_messages()] == ["old answer", "new question"]
        assert len(ml.remembered_messages()) == 1


# =============================================================================
# Removing and draining
# =============================================================================


class TestRemoveAndDrain:
    """Tests for removal and persistence draining."""

    def test_remove_by_ids(self):
        """Removed messages are returned and gone from the list."""
        ml = MessageList()
        ml.add(Message(id="m1", role="user", content="a"))
        ml.add(Message(id="m2", role="user", content="b"))

        removed = ml.remove_by_ids(["m1", "missing"])

        assert [m.id for m in removed] == ["m1"]
        assert [m.id for m in ml.raw_messages()] == ["m2"]

    def test_drain_unsaved_skips_memory(self):
        """Only input and response messages are drained, once."""
        ml = MessageList()
        ml.add(Message(role="user", content="old", created_at=datetime(2024, 1, 1, tzinfo=UTC)), "memory")
        ml.add("question")
        ml.add("answer", "response")

        drained = ml.drain_unsaved_messages()

        assert [m.text for m in drained] == ["question", "answer"]
        assert ml.drain_unsaved_messages() == []

    def test_updated_message_drained_again(self):
        """A saved message that is updated becomes unsaved again."""
        ml = MessageList()
        ml.add(Message(id="m1", role="assistant", content="draft"), "response")
        ml.drain_unsaved_messages()

        ml.add(Message(id="m1", role="assistant", content="final"), "response")

        assert [m.text for m in ml.drain_unsaved_messages()] == ["final"]


# =============================================================================
# Materialisation
# =============================================================================


class TestMaterialisation:
    """Tests for canonical sequences."""

    def test_orphaned_tool_call_dropped(self):
        """A tool call without a result is stripped; the turn is kept."""
        ml = MessageList()
        ml.add("weather?")
        ml.add(Message(role="assistant", content=[_tool_call()]), "response")

        core = ml.core_messages()

        assert [m.role for m in core] == ["user", "assistant"]
        assert core[1].tool_calls == []
        assert core[1].content == [TextPart(text="")]

    def test_result_without_call_kept(self):
        """A tool result whose call is missing is kept as-is."""
        ml = MessageList()
        ml.add(Message(role="tool", content=[_tool_result("c9")]), "response")

        assert ml.core_messages()[0].tool_results[0].tool_call_id == "c9"

    def test_duplicate_tool_results_keep_first(self):
        """Only the first result per tool call id survives."""
        ml = MessageList()
        ml.add(Message(role="assistant", content=[_tool_call()]), "response")
        ml.add(Message(role="tool", content=[_tool_result(result="first")]), "response")
        ml.add(Message(role="tool", content=[_tool_result(result="second")]), "response")

        core = ml.core_messages()

        assert [m.role for m in core] == ["assistant", "tool"]
        assert core[1].tool_results[0].result == "first"

    def test_adjacent_assistant_collapsed_for_model_only(self):
        """Adjacent assistant turns merge in core_messages, not db_messages."""
        ml = MessageList()
        ml.add("hi")
        ml.add("Hello", "response")
        ml.add(" world", "response")

        core = ml.core_messages()
        assert [m.role for m in core] == ["user", "assistant"]
        assert core[1].text == "Hello world"
        assert len(ml.db_messages()) == 3

    def test_unknown_and_malformed_parts_pass_through(self):
        """Parts this layer does not interpret survive both canonical sequences."""
        image = {"type": "image", "url": "https://example.com/cat.png", "mime_type": "image/png"}
        broken_call = {"type": "tool-call", "toolName": "weather", "input": {"city": "Paris"}}
        ml = MessageList()
        ml.add(Message(id="u1", role="user", content=[TextPart(text="what is this?"), image]))
        ml.add(Message(id="a1", role="assistant", content=[broken_call, TextPart(text="a cat")]), "response")

        for materialised in (ml.core_messages(), ml.db_messages()):
            user, assistant = materialised
            assert [p.model_dump() for p in user.content] == [{"type": "text", "text": "what is this?"}, image]
            assert [p.model_dump() for p in assistant.content] == [broken_call, {"type": "text", "text": "a cat"}]
            assert assistant.tool_calls == []

    def test_prompt_messages_start_with_system(self):
        """Prompt messages are system messages followed by the conversation."""
        ml = MessageList()
        ml.add("hi")
        ml.add_system("be brief")

        assert [m.role for m in ml.prompt_messages()] == ["system", "user"]

    def test_materialisation_returns_copies(self):
        """Mutating a materialised message leaves the list untouched."""
        ml = MessageList()
        ml.add("hi")

        ml.raw_messages()[0].content.append(TextPart(text="!"))

        assert ml.raw_messages()[0].text == "hi"

    def test_sanitize_does_not_modify_input(self):
        """sanitize_messages works on copies."""
        message = Message(role="assistant", content=[_tool_call()])

        sanitize_messages([message], collapse=True)

        assert message.tool_calls

    def test_latest_user_text(self):
        """The latest user message text is found."""
        ml = MessageList()
        ml.add("first")
        ml.add("reply", "response")
        ml.add("second")

        assert ml.latest_user_text() == "second"

    def test_source_checker(self):
        """The source checker reports origins as of its creation."""
        ml = MessageList()
        ml.add(Message(id="m1", role="user", content="hi"))
        get_source = ml.make_source_checker()

        assert get_source(Message(id="m1", role="user")) == "input"
        assert get_source(Message(id="other", role="user")) is None


# =============================================================================
# System messages
# =============================================================================


class TestSystemMessages:
    """Tests for tagged system messages and the baseline."""

    def test_add_system_dedupes(self):
        """The same system text is added once per group."""
        ml = MessageList()
        ml.add_system("rule")
        ml.add_system("rule")
        ml.add_system("rule", tag="extra")

        assert len(ml.get_system_messages()) == 1
        assert len(ml.get_system_messages("extra")) == 1
        assert len(ml.get_all_system_messages()) == 2

    def test_clear_tagged(self):
        """Clearing a tag leaves untagged system messages alone."""
        ml = MessageList()
        ml.add_system("base")
        ml.add_system("feedback", tag="retry")

        ml.clear_system_messages("retry")

        assert [m.text for m in ml.get_all_system_messages()] == ["base"]

    def test_replace_all_then_reset(self):
        """A per-step replacement is undone by resetting to the baseline."""
        ml = MessageList()
        ml.add_system("base")
        ml.mark_system_baseline()

        ml.replace_all_system_messages(["step only"])
        assert [m.text for m in ml.get_all_system_messages()] == ["step only"]

        ml.reset_system_messages()
        assert [m.text for m in ml.get_all_system_messages()] == ["base"]

    def test_recording_mutations(self):
        """Mutations are recorded between start and stop."""
        ml = MessageList()
        ml.start_recording()
        ml.add(Message(id="m1", role="user", content="hi"))
        ml.remove_by_ids(["m1"])
        events = ml.stop_recording()

        assert [e["type"] for e in events] == ["add", "remove"]
        assert ml.stop_recording() == []


class TestMergeMessages:
    """Tests for merge_messages."""

    def test_unset_fields_preserved(self):
        """Fields not set on the incoming message keep their value."""
        created = datetime(2024, 1, 1, tzinfo=UTC)
        existing = Message(id="m1", role="user", content="hi", created_at=created, thread_id="t1")
        incoming = Message(id="m1", role="user", content="hello")

        merged = merge_messages(existing, incoming)

        assert merged.text == "hello"
        assert merged.created_at == created
        assert merged.thread_id == "t1"
