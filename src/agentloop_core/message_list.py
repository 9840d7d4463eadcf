"""Reconciling container for the messages of one agent run.

Messages arrive from three places: the caller's input, memory recall and the
model's responses. The MessageList keeps them in one ordered, deduplicated
collection tagged by origin and materialises canonical sequences for the
model wire format and for storage.

Usage:
    ```python
    from agentloop_core.message_list import MessageList

    ml = MessageList(thread_id="t1", resource_id="u1")
    ml.add_system("You are a helpful assistant.")
    ml.add(recalled_messages, "memory")
    ml.add("What did we talk about yesterday?", "input")

    prompt = ml.prompt_messages()
    ```
"""

import bisect
import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

from agentloop_core.messages import (
    ContentPart,
    Message,
    MessageOrigin,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    normalize_origin,
    utc_now,
)

logger = logging.getLogger(__name__)

SystemSnapshot = tuple[list[Message], dict[str, list[Message]]]


def _deep_merge(base: dict[str, Any], update: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in update.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def merge_messages(existing: Message, incoming: Message) -> Message:
    """Merge ``incoming`` into ``existing``.

    Fields explicitly set on ``incoming`` win; ``metadata`` is deep-merged.
    """
    update: dict[str, Any] = {}
    for field in incoming.model_fields_set:
        if field in ("id", "metadata"):
            continue
        value = getattr(incoming, field)
        if field == "created_at" and value is None:
            continue
        update[field] = value
    update["metadata"] = _deep_merge(existing.metadata, incoming.metadata)
    return existing.model_copy(update=update, deep=True)


def _collapse_text(parts: list[ContentPart]) -> list[ContentPart]:
    collapsed: list[ContentPart] = []
    for part in parts:
        if isinstance(part, TextPart) and collapsed and isinstance(collapsed[-1], TextPart):
            collapsed[-1] = TextPart(text=collapsed[-1].text + part.text)
        else:
            collapsed.append(part)
    return collapsed


def sanitize_messages(messages: list[Message], *, collapse: bool) -> list[Message]:
    """Drop orphaned tool calls and duplicate tool results.

    A tool call is kept only if some message carries its result. A result
    without a call is kept as-is. Only the first result per call id survives.
    With ``collapse``, adjacent assistant messages are merged into one turn.
    Adjacent text parts inside a message are always merged.

    Args:
        messages: Messages in canonical order. They are not modified.
        collapse: Whether to merge adjacent assistant messages.

    Returns:
        New list of sanitised message copies.
    """
    result_ids = {part.tool_call_id for m in messages for part in m.tool_results}
    seen_results: set[str] = set()
    sanitized: list[Message] = []

    for message in messages:
        parts: list[ContentPart] = []
        for part in message.content:
            if isinstance(part, ToolCallPart) and part.tool_call_id not in result_ids:
                continue
            if isinstance(part, ToolResultPart):
                if part.tool_call_id in seen_results:
                    continue
                seen_results.add(part.tool_call_id)
            parts.append(part)
        parts = _collapse_text(parts)

        if message.role == "assistant" and not parts:
            # Keep the turn so pairing around it stays intact.
            parts = [TextPart(text="")]
        if message.role == "tool" and not parts:
            continue

        if (
            collapse
            and message.role == "assistant"
            and sanitized
            and sanitized[-1].role == "assistant"
        ):
            previous = sanitized[-1]
            sanitized[-1] = previous.model_copy(
                update={"content": _collapse_text(previous.content + parts)}
            )
            continue

        sanitized.append(
            message.model_copy(update={"content": [p.model_copy(deep=True) for p in parts]})
        )

    return sanitized


class MessageList:
    """Ordered, origin-tagged collection of conversation messages.

    System messages live apart from the conversation: an untagged list plus
    tagged groups (for example retry feedback). ``mark_system_baseline`` takes
    the durable snapshot that ``reset_system_messages`` restores, so a
    per-step ``replace_all_system_messages`` never leaks into later steps.
    """

    def __init__(self, thread_id: str | None = None, resource_id: str | None = None) -> None:
        self.thread_id = thread_id
        self.resource_id = resource_id
        self._messages: list[Message] = []
        self._origins: dict[str, MessageOrigin] = {}
        self._saved: set[str] = set()
        self._system: list[Message] = []
        self._tagged_system: dict[str, list[Message]] = {}
        self._baseline: SystemSnapshot | None = None
        self._last_created_at: datetime | None = None
        self._recording: list[dict[str, Any]] | None = None

    def __len__(self) -> int:
        return len(self._messages)

    # =========================================================================
    # Adding and removing
    # =========================================================================

    def add(
        self,
        messages: Message | dict[str, Any] | str | Iterable[Message | dict[str, Any] | str],
        origin: str = "input",
    ) -> "MessageList":
        """Add one or more messages from the given origin.

        Strings become user messages (assistant messages for ``response``).
        System messages go to the untagged system list; system messages
        coming from memory are ignored.

        Args:
            messages: A message, dict, string, or an iterable of these.
            origin: ``memory``, ``input`` (alias ``user``), ``response`` or ``context``.

        Returns:
            The list itself, for chaining.
        """
        resolved = normalize_origin(origin)
        if isinstance(messages, (Message, dict, str)):
            items: Iterable[Any] = [messages]
        else:
            items = messages

        for item in items:
            message = self._coerce(item, resolved)
            if message.role == "system":
                if resolved != "memory":
                    self.add_system(message)
                continue
            self._add_one(message, resolved)
        return self

    def _coerce(self, item: Message | dict[str, Any] | str, origin: MessageOrigin) -> Message:
        if isinstance(item, Message):
            message = item.model_copy(deep=True)
        elif isinstance(item, str):
            role = "assistant" if origin == "response" else "user"
            message = Message(role=role, content=item)
        else:
            message = Message.model_validate(item)

        defaults: dict[str, Any] = {}
        if message.thread_id is None and self.thread_id is not None:
            defaults["thread_id"] = self.thread_id
        if message.resource_id is None and self.resource_id is not None:
            defaults["resource_id"] = self.resource_id
        return message.model_copy(update=defaults) if defaults else message

    def _add_one(self, message: Message, origin: MessageOrigin) -> None:
        index = self._index_of(message.id)
        if index is not None:
            existing = self._messages[index]
            if origin == "memory" and existing.content == message.content:
                return
            merged = merge_messages(existing, message)
            self._messages[index] = merged
            if merged.created_at != existing.created_at:
                self._messages.sort(key=lambda m: m.created_at)
            if origin != "memory":
                # Memory keeps the origin the run already assigned.
                self._saved.discard(message.id)
                self._origins[message.id] = origin
            self._record("update", message.id, origin)
            return

        if origin == "memory" and self._is_duplicate(message):
            return

        if message.created_at is None:
            message = message.model_copy(update={"created_at": self._next_created_at()})
        elif origin != "memory":
            self._last_created_at = max(self._last_created_at or message.created_at, message.created_at)

        bisect.insort(self._messages, message, key=lambda m: m.created_at)
        self._origins[message.id] = origin
        if origin == "memory":
            self._saved.add(message.id)
        self._record("add", message.id, origin)

    def _is_duplicate(self, message: Message) -> bool:
        return any(
            m.role == message.role
            and m.created_at == message.created_at
            and m.content == message.content
            for m in self._messages
        )

    def _next_created_at(self) -> datetime:
        # Strictly increasing so arrival order survives identical clock reads.
        now = utc_now()
        latest = self._messages[-1].created_at if self._messages else None
        for floor in (self._last_created_at, latest):
            if floor is not None and now <= floor:
                now = floor + timedelta(milliseconds=1)
        self._last_created_at = now
        return now

    def _index_of(self, message_id: str) -> int | None:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                return index
        return None

    def remove_by_ids(self, ids: Iterable[str]) -> list[Message]:
        """Remove messages by id and return the removed ones."""
        targets = set(ids)
        removed = [m for m in self._messages if m.id in targets]
        if not removed:
            return []
        self._messages = [m for m in self._messages if m.id not in targets]
        for message in removed:
            self._origins.pop(message.id, None)
            self._saved.discard(message.id)
            self._record("remove", message.id, None)
        return removed

    def drain_unsaved_messages(self) -> list[Message]:
        """Return input and response messages not yet persisted, marking them saved."""
        pending = [
            m
            for m in self._messages
            if self._origins.get(m.id) in ("input", "response") and m.id not in self._saved
        ]
        self._saved.update(m.id for m in pending)
        return sanitize_messages(pending, collapse=False)

    # =========================================================================
    # Materialisation
    # =========================================================================

    def raw_messages(self) -> list[Message]:
        """Copies of all non-system messages, unsanitised."""
        return [m.model_copy(deep=True) for m in self._messages]

    def core_messages(self) -> list[Message]:
        """Canonical sequence for the model wire format."""
        return sanitize_messages(self._messages, collapse=True)

    def db_messages(self) -> list[Message]:
        """Canonical sequence for storage; one entry per stored message id."""
        return sanitize_messages(self._messages, collapse=False)

    def prompt_messages(self) -> list[Message]:
        """System messages followed by the canonical conversation."""
        return self.get_all_system_messages() + self.core_messages()

    def _by_origin(self, origin: MessageOrigin) -> list[Message]:
        return sanitize_messages(
            [m for m in self._messages if self._origins.get(m.id) == origin], collapse=False
        )

    def input_messages(self) -> list[Message]:
        return self._by_origin("input")

    def response_messages(self) -> list[Message]:
        return self._by_origin("response")

    def remembered_messages(self) -> list[Message]:
        return self._by_origin("memory")

    def latest_user_text(self) -> str | None:
        for message in reversed(self._messages):
            if message.role == "user":
                return message.text
        return None

    def make_source_checker(self) -> Callable[[Message], MessageOrigin | None]:
        """Snapshot the current origins and return a lookup by message."""
        origins = dict(self._origins)

        def get_source(message: Message) -> MessageOrigin | None:
            return origins.get(message.id)

        return get_source

    # =========================================================================
    # System messages
    # =========================================================================

    def add_system(self, message: Message | str, tag: str | None = None) -> None:
        """Add a system message, skipping exact duplicates within its group."""
        if isinstance(message, str):
            message = Message(role="system", content=message)
        elif message.role != "system":
            message = message.model_copy(update={"role": "system"})
        if not message.text:
            return
        target = self._tagged_system.setdefault(tag, []) if tag else self._system
        if any(m.text == message.text for m in target):
            return
        target.append(message)
        self._record("system", message.id, None)

    def get_system_messages(self, tag: str | None = None) -> list[Message]:
        if tag is None:
            return list(self._system)
        return list(self._tagged_system.get(tag, []))

    def get_all_system_messages(self) -> list[Message]:
        tagged = [m for group in self._tagged_system.values() for m in group]
        return list(self._system) + tagged

    def clear_system_messages(self, tag: str | None = None) -> None:
        if tag is None:
            self._system = []
        else:
            self._tagged_system.pop(tag, None)

    def replace_all_system_messages(self, messages: Iterable[Message | str]) -> None:
        """Replace tagged and untagged system messages for the current step."""
        self._system = []
        self._tagged_system = {}
        for message in messages:
            self.add_system(message)

    def mark_system_baseline(self) -> None:
        """Remember the current system messages as the durable baseline."""
        self._baseline = self._snapshot_system()

    def reset_system_messages(self) -> None:
        """Restore the durable baseline taken by ``mark_system_baseline``."""
        if self._baseline is None:
            return
        untagged, tagged = self._baseline
        self._system = list(untagged)
        self._tagged_system = {tag: list(group) for tag, group in tagged.items()}

    def _snapshot_system(self) -> SystemSnapshot:
        return list(self._system), {t: list(g) for t, g in self._tagged_system.items()}

    # =========================================================================
    # Mutation recording
    # =========================================================================

    def start_recording(self) -> None:
        self._recording = []

    def stop_recording(self) -> list[dict[str, Any]]:
        events = self._recording or []
        self._recording = None
        return events

    def _record(self, kind: str, message_id: str, origin: MessageOrigin | None) -> None:
        if self._recording is not None:
            self._recording.append({"type": kind, "id": message_id, "origin": origin})
