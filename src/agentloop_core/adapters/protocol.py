from typing import Any, Protocol

from agentloop_core.messages import Message


class MessageAdapter(Protocol):
    """Two-way conversion between a framework's message objects and ``Message``.

    ``Agent`` uses ``convert_single`` for any input item that is not already a
    Message, dict or string; model wrappers use ``to_external`` to build the
    framework's prompt from ``MessageList.prompt_messages()``.
    """

    def convert(self, messages: list[Any]) -> list[Message]: ...

    def convert_single(self, message: Any) -> Message: ...

    def to_external(self, messages: list[Message]) -> list[Any]:
        """Framework messages for a prompt, one or more per Message."""
        ...
