"""LangChain message adapter.

Converts LangChain messages (HumanMessage, AIMessage, ToolMessage, etc.)
to the internal Message format and back.
"""

import json
from typing import TYPE_CHECKING, Any

from agentloop_core.messages import (
    Message,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    UnknownPart,
)

if TYPE_CHECKING:
    from langchain_core.messages import BaseMessage


class LangChainAdapter:
    """Converts between LangChain messages and internal Messages.

    Usage:
        ```python
        from langchain_core.messages import HumanMessage, AIMessage
        from agentloop_core.adapters.langchain import LangChainAdapter

        adapter = LangChainAdapter()
        messages = adapter.convert([
            HumanMessage(content="Read auth.py"),
            AIMessage(content="", tool_calls=[...]),
        ])
        result = await agent.generate(messages)
        ```
    """

    def convert(self, messages: list["BaseMessage"]) -> list[Message]:
        """Convert a list of LangChain messages.

        Args:
            messages: List of LangChain BaseMessage objects.

        Returns:
            List of internal Message objects.
        """
        return [self.convert_single(msg) for msg in messages]

    def convert_single(self, message: "BaseMessage") -> Message:
        """Convert a single LangChain message.

        Args:
            message: A LangChain BaseMessage object.

        Returns:
            Internal Message object. Unknown message classes become user messages.
        """
        from langchain_core.messages import (
            AIMessage,
            HumanMessage,
            SystemMessage,
            ToolMessage,
        )

        extra: dict[str, Any] = {"id": message.id} if message.id else {}
        content = self._extract_content(message)

        if isinstance(message, SystemMessage):
            return Message(role="system", content=content, **extra)

        if isinstance(message, AIMessage):
            parts = list(content)
            parts.extend(
                ToolCallPart(
                    tool_call_id=tc.get("id") or "",
                    tool_name=tc.get("name", ""),
                    args=tc.get("args", {}),
                )
                for tc in (message.tool_calls or [])
            )
            return Message(role="assistant", content=parts, **extra)

        if isinstance(message, ToolMessage):
            return Message(
                role="tool",
                content=[
                    ToolResultPart(
                        tool_call_id=message.tool_call_id,
                        tool_name=message.name or "",
                        result=message.content,
                        is_error=message.status == "error",
                    )
                ],
                **extra,
            )

        if isinstance(message, HumanMessage):
            return Message(role="user", content=content, **extra)

        return Message(role="user", content=content, **extra)

    def to_external(self, messages: list[Message]) -> list["BaseMessage"]:
        """Convert internal Messages to LangChain messages for a chat model call.

        A tool message carrying several results becomes several ToolMessages.
        """
        from langchain_core.messages import (
            AIMessage,
            HumanMessage,
            SystemMessage,
            ToolMessage,
        )

        converted: list[BaseMessage] = []
        for message in messages:
            if message.role == "system":
                converted.append(SystemMessage(content=message.text))
            elif message.role == "user":
                converted.append(HumanMessage(content=message.text))
            elif message.role == "assistant":
                converted.append(
                    AIMessage(
                        content=message.text,
                        tool_calls=[
                            {"id": tc.tool_call_id, "name": tc.tool_name, "args": tc.args}
                            for tc in message.tool_calls
                        ],
                    )
                )
            else:
                for result in message.tool_results:
                    converted.append(
                        ToolMessage(
                            content=self._stringify(result.result),
                            tool_call_id=result.tool_call_id,
                            name=result.tool_name or None,
                            status="error" if result.is_error else "success",
                        )
                    )
        return converted

    def _extract_content(self, message: "BaseMessage") -> list[TextPart | UnknownPart]:
        """Extract content parts from a message.

        Handles both simple string content and complex content lists
        (for multimodal messages). Non-text blocks are passed through.

        Args:
            message: A LangChain BaseMessage object.

        Returns:
            List of content parts.
        """
        if isinstance(message.content, str):
            return [TextPart(text=message.content)] if message.content else []
        parts: list[TextPart | UnknownPart] = []
        for block in message.content:
            if isinstance(block, str):
                parts.append(TextPart(text=block))
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(TextPart(text=block.get("text", "")))
            elif isinstance(block, dict):
                parts.append(UnknownPart.model_validate(block))
        return parts

    @staticmethod
    def _stringify(value: Any) -> str:
        if isinstance(value, str):
            return value
        return json.dumps(value, default=str)
