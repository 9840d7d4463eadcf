"""Tools callable by the model, and their concurrent execution.

Usage:
    ```python
    from pydantic import BaseModel
    from agentloop_core.tools import Tool

    class WeatherInput(BaseModel):
        city: str

    async def get_weather(args: WeatherInput, ctx: ToolContext) -> dict:
        return {"city": args.city, "temp_c": 21}

    weather = Tool("weather", get_weather, description="Current weather", input_schema=WeatherInput)
    ```
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from agentloop_core.context import RunContext
from agentloop_core.errors import ToolValidationError
from agentloop_core.llm.protocol import ToolSpec
from agentloop_core.messages import ToolCallPart, ToolResultPart

logger = logging.getLogger(__name__)


class ToolContext(BaseModel):
    """What a tool sees of the run that called it."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    tool_call_id: str
    context: RunContext
    abort_signal: asyncio.Event | None = None


class Tool:
    """A named capability the model may call.

    Args:
        id: Name the model uses to call the tool.
        execute: ``execute(input, context)``, sync or async. May raise.
        description: Shown to the model.
        input_schema: Pydantic model class (input is validated into it) or a
            JSON schema dict (input is passed through as a dict).
    """

    def __init__(
        self,
        id: str,
        execute: Callable[[Any, ToolContext], Any | Awaitable[Any]],
        *,
        description: str = "",
        input_schema: type[BaseModel] | dict[str, Any] | None = None,
    ) -> None:
        self.id = id
        self.description = description
        self.input_schema = input_schema
        self._execute = execute

    def spec(self) -> ToolSpec:
        if isinstance(self.input_schema, type) and issubclass(self.input_schema, BaseModel):
            parameters = self.input_schema.model_json_schema()
        elif isinstance(self.input_schema, dict):
            parameters = self.input_schema
        else:
            parameters = {"type": "object", "properties": {}}
        return ToolSpec(name=self.id, description=self.description, parameters=parameters)

    def validate(self, args: dict[str, Any]) -> Any:
        """Validate raw call arguments against the input schema.

        Raises:
            ToolValidationError: Arguments do not match a pydantic input schema.
        """
        if isinstance(self.input_schema, type) and issubclass(self.input_schema, BaseModel):
            try:
                return self.input_schema.model_validate(args)
            except ValidationError as exc:
                raise ToolValidationError(f"Invalid input for tool {self.id!r}: {exc}") from exc
        return args

    async def run(self, args: dict[str, Any], context: ToolContext) -> Any:
        result = self._execute(self.validate(args), context)
        if inspect.isawaitable(result):
            result = await result
        return result


def tool_not_found_message(name: str, available: Iterable[str]) -> str:
    names = ", ".join(available) or "none"
    return f'Tool "{name}" not found. Available tools: {names}. Call tools by their exact name only.'


class ToolOutcome(BaseModel):
    """Result of one tool call; ``error`` is set when the tool raised."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    part: ToolResultPart
    error: Exception | None = None


class ToolExecutor:
    """Runs the tool calls of one step concurrently and joins them.

    Unknown tools and tool exceptions become error results fed back to the
    model; nothing here raises for a failing tool.
    """

    def __init__(self, tools: dict[str, Tool], concurrency: int = 8) -> None:
        self._tools = tools
        self._concurrency = concurrency

    @property
    def tools(self) -> dict[str, Tool]:
        return dict(self._tools)

    def with_tools(self, tools: dict[str, Tool]) -> "ToolExecutor":
        """Executor for one step with a replaced tool set."""
        return ToolExecutor(tools, self._concurrency)

    def specs(self, active: Iterable[str] | None = None) -> list[ToolSpec]:
        allowed = set(active) if active is not None else None
        return [t.spec() for name, t in self._tools.items() if allowed is None or name in allowed]

    async def execute(
        self,
        calls: list[ToolCallPart],
        context: RunContext,
        abort_signal: asyncio.Event | None = None,
    ) -> list[ToolOutcome]:
        """Execute calls concurrently; results keep the order of ``calls``."""
        semaphore = asyncio.Semaphore(self._concurrency)

        async def _one(call: ToolCallPart) -> ToolOutcome:
            async with semaphore:
                return await self._execute_one(call, context, abort_signal)

        return list(await asyncio.gather(*(_one(call) for call in calls)))

    async def _execute_one(
        self,
        call: ToolCallPart,
        context: RunContext,
        abort_signal: asyncio.Event | None,
    ) -> ToolOutcome:
        tool = self._tools.get(call.tool_name)
        if tool is None:
            logger.debug("tool not found name=%s", call.tool_name)
            return ToolOutcome(
                part=ToolResultPart(
                    tool_call_id=call.tool_call_id,
                    tool_name=call.tool_name,
                    result=tool_not_found_message(call.tool_name, self._tools),
                    is_error=True,
                )
            )

        tool_context = ToolContext(
            tool_call_id=call.tool_call_id, context=context, abort_signal=abort_signal
        )
        try:
            result = await tool.run(call.args, tool_context)
        except Exception as exc:
            logger.warning("Tool %s failed: %s", call.tool_name, exc)
            return ToolOutcome(
                part=ToolResultPart(
                    tool_call_id=call.tool_call_id,
                    tool_name=call.tool_name,
                    result=f"{type(exc).__name__}: {exc}",
                    is_error=True,
                ),
                error=exc,
            )
        return ToolOutcome(
            part=ToolResultPart(tool_call_id=call.tool_call_id, tool_name=call.tool_name, result=result)
        )
