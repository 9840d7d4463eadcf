"""LLM-judged content moderation.

Usage:
    ```python
    from agentloop_core.processors import ModerationProcessor

    moderation = ModerationProcessor(judge_model, strategy="block", threshold=0.7)
    agent = Agent(model=model, input_processors=[moderation], output_processors=[moderation])
    ```
"""

import json
import logging
from typing import Literal

from pydantic import BaseModel, Field, ValidationError

from agentloop_core.chunks import Chunk
from agentloop_core.context import RunContext
from agentloop_core.llm.protocol import LanguageModel, ModelRequest
from agentloop_core.message_list import MessageList
from agentloop_core.messages import Message
from agentloop_core.processors.protocol import (
    BaseProcessor,
    ProcessInputArgs,
    ProcessorArgs,
    ProcessOutputResultArgs,
    ProcessOutputStreamArgs,
)
from agentloop_core.tripwire import Tripwire

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = [
    "hate",
    "hate/threatening",
    "harassment",
    "harassment/threatening",
    "self-harm",
    "self-harm/intent",
    "self-harm/instructions",
    "sexual",
    "sexual/minors",
    "violence",
    "violence/graphic",
]

Strategy = Literal["block", "warn", "filter"]


class ModerationResult(BaseModel):
    """Judge verdict: a score in [0, 1] per category."""

    category_scores: dict[str, float] = Field(default_factory=dict)
    reason: str | None = None


class ModerationProcessor(BaseProcessor):
    """Asks a judge model to score content and applies a strategy.

    Strategies:
        block: Abort the run with a tripwire.
        warn: Log a warning and let the content through.
        filter: Drop the flagged message or stream chunk.

    If the judge call fails or returns unparsable output, content is allowed.

    Args:
        judge: Model returning ModerationResult JSON.
        categories: Categories to score.
        threshold: Score at or above which a category is flagged.
        strategy: What to do with flagged content.
        chunk_window: Previous text chunks included when judging a stream chunk.
    """

    id = "moderation"

    def __init__(
        self,
        judge: LanguageModel,
        *,
        categories: list[str] | None = None,
        threshold: float = 0.5,
        strategy: Strategy = "block",
        chunk_window: int = 0,
    ) -> None:
        self._judge = judge
        self._categories = categories or list(DEFAULT_CATEGORIES)
        self._threshold = threshold
        self._strategy = strategy
        self._chunk_window = chunk_window

    def _instructions(self) -> str:
        categories = "\n".join(f"- {c}" for c in self._categories)
        return (
            "You are a content moderator. Score the user's content for each category "
            "from 0 (absent) to 1 (certain):\n"
            f"{categories}\n"
            'Reply with JSON only: {"category_scores": {"<category>": <score>}, "reason": "<short reason>"}'
        )

    async def moderate(self, text: str, context: RunContext) -> ModerationResult | None:
        """Score ``text``; None when the judge is unavailable."""
        request = ModelRequest(
            messages=[
                Message(role="system", content=self._instructions()),
                Message(role="user", content=text),
            ],
            context=context,
        )
        try:
            response = await self._judge.generate(request)
            if response.object is not None:
                return ModerationResult.model_validate(response.object)
            return ModerationResult.model_validate(json.loads(response.text))
        except (ValidationError, ValueError) as exc:
            logger.warning("Moderation judge returned invalid output, allowing content: %s", exc)
        except Exception as exc:
            logger.warning("Moderation judge failed, allowing content: %s", exc)
        return None

    def flagged(self, result: ModerationResult | None) -> list[str]:
        if result is None:
            return []
        return [
            category
            for category, score in result.category_scores.items()
            if category in self._categories and score >= self._threshold
        ]

    def _verdict(self, args: ProcessorArgs, flagged: list[str], result: ModerationResult) -> Tripwire:
        reason = result.reason or f"Content flagged for {', '.join(flagged)}"
        return args.abort(
            reason,
            metadata={"categories": flagged, "scores": result.category_scores},
        )

    async def _check_messages(
        self,
        args: ProcessInputArgs | ProcessOutputResultArgs,
        messages: list[Message],
    ) -> list[Message] | MessageList | Tripwire | None:
        dropped: list[str] = []
        for message in messages:
            if not message.text.strip():
                continue
            result = await self.moderate(message.text, args.context)
            flagged = self.flagged(result)
            if not flagged:
                continue
            if self._strategy == "block":
                return self._verdict(args, flagged, result)
            if self._strategy == "warn":
                logger.warning("Moderation flagged message %s for %s", message.id, ", ".join(flagged))
                continue
            dropped.append(message.id)

        if not dropped:
            return None
        logger.info("Moderation removed %d message(s)", len(dropped))
        return [m for m in args.messages if m.id not in dropped]

    async def process_input(self, args: ProcessInputArgs) -> list[Message] | MessageList | Tripwire | None:
        latest = [m for m in args.messages if m.role == "user"][-1:]
        if latest and args.state.get("checked") == latest[0].id:
            return None
        if latest:
            args.state["checked"] = latest[0].id
        return await self._check_messages(args, latest)

    async def process_output_result(
        self, args: ProcessOutputResultArgs
    ) -> list[Message] | MessageList | Tripwire | None:
        return await self._check_messages(args, [m for m in args.messages if m.role == "assistant"])

    async def process_output_stream(self, args: ProcessOutputStreamArgs) -> Chunk | Tripwire | None:
        if args.part.type != "text-delta" or not args.part.text.strip():
            return args.part
        window = [p.text for p in args.stream_parts[:-1] if p.type == "text-delta"]
        window = window[-self._chunk_window:] if self._chunk_window else []
        result = await self.moderate("".join(window) + args.part.text, args.context)
        flagged = self.flagged(result)
        if not flagged:
            return args.part
        if self._strategy == "block":
            return self._verdict(args, flagged, result)
        if self._strategy == "warn":
            logger.warning("Moderation flagged stream part for %s", ", ".join(flagged))
            return args.part
        return None
