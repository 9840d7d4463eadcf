import logging

from agentloop_core.memory import Memory
from agentloop_core.message_list import MessageList
from agentloop_core.processors.protocol import BaseProcessor, ProcessInputArgs

logger = logging.getLogger(__name__)


class MessageHistory(BaseProcessor):
    """Loads the thread's recent messages into the run as memory.

    Recall happens once per run; later steps reuse what was loaded.
    """

    id = "message-history"

    def __init__(self, memory: Memory) -> None:
        self._memory = memory

    async def process_input(self, args: ProcessInputArgs) -> MessageList | None:
        if args.state.get("loaded"):
            return None
        args.state["loaded"] = True

        thread_id = args.context.thread_id
        if not thread_id:
            return None
        present = {m.id for m in args.messages}
        recalled = [
            m
            for m in await self._memory.recall(thread_id, resource_id=args.context.resource_id)
            if m.id not in present
        ]
        logger.debug("recalled thread=%s n=%d", thread_id, len(recalled))
        args.message_list.add(recalled, "memory")
        return args.message_list
