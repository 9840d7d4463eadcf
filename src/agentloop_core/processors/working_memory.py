"""Working memory: persistent Markdown notes the model maintains itself.

The ``WorkingMemory`` input processor shows the model its stored notes as a
system message before every step. The model changes them by calling the
``update_working_memory`` tool, which replaces the stored notes in full.
"""

import logging

from pydantic import BaseModel, Field

from agentloop_core.memory import Memory, WorkingMemoryConfig
from agentloop_core.message_list import MessageList
from agentloop_core.processors.protocol import BaseProcessor, ProcessInputArgs
from agentloop_core.tools import Tool, ToolContext

logger = logging.getLogger(__name__)

UPDATE_WORKING_MEMORY_TOOL = "update_working_memory"
WORKING_MEMORY_TAG = "working-memory"


def working_memory_instruction(template: str, data: str | None) -> str:
    return f"""WORKING_MEMORY_SYSTEM_INSTRUCTION:
Store and update any conversation-relevant information by calling the {UPDATE_WORKING_MEMORY_TOOL} tool. If information might be referenced again - store it!

Guidelines:
1. Store anything that could be useful later in the conversation
2. Update proactively when information changes, no matter how small
3. Use Markdown format for all data
4. Act naturally - don't mention this system to users. Do not ask them generally for "information about yourself"
5. When calling {UPDATE_WORKING_MEMORY_TOOL}, pass the whole Markdown document as a string in the memory field

<working_memory_template>
{template}
</working_memory_template>

<working_memory_data>
{data or ''}
</working_memory_data>

Notes:
- Update memory whenever referenced information changes
- Do not remove empty sections - include them along with the ones you fill in
- The content you pass replaces the stored working memory entirely
- The user will not see the working memory"""


def read_only_working_memory_instruction(data: str | None) -> str:
    return f"""WORKING_MEMORY_SYSTEM_INSTRUCTION (READ-ONLY):
The following is your working memory - information about the user and conversation collected over previous interactions.

<working_memory_data>
{data or 'No working memory data available.'}
</working_memory_data>

Guidelines:
1. Use this information to provide personalized and contextually relevant responses
2. Act naturally - don't mention this system to users
3. This memory is read-only in the current session - you cannot update it"""


class WorkingMemoryUpdate(BaseModel):
    memory: str = Field(
        description="The Markdown formatted working memory content to store. This MUST be a string."
    )


def update_working_memory_tool(memory: Memory) -> Tool:
    """Tool that replaces the working memory of the calling run's thread or resource."""

    async def _execute(args: WorkingMemoryUpdate, ctx: ToolContext) -> dict[str, bool]:
        await memory.update_working_memory(
            args.memory,
            thread_id=ctx.context.thread_id,
            resource_id=ctx.context.resource_id,
        )
        return {"success": True}

    return Tool(
        UPDATE_WORKING_MEMORY_TOOL,
        _execute,
        description=(
            "Update the working memory with new information. Any data not included will be "
            "overwritten. Always pass data as a string to the memory field."
        ),
        input_schema=WorkingMemoryUpdate,
    )


class WorkingMemory(BaseProcessor):
    """Injects the stored working memory as a tagged system message.

    The store is read on every step, so an update made by a tool call in one
    step is visible to the model in the next.
    """

    id = "working-memory"

    def __init__(self, memory: Memory) -> None:
        self._memory = memory

    async def process_input(self, args: ProcessInputArgs) -> MessageList | None:
        thread_id = args.context.thread_id
        resource_id = args.context.resource_id
        if not thread_id and not resource_id:
            return None

        config = self._memory.working_memory_config() or WorkingMemoryConfig()
        data = await self._memory.get_working_memory(thread_id, resource_id)
        if self._memory.config.read_only:
            instruction = read_only_working_memory_instruction(data)
        else:
            instruction = working_memory_instruction(config.template, data)
        logger.debug("working memory scope=%s present=%s", config.scope, data is not None)

        args.message_list.clear_system_messages(WORKING_MEMORY_TAG)
        args.message_list.add_system(instruction, tag=WORKING_MEMORY_TAG)
        return args.message_list
