"""
Stage Hooks

Interception points in a stage's model/tool loop:

- before_model: rewrite the conversation before each model call
- approval_for: gate a tool call behind human approval
- after_tool_result: rewrite a tool result before the model sees it
- before_finish: rewrite the final answer before it is written to state

Hooks run in declaration order. The base class is a no-op for every point,
so a hook only overrides what it needs.
"""

import logging
from typing import List, Mapping, Optional, Sequence

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    ToolCall,
    ToolMessage,
)

from .model import message_text

logger = logging.getLogger(__name__)


class StageHook:
    """Base hook. Every method returns its input unchanged."""

    def before_model(self, stage, conversation: List[BaseMessage], ctx) -> List[BaseMessage]:
        return conversation

    def approval_for(self, stage, tool_call: ToolCall) -> Optional[str]:
        """Return a reviewer-facing description to gate the call, None to let it run."""
        return None

    def after_tool_result(self, stage, tool_call: ToolCall, message: ToolMessage, ctx) -> ToolMessage:
        return message

    def before_finish(self, stage, output: str, ctx) -> str:
        return output


# ============================================================================
# SUMMARIZATION
# ============================================================================

SUMMARY_INSTRUCTION = """You compress the working history of a support ticket analysis.
Summarize the conversation below in a few short paragraphs. Keep every fact
about the ticket, the tools that were called and what they returned. Do not
add new conclusions."""

SUMMARY_PREFIX = "Summary of the earlier analysis steps:\n"


def estimate_tokens(messages: Sequence[BaseMessage]) -> int:
    """Rough token estimate (4 characters per token)."""
    total = 0
    for message in messages:
        total += len(message_text(message))
        if isinstance(message, AIMessage):
            for call in message.tool_calls:
                total += len(call["name"]) + len(str(call["args"]))
    return total // 4


class SummarizationHook(StageHook):
    """
    Replace old history with a model-written summary once the conversation
    grows past max_tokens_before_summary.

    The newest messages_to_keep messages are kept verbatim. The cut never
    separates a tool result from the assistant message that requested it.
    """

    def __init__(self, max_tokens_before_summary: int = 8000, messages_to_keep: int = 10):
        self.max_tokens_before_summary = max_tokens_before_summary
        self.messages_to_keep = messages_to_keep

    def _cut_index(self, conversation: List[BaseMessage]) -> int:
        cut = max(len(conversation) - self.messages_to_keep, 0)
        while cut > 0 and isinstance(conversation[cut], ToolMessage):
            cut -= 1
        return cut

    def before_model(self, stage, conversation: List[BaseMessage], ctx) -> List[BaseMessage]:
        if estimate_tokens(conversation) <= self.max_tokens_before_summary:
            return conversation

        cut = self._cut_index(conversation)
        if cut == 0:
            return conversation

        transcript = "\n\n".join(
            f"[{message.type}] {message_text(message)}" for message in conversation[:cut]
        )
        summary = ctx.model.complete(
            SUMMARY_INSTRUCTION, [HumanMessage(content=transcript)], ()
        )
        logger.info(
            "Summarized %d messages for stage %s in session %s",
            cut, stage.name, ctx.session_id,
        )
        return [
            HumanMessage(content=SUMMARY_PREFIX + message_text(summary)),
            *conversation[cut:],
        ]


# ============================================================================
# HUMAN APPROVAL
# ============================================================================

class HumanApprovalHook(StageHook):
    """
    Gate the named tools behind human approval.

    Args:
        approval_on: tool name -> description shown to the reviewer
    """

    def __init__(self, approval_on: Mapping[str, str]):
        self.approval_on = dict(approval_on)

    def approval_for(self, stage, tool_call: ToolCall) -> Optional[str]:
        return self.approval_on.get(tool_call["name"])
