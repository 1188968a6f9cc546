"""
Stage

One LLM-driven processing step: an instruction, a bounded tool-use loop and
a named output slot.

Loop (one `stage_iteration` event per pass):
    render slots ─▶ before_model hooks ─▶ model.complete
        │
        ├─ no tool calls ─▶ before_finish hooks ─▶ output slot set
        │
        └─ tool calls, in order:
              governor.admit    deny ─▶ terminate with partial text (truncated)
              approval gate     gated ─▶ suspend (StageContinuation)
              tool.invoke ─▶ after_tool_result hooks ─▶ next pass
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    ToolCall,
    ToolMessage,
)
from langchain_core.tools import BaseTool

from .errors import CapabilityError, UnknownInvocationError
from .events import EventType
from .governor import DEFAULT_TOOL_CALL_LIMIT, ToolCallGovernor
from .hooks import StageHook
from .interruption import Disposition, ToolFeedback, ToolInvocationRecord
from .model import ModelCapability, message_text

logger = logging.getLogger(__name__)


def _no_emit(event_type: EventType, node: str, content: str = "", **data: Any) -> None:
    return None


@dataclass
class RunContext:
    """Per-execution collaborators handed down the composer tree."""
    session_id: str
    model: ModelCapability
    governor: ToolCallGovernor
    emit: Callable[..., None] = _no_emit


class OutcomeStatus(str, Enum):
    COMPLETED = "completed"
    SUSPENDED = "suspended"
    FAILED = "failed"


@dataclass
class StepOutcome:
    """
    Result of running (or resuming) a stage or composer.

    `truncated` and `warnings` only carry what is new since the last outcome
    reported for the same execution, so callers can simply accumulate them.
    """
    status: OutcomeStatus
    delta: Dict[str, Any] = field(default_factory=dict)
    continuation: Any = None
    pending: List[ToolInvocationRecord] = field(default_factory=list)
    error: Optional[str] = None
    truncated: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class StageContinuation:
    """Everything needed to pick a suspended stage loop back up."""
    stage_name: str
    conversation: List[BaseMessage]
    iteration: int
    pending: ToolInvocationRecord
    pending_call: ToolCall
    remaining_calls: List[ToolCall]
    artifacts: List[Any]


def render_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, indent=2, default=str)


@dataclass(frozen=True)
class Stage:
    """
    Immutable stage definition.

    Args:
        name: Unique stage name (also the event node name)
        instruction: System instruction sent with every model call
        output_key: Slot receiving the final answer
        tools: Tools the model may call, in order
        input_keys: Slots rendered into the prompt (all slots when empty)
        max_tool_calls: Governor ceiling for this stage
        hooks: Interceptors, evaluated in order
        artifacts_key: Slot receiving the collected tool artifacts
    """
    name: str
    instruction: str
    output_key: str
    tools: Tuple[BaseTool, ...] = ()
    input_keys: Tuple[str, ...] = ()
    max_tool_calls: int = DEFAULT_TOOL_CALL_LIMIT
    hooks: Tuple[StageHook, ...] = ()
    artifacts_key: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "tools", tuple(self.tools))
        object.__setattr__(self, "input_keys", tuple(self.input_keys))
        object.__setattr__(self, "hooks", tuple(self.hooks))

        if not self.name:
            raise ValueError("Stage name must not be empty")
        if not self.output_key:
            raise ValueError(f"Stage {self.name} needs an output_key")
        tool_names = [tool.name for tool in self.tools]
        if len(tool_names) != len(set(tool_names)):
            raise ValueError(f"Stage {self.name} has duplicate tool names: {tool_names}")

    def iter_stages(self) -> Iterator["Stage"]:
        yield self

    def render_input(self, state: Dict[str, Any]) -> str:
        keys = self.input_keys or tuple(state)
        sections = [
            f"## {key}\n{render_value(state[key])}"
            for key in keys
            if key in state and state[key] is not None
        ]
        return "\n\n".join(sections)

    # ========== ENTRY POINTS ==========

    def run(self, state: Dict[str, Any], ctx: RunContext) -> StepOutcome:
        ctx.emit(EventType.STAGE_STARTED, self.name, outputKey=self.output_key)
        conversation: List[BaseMessage] = [HumanMessage(content=self.render_input(state))]
        return self._loop(conversation, 0, [], ctx)

    def resume(
        self,
        continuation: StageContinuation,
        feedback: ToolFeedback,
        ctx: RunContext,
    ) -> StepOutcome:
        """
        Continue a suspended loop with the reviewer's decision.

        Approved: run the tool (or use feedback.result as its output).
        Rejected: tell the model the call was refused.
        Calls queued behind the gated one in the same model reply run next.
        """
        if (
            not isinstance(continuation, StageContinuation)
            or continuation.pending.invocation_id != feedback.invocation_id
        ):
            raise UnknownInvocationError(ctx.session_id, feedback.invocation_id)

        conversation = list(continuation.conversation)
        artifacts = list(continuation.artifacts)
        call = continuation.pending_call

        if feedback.disposition is Disposition.APPROVED:
            if feedback.result is not None:
                message = ToolMessage(
                    content=feedback.result,
                    tool_call_id=call["id"],
                    name=call["name"],
                )
            else:
                message = self._execute(call)
        else:
            reason = f" Reviewer note: {feedback.description}" if feedback.description else ""
            message = ToolMessage(
                content=(
                    f"The call to {call['name']} was rejected by a human reviewer.{reason} "
                    "Do not retry it; continue with the information you have."
                ),
                tool_call_id=call["id"],
                name=call["name"],
                status="error",
            )

        self._record_result(call, message, conversation, artifacts, ctx)

        outcome = self._dispatch(
            continuation.remaining_calls, conversation, continuation.iteration, artifacts, ctx
        )
        if outcome is not None:
            return outcome
        return self._loop(conversation, continuation.iteration, artifacts, ctx)

    # ========== LOOP ==========

    def _loop(
        self,
        conversation: List[BaseMessage],
        iteration: int,
        artifacts: List[Any],
        ctx: RunContext,
    ) -> StepOutcome:
        while True:
            iteration += 1
            try:
                for hook in self.hooks:
                    conversation = list(hook.before_model(self, conversation, ctx))
                reply = ctx.model.complete(self.instruction, conversation, self.tools)
            except Exception as e:
                return self._fail(CapabilityError(self.name, e), ctx)

            calls = _normalize_calls(reply)
            if any(not call.get("id") for call in reply.tool_calls):
                # Keep the AIMessage ids in step with the ToolMessages that answer it
                reply = reply.model_copy(update={"tool_calls": calls})
            conversation.append(reply)
            text = message_text(reply)
            ctx.emit(
                EventType.STAGE_ITERATION,
                self.name,
                text,
                iteration=iteration,
                toolCalls=[call["name"] for call in calls],
            )

            if not calls:
                return self._finish(text, artifacts, ctx)

            outcome = self._dispatch(calls, conversation, iteration, artifacts, ctx)
            if outcome is not None:
                return outcome

    def _dispatch(
        self,
        calls: Sequence[ToolCall],
        conversation: List[BaseMessage],
        iteration: int,
        artifacts: List[Any],
        ctx: RunContext,
    ) -> Optional[StepOutcome]:
        """Run queued tool calls. Returns an outcome only when the loop must stop."""
        for position, call in enumerate(calls):
            if not ctx.governor.admit(ctx.session_id, self.name, self.max_tool_calls):
                return self._truncate(conversation, artifacts, ctx)

            description = self._approval_description(call)
            if description is not None:
                return self._suspend(
                    call, description, list(calls[position + 1:]),
                    conversation, iteration, artifacts, ctx,
                )

            message = self._execute(call)
            self._record_result(call, message, conversation, artifacts, ctx)

        return None

    def _approval_description(self, call: ToolCall) -> Optional[str]:
        for hook in self.hooks:
            description = hook.approval_for(self, call)
            if description is not None:
                return description
        return None

    def _execute(self, call: ToolCall) -> ToolMessage:
        """Invoke a tool. Errors go back to the model as an error ToolMessage."""
        tool = next((t for t in self.tools if t.name == call["name"]), None)
        if tool is None:
            return ToolMessage(
                content=f"Error: unknown tool '{call['name']}'",
                tool_call_id=call["id"],
                name=call["name"],
                status="error",
            )

        try:
            result = tool.invoke({**call, "type": "tool_call"})
        except Exception as e:
            logger.warning("Tool %s failed in stage %s: %s", call["name"], self.name, e)
            return ToolMessage(
                content=f"Error: {type(e).__name__}: {e}",
                tool_call_id=call["id"],
                name=call["name"],
                status="error",
            )

        if isinstance(result, ToolMessage):
            return result
        return ToolMessage(content=render_value(result), tool_call_id=call["id"], name=call["name"])

    def _record_result(
        self,
        call: ToolCall,
        message: ToolMessage,
        conversation: List[BaseMessage],
        artifacts: List[Any],
        ctx: RunContext,
    ) -> None:
        artifact = getattr(message, "artifact", None)
        if isinstance(artifact, list):
            artifacts.extend(artifact)
        elif artifact is not None:
            artifacts.append(artifact)

        for hook in self.hooks:
            message = hook.after_tool_result(self, call, message, ctx)
        conversation.append(message)

        ctx.emit(
            EventType.TOOL_RESULT,
            self.name,
            message_text(message),
            toolName=call["name"],
            invocationId=call["id"],
            status=getattr(message, "status", "success"),
        )

    # ========== TERMINATION ==========

    def _finish(
        self,
        text: str,
        artifacts: List[Any],
        ctx: RunContext,
        truncated: bool = False,
    ) -> StepOutcome:
        output = text
        for hook in self.hooks:
            output = hook.before_finish(self, output, ctx)

        delta: Dict[str, Any] = {self.output_key: output}
        if self.artifacts_key is not None:
            delta[self.artifacts_key] = list(artifacts)

        ctx.emit(
            EventType.STAGE_COMPLETED,
            self.name,
            output,
            outputKey=self.output_key,
            truncated=truncated,
        )
        return StepOutcome(
            status=OutcomeStatus.COMPLETED,
            delta=delta,
            truncated=[self.name] if truncated else [],
        )

    def _truncate(
        self,
        conversation: List[BaseMessage],
        artifacts: List[Any],
        ctx: RunContext,
    ) -> StepOutcome:
        partial = ""
        for message in reversed(conversation):
            if isinstance(message, AIMessage) and message_text(message).strip():
                partial = message_text(message)
                break
        logger.warning("Stage %s truncated in session %s", self.name, ctx.session_id)
        return self._finish(partial, artifacts, ctx, truncated=True)

    def _suspend(
        self,
        call: ToolCall,
        description: str,
        remaining_calls: List[ToolCall],
        conversation: List[BaseMessage],
        iteration: int,
        artifacts: List[Any],
        ctx: RunContext,
    ) -> StepOutcome:
        record = ToolInvocationRecord(
            invocation_id=call["id"],
            session_id=ctx.session_id,
            stage_name=self.name,
            tool_name=call["name"],
            arguments=json.dumps(call["args"], ensure_ascii=False, default=str),
            description=description,
        )
        continuation = StageContinuation(
            stage_name=self.name,
            conversation=conversation,
            iteration=iteration,
            pending=record,
            pending_call=call,
            remaining_calls=remaining_calls,
            artifacts=artifacts,
        )
        ctx.emit(
            EventType.AWAITING_APPROVAL,
            self.name,
            description,
            invocationId=record.invocation_id,
            toolName=record.tool_name,
            arguments=record.arguments,
        )
        logger.info(
            "Stage %s suspended on %s (%s) in session %s",
            self.name, record.tool_name, record.invocation_id, ctx.session_id,
        )
        return StepOutcome(
            status=OutcomeStatus.SUSPENDED,
            continuation=continuation,
            pending=[record],
        )

    def _fail(self, error: CapabilityError, ctx: RunContext) -> StepOutcome:
        logger.error("Stage %s failed in session %s: %s", self.name, ctx.session_id, error)
        ctx.emit(EventType.STAGE_FAILED, self.name, str(error))
        return StepOutcome(status=OutcomeStatus.FAILED, error=str(error))


def _normalize_calls(reply: AIMessage) -> List[ToolCall]:
    """Tool calls of a reply, with an id filled in where the model gave none."""
    calls = []
    for call in reply.tool_calls:
        call_id = call.get("id") or f"call_{uuid.uuid4().hex[:12]}"
        calls.append(ToolCall(name=call["name"], args=call.get("args", {}), id=call_id, type="tool_call"))
    return calls
