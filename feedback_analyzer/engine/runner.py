"""
Pipeline Runner

Owns sessions and drives the root composer through them:

- invoke / stream:          start a new session from raw input text
- resume / stream_resume:   continue a session awaiting approval

Suspension is a real return: the continuation is parked on the Session and
the calling thread is released. Protocol errors (unknown session, session
not suspended, unknown invocation, bad feedback, busy session) are raised
before the session is touched. Anything else that goes wrong while the
pipeline executes ends the session as failed.
"""

import logging
import threading
from dataclasses import replace
from typing import Any, Callable, Iterable, Iterator, Optional

from .composers import Member, validate_pipeline
from .errors import (
    InvalidFeedbackError,
    ProtocolError,
    SessionNotSuspendedError,
    UnknownInvocationError,
)
from .events import EventType, PipelineEvent
from .governor import ToolCallGovernor
from .interruption import Disposition, ToolFeedback, ToolInvocationRecord
from .model import ModelCapability
from .sessions import SessionStore
from .stage import OutcomeStatus, RunContext, StepOutcome
from .state import INPUT_SLOT, Session, SessionStatus, new_session_id
from .streaming import StreamingEmitter

logger = logging.getLogger(__name__)

Listener = Callable[[PipelineEvent], None]


class PipelineRunner:
    """
    Example:
        runner = PipelineRunner(pipeline, ChatModelCapability(get_chat_model()))
        session = runner.invoke("App crashes on login")
        if session.status is SessionStatus.AWAITING_APPROVAL:
            record = session.pending[0]
            runner.resume(session.session_id, ToolFeedback(record.invocation_id, Disposition.APPROVED))
    """

    def __init__(
        self,
        pipeline: Member,
        model: ModelCapability,
        governor: Optional[ToolCallGovernor] = None,
        sessions: Optional[SessionStore] = None,
        allowed_slots: Optional[Iterable[str]] = None,
    ):
        if allowed_slots is not None:
            allowed_slots = {INPUT_SLOT, *allowed_slots}
        validate_pipeline(pipeline, allowed_slots)

        self.pipeline = pipeline
        self.model = model
        # An empty SessionStore is falsy, so test for None explicitly
        self.governor = governor if governor is not None else ToolCallGovernor()
        self.sessions = sessions if sessions is not None else SessionStore()

    # ========== SYNCHRONOUS ==========

    def invoke(
        self,
        input_text: str,
        session_id: Optional[str] = None,
        listener: Optional[Listener] = None,
    ) -> Session:
        """
        Run the pipeline for a new session.

        Returns:
            The session, completed, failed or awaiting approval

        Raises:
            SessionExistsError: If session_id is already in use
        """
        session_id = session_id or new_session_id()

        with self.sessions.open(session_id) as session:
            session.state = {INPUT_SLOT: input_text}
            ctx = self._context(session, listener)
            ctx.emit(EventType.SESSION_STARTED, self.pipeline.name)
            logger.info("Session %s started", session_id)

            outcome = self._execute(ctx, lambda: self.pipeline.run(dict(session.state), ctx))
            self._apply(session, outcome, ctx)
            return session

    def resume(
        self,
        session_id: str,
        feedback: ToolFeedback,
        listener: Optional[Listener] = None,
    ) -> Session:
        """
        Continue a suspended session with the reviewer's decision.

        Raises:
            SessionNotFoundError, SessionBusyError, SessionNotSuspendedError,
            UnknownInvocationError, InvalidFeedbackError
        """
        with self.sessions.claim(session_id) as session:
            record = self._validate_feedback(session, feedback)

            continuation = session.continuation
            session.continuation = None
            session.pending = [
                pending for pending in session.pending
                if pending.invocation_id != record.invocation_id
            ]
            session.approvals.append(replace(record, disposition=feedback.disposition))
            session.status = SessionStatus.RUNNING

            ctx = self._context(session, listener)
            ctx.emit(
                EventType.SESSION_RESUMED,
                self.pipeline.name,
                invocationId=record.invocation_id,
                toolName=record.tool_name,
                disposition=feedback.disposition.value,
            )
            logger.info(
                "Session %s resumed: %s %s",
                session_id, record.tool_name, feedback.disposition.value,
            )

            outcome = self._execute(
                ctx, lambda: self.pipeline.resume(continuation, feedback, ctx)
            )
            self._apply(session, outcome, ctx)
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.sessions.get(session_id)

    # ========== STREAMING ==========

    def stream(
        self,
        input_text: str,
        session_id: Optional[str] = None,
        maxsize: int = 0,
    ) -> Iterator[PipelineEvent]:
        """Run invoke on a worker thread and yield its events as they happen."""
        session_id = session_id or new_session_id()
        return self._stream(
            session_id,
            lambda listener: self.invoke(input_text, session_id, listener),
            maxsize,
        )

    def stream_resume(
        self,
        session_id: str,
        feedback: ToolFeedback,
        maxsize: int = 0,
    ) -> Iterator[PipelineEvent]:
        return self._stream(
            session_id,
            lambda listener: self.resume(session_id, feedback, listener),
            maxsize,
        )

    def _stream(
        self,
        session_id: str,
        work: Callable[[Listener], Session],
        maxsize: int,
    ) -> Iterator[PipelineEvent]:
        emitter = StreamingEmitter(maxsize=maxsize)

        def target():
            try:
                work(emitter.emit)
            except ProtocolError as e:
                emitter.emit(self._error_event(session_id, e))
            except Exception as e:
                logger.exception("Streaming session %s crashed", session_id)
                emitter.emit(self._error_event(session_id, e))
            finally:
                emitter.close()

        thread = threading.Thread(target=target, name=f"pipeline-{session_id}", daemon=True)
        thread.start()
        return iter(emitter)

    def _error_event(self, session_id: str, error: Exception) -> PipelineEvent:
        # Follows the last event the session emitted; 1 when nothing was emitted
        session = self.sessions.get(session_id)
        sequence = session.event_count + 1 if session is not None else 1
        return PipelineEvent(
            sequence=sequence,
            session_id=session_id,
            type=EventType.ERROR,
            node="runner",
            content=str(error),
            data={"errorType": type(error).__name__},
        )

    # ========== INTERNALS ==========

    def _context(self, session: Session, listener: Optional[Listener]) -> RunContext:
        lock = threading.Lock()

        def emit(event_type: EventType, node: str, content: str = "", **data: Any) -> None:
            # Sequence numbers are assigned and delivered under one lock so
            # delivery order matches sequence order across branch threads
            with lock:
                session.event_count += 1
                event = PipelineEvent(
                    sequence=session.event_count,
                    session_id=session.session_id,
                    type=event_type,
                    node=node,
                    content=content,
                    data=data,
                )
                logger.debug("Event %d %s %s", event.sequence, event.type.value, node)
                if listener is not None:
                    listener(event)

        return RunContext(
            session_id=session.session_id,
            model=self.model,
            governor=self.governor,
            emit=emit,
        )

    def _execute(self, ctx: RunContext, step: Callable[[], StepOutcome]) -> StepOutcome:
        try:
            return step()
        except Exception as e:
            logger.exception("Session %s crashed", ctx.session_id)
            return StepOutcome(status=OutcomeStatus.FAILED, error=f"{type(e).__name__}: {e}")

    def _validate_feedback(self, session: Session, feedback: ToolFeedback) -> ToolInvocationRecord:
        if session.status is not SessionStatus.AWAITING_APPROVAL:
            raise SessionNotSuspendedError(session.session_id, session.status.value)

        record = session.find_pending(feedback.invocation_id)
        if record is None:
            raise UnknownInvocationError(session.session_id, feedback.invocation_id)

        if feedback.disposition not in (Disposition.APPROVED, Disposition.REJECTED):
            raise InvalidFeedbackError(
                session.session_id,
                f"Feedback disposition must be APPROVED or REJECTED, got {feedback.disposition}",
            )
        if feedback.tool_name is not None and feedback.tool_name != record.tool_name:
            raise InvalidFeedbackError(
                session.session_id,
                f"Invocation {record.invocation_id} is for {record.tool_name}, not {feedback.tool_name}",
            )
        return record

    def _apply(self, session: Session, outcome: StepOutcome, ctx: RunContext) -> None:
        session.state.update(outcome.delta)
        session.truncated_stages.extend(outcome.truncated)
        session.warnings.extend(outcome.warnings)

        if outcome.status is OutcomeStatus.SUSPENDED:
            session.status = SessionStatus.AWAITING_APPROVAL
            session.continuation = outcome.continuation
            session.pending = list(outcome.pending)
            ctx.emit(
                EventType.SESSION_SUSPENDED,
                self.pipeline.name,
                pending=[record.to_dict() for record in session.pending],
            )
            logger.info(
                "Session %s awaiting approval of %d tool call(s)",
                session.session_id, len(session.pending),
            )
            return

        session.continuation = None
        session.pending = []
        self.governor.release(session.session_id)

        if outcome.status is OutcomeStatus.COMPLETED:
            session.status = SessionStatus.COMPLETED
            ctx.emit(
                EventType.SESSION_COMPLETED,
                self.pipeline.name,
                slots=sorted(session.state),
                truncatedStages=list(session.truncated_stages),
                warnings=list(session.warnings),
            )
            logger.info("Session %s completed", session.session_id)
        else:
            session.status = SessionStatus.FAILED
            session.error = outcome.error
            ctx.emit(EventType.SESSION_FAILED, self.pipeline.name, outcome.error or "")
            logger.error("Session %s failed: %s", session.session_id, outcome.error)
