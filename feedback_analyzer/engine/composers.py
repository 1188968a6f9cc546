"""
Composers

Sequential and parallel composition of stages (and of other composers).

SequentialComposer compiles its members into a LangGraph StateGraph, one
node per member:

    START ─▶ 00_member ─▶ 01_member ─▶ ... ─▶ END
                 │             │
                 └──── halt ───┴──────────────▶ END   (suspended or failed)

ParallelComposer fans the same state snapshot out to every member on a
thread pool, waits for all of them (full barrier) and merges the branch
deltas with a MergeStrategy.
"""

import copy
import logging
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import (
    Any,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    TypedDict,
)

from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, START, StateGraph

from .errors import ProtocolError, UnknownInvocationError
from .events import EventType
from .interruption import ToolFeedback
from .stage import OutcomeStatus, RunContext, Stage, StepOutcome

logger = logging.getLogger(__name__)


class Member(Protocol):
    name: str

    def run(self, state: Dict[str, Any], ctx: RunContext) -> StepOutcome:
        ...

    def resume(self, continuation: Any, feedback: ToolFeedback, ctx: RunContext) -> StepOutcome:
        ...

    def iter_stages(self) -> Iterator[Stage]:
        ...


# ============================================================================
# SEQUENTIAL
# ============================================================================

class SequenceState(TypedDict):
    slots: Dict[str, Any]                   # state visible to the next member
    delta: Dict[str, Any]                   # slots written by this sequence
    position: int                           # index of the next member to run
    resume: Optional[Tuple[Any, ToolFeedback]]
    halt: Optional[StepOutcome]             # first non-completed member outcome
    truncated: List[str]
    warnings: List[str]


@dataclass
class SequenceContinuation:
    slots: Dict[str, Any]
    delta: Dict[str, Any]
    position: int
    member_continuation: Any


class SequentialComposer:
    """
    Run members in declared order; each sees the state accumulated so far.

    The first member that fails or suspends halts the sequence. A failure
    returns the delta accumulated so far plus the error.
    """

    def __init__(self, name: str, members: Sequence[Member]):
        if not members:
            raise ValueError(f"SequentialComposer {name} needs at least one member")
        self.name = name
        self.members = list(members)
        self._node_names = [f"{i:02d}_{member.name}" for i, member in enumerate(self.members)]
        self._graph = self._build_graph()

    def iter_stages(self) -> Iterator[Stage]:
        for member in self.members:
            yield from member.iter_stages()

    def _build_graph(self):
        workflow = StateGraph(SequenceState)

        # ========== ADD NODES ==========
        for index, member in enumerate(self.members):
            workflow.add_node(self._node_names[index], self._make_node(index, member))

        # ========== ADD EDGES ==========
        destinations = [*self._node_names, END]
        workflow.add_conditional_edges(START, self._route, destinations)
        for node_name in self._node_names:
            workflow.add_conditional_edges(node_name, self._route, destinations)

        return workflow.compile()

    def _route(self, state: SequenceState) -> str:
        if state.get("halt") is not None or state["position"] >= len(self.members):
            return END
        return self._node_names[state["position"]]

    def _make_node(self, index: int, member: Member):
        def node(state: SequenceState, config: RunnableConfig) -> Dict[str, Any]:
            ctx: RunContext = config["configurable"]["run_context"]

            if state.get("resume") is not None:
                continuation, feedback = state["resume"]
                outcome = member.resume(continuation, feedback, ctx)
            else:
                outcome = member.run(dict(state["slots"]), ctx)

            update: Dict[str, Any] = {
                "slots": {**state["slots"], **outcome.delta},
                "delta": {**state["delta"], **outcome.delta},
                "resume": None,
                "truncated": state["truncated"] + outcome.truncated,
                "warnings": state["warnings"] + outcome.warnings,
            }
            if outcome.status is OutcomeStatus.COMPLETED:
                update["position"] = index + 1
            else:
                update["halt"] = outcome
            return update

        node.__name__ = self._node_names[index]
        return node

    def _invoke(self, initial: SequenceState, ctx: RunContext) -> StepOutcome:
        result = self._graph.invoke(
            initial,
            config={
                "configurable": {"run_context": ctx},
                "recursion_limit": len(self.members) + 2,
            },
        )

        halt: Optional[StepOutcome] = result.get("halt")
        outcome = StepOutcome(
            status=OutcomeStatus.COMPLETED,
            delta=result["delta"],
            truncated=result["truncated"],
            warnings=result["warnings"],
        )
        if halt is None:
            return outcome

        if halt.status is OutcomeStatus.SUSPENDED:
            outcome.status = OutcomeStatus.SUSPENDED
            outcome.pending = list(halt.pending)
            outcome.continuation = SequenceContinuation(
                slots=result["slots"],
                delta=result["delta"],
                position=result["position"],
                member_continuation=halt.continuation,
            )
            return outcome

        outcome.status = OutcomeStatus.FAILED
        outcome.error = halt.error
        logger.error("Sequence %s halted at position %d: %s", self.name, result["position"], halt.error)
        return outcome

    def run(self, state: Dict[str, Any], ctx: RunContext) -> StepOutcome:
        return self._invoke(
            SequenceState(
                slots=dict(state),
                delta={},
                position=0,
                resume=None,
                halt=None,
                truncated=[],
                warnings=[],
            ),
            ctx,
        )

    def resume(
        self,
        continuation: SequenceContinuation,
        feedback: ToolFeedback,
        ctx: RunContext,
    ) -> StepOutcome:
        if not isinstance(continuation, SequenceContinuation):
            raise UnknownInvocationError(ctx.session_id, feedback.invocation_id)

        return self._invoke(
            SequenceState(
                slots=dict(continuation.slots),
                delta=dict(continuation.delta),
                position=continuation.position,
                resume=(continuation.member_continuation, feedback),
                halt=None,
                truncated=[],
                warnings=[],
            ),
            ctx,
        )


# ============================================================================
# MERGE STRATEGY
# ============================================================================

@dataclass(frozen=True)
class BranchDelta:
    name: str
    index: int                              # declaration order
    slots: Dict[str, Any] = field(default_factory=dict)
    failed: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class MergeConflict:
    slot: str
    kept_branch: str
    discarded_branch: str

    def __str__(self) -> str:
        return (
            f"Merge conflict on slot '{self.slot}': kept value from {self.kept_branch}, "
            f"discarded value from {self.discarded_branch}"
        )


class MergeStrategy(Protocol):
    def merge(self, deltas: Sequence[BranchDelta]) -> Tuple[Dict[str, Any], List[MergeConflict]]:
        ...


class DefaultMergeStrategy:
    """
    Union of branch deltas. When two branches write the same slot, the
    first-declared branch wins and the clash is reported as a conflict.
    Failed branches contribute nothing.
    """

    def merge(self, deltas: Sequence[BranchDelta]) -> Tuple[Dict[str, Any], List[MergeConflict]]:
        merged: Dict[str, Any] = {}
        owners: Dict[str, str] = {}
        conflicts: List[MergeConflict] = []

        for delta in sorted(deltas, key=lambda d: d.index):
            if delta.failed:
                continue
            for slot, value in delta.slots.items():
                if slot in owners:
                    conflict = MergeConflict(slot, owners[slot], delta.name)
                    logger.warning(str(conflict))
                    conflicts.append(conflict)
                    continue
                owners[slot] = delta.name
                merged[slot] = value

        return merged, conflicts


# ============================================================================
# PARALLEL
# ============================================================================

@dataclass
class ParallelContinuation:
    snapshot: Dict[str, Any]
    outcomes: List[StepOutcome]             # one per member, in declaration order


class ParallelComposer:
    """
    Run members concurrently against copies of the same state snapshot.

    Branches never see each other's writes. Every branch runs to termination
    before the merge, including when a sibling fails or suspends.
    """

    def __init__(
        self,
        name: str,
        members: Sequence[Member],
        merge_strategy: Optional[MergeStrategy] = None,
        max_workers: Optional[int] = None,
    ):
        if not members:
            raise ValueError(f"ParallelComposer {name} needs at least one member")
        self.name = name
        self.members = list(members)
        self.merge_strategy = merge_strategy or DefaultMergeStrategy()
        self.max_workers = max_workers

    def iter_stages(self) -> Iterator[Stage]:
        for member in self.members:
            yield from member.iter_stages()

    def _run_branch(self, member: Member, snapshot: Dict[str, Any], ctx: RunContext) -> StepOutcome:
        try:
            return member.run(copy.deepcopy(snapshot), ctx)
        except Exception as e:
            logger.exception("Branch %s of %s raised", member.name, self.name)
            return StepOutcome(status=OutcomeStatus.FAILED, error=f"{type(e).__name__}: {e}")

    def run(self, state: Dict[str, Any], ctx: RunContext) -> StepOutcome:
        snapshot = copy.deepcopy(dict(state))
        ctx.emit(
            EventType.STAGE_STARTED,
            self.name,
            branches=[member.name for member in self.members],
        )

        workers = self.max_workers or len(self.members)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=self.name) as executor:
            futures = [
                executor.submit(self._run_branch, member, snapshot, ctx)
                for member in self.members
            ]
            outcomes = [future.result() for future in futures]

        return self._join(snapshot, outcomes, ctx)

    def resume(
        self,
        continuation: ParallelContinuation,
        feedback: ToolFeedback,
        ctx: RunContext,
    ) -> StepOutcome:
        if not isinstance(continuation, ParallelContinuation):
            raise UnknownInvocationError(ctx.session_id, feedback.invocation_id)

        index = _owning_branch(continuation.outcomes, feedback.invocation_id)
        if index is None:
            raise UnknownInvocationError(ctx.session_id, feedback.invocation_id)

        member = self.members[index]
        try:
            resumed = member.resume(continuation.outcomes[index].continuation, feedback, ctx)
        except ProtocolError:
            raise
        except Exception as e:
            logger.exception("Branch %s of %s raised on resume", member.name, self.name)
            resumed = StepOutcome(status=OutcomeStatus.FAILED, error=f"{type(e).__name__}: {e}")

        outcomes = list(continuation.outcomes)
        outcomes[index] = resumed
        return self._join(continuation.snapshot, outcomes, ctx)

    def _join(
        self,
        snapshot: Dict[str, Any],
        outcomes: List[StepOutcome],
        ctx: RunContext,
    ) -> StepOutcome:
        truncated = [name for outcome in outcomes for name in outcome.truncated]
        warnings = [warning for outcome in outcomes for warning in outcome.warnings]

        suspended = [o for o in outcomes if o.status is OutcomeStatus.SUSPENDED]
        if suspended:
            # Reported now, so clear them from the held outcomes
            held = [replace(o, truncated=[], warnings=[]) for o in outcomes]
            return StepOutcome(
                status=OutcomeStatus.SUSPENDED,
                continuation=ParallelContinuation(snapshot=snapshot, outcomes=held),
                pending=[record for o in suspended for record in o.pending],
                truncated=truncated,
                warnings=warnings,
            )

        deltas = [
            BranchDelta(
                name=member.name,
                index=index,
                slots=outcome.delta,
                failed=outcome.status is OutcomeStatus.FAILED,
                error=outcome.error,
            )
            for index, (member, outcome) in enumerate(zip(self.members, outcomes))
        ]
        merged, conflicts = self.merge_strategy.merge(deltas)

        for conflict in conflicts:
            ctx.emit(
                EventType.MERGE_CONFLICT,
                self.name,
                str(conflict),
                slot=conflict.slot,
                keptBranch=conflict.kept_branch,
                discardedBranch=conflict.discarded_branch,
            )
            warnings.append(str(conflict))

        failed = [delta for delta in deltas if delta.failed]
        ctx.emit(
            EventType.MERGE_COMPLETED,
            self.name,
            slots=sorted(merged),
            failedBranches=[delta.name for delta in failed],
        )

        if failed:
            return StepOutcome(
                status=OutcomeStatus.FAILED,
                delta=merged,
                error="; ".join(f"{delta.name}: {delta.error}" for delta in failed),
                truncated=truncated,
                warnings=warnings,
            )
        return StepOutcome(
            status=OutcomeStatus.COMPLETED,
            delta=merged,
            truncated=truncated,
            warnings=warnings,
        )


def _owning_branch(outcomes: Sequence[StepOutcome], invocation_id: str) -> Optional[int]:
    for index, outcome in enumerate(outcomes):
        if outcome.status is not OutcomeStatus.SUSPENDED:
            continue
        if any(record.invocation_id == invocation_id for record in outcome.pending):
            return index
    return None


# ============================================================================
# VALIDATION
# ============================================================================

def validate_pipeline(root: Member, allowed_slots: Optional[Iterable[str]] = None) -> None:
    """
    Static checks on a pipeline definition.

    Raises:
        ValueError: Duplicate stage names, or an output slot outside
            allowed_slots (when given)
    """
    stages = list(root.iter_stages())

    duplicates = [name for name, count in Counter(s.name for s in stages).items() if count > 1]
    if duplicates:
        raise ValueError(f"Duplicate stage names in pipeline {root.name}: {sorted(duplicates)}")

    if allowed_slots is None:
        return

    allowed = set(allowed_slots)
    for stage in stages:
        for key in (stage.output_key, stage.artifacts_key):
            if key is not None and key not in allowed:
                raise ValueError(f"Stage {stage.name} writes unknown slot '{key}'")
