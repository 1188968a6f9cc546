"""
Feedback Analyzer Orchestration Engine

Stages, composers, tool-call governor, suspend/resume and event streaming
for LLM-backed analysis pipelines. ChromaSimilarityIndex lives in
`engine.chroma_index` and is imported on demand.
"""

from .composers import (
    BranchDelta,
    DefaultMergeStrategy,
    MergeConflict,
    ParallelComposer,
    SequentialComposer,
    validate_pipeline,
)
from .errors import (
    CapabilityError,
    InvalidFeedbackError,
    PipelineError,
    ProtocolError,
    SessionBusyError,
    SessionExistsError,
    SessionNotFoundError,
    SessionNotSuspendedError,
    UnknownInvocationError,
)
from .events import EventType, PipelineEvent
from .governor import ToolCallGovernor
from .hooks import HumanApprovalHook, StageHook, SummarizationHook
from .index import ScoredRecord, SimilarityIndex, SimilarityRecord, cosine_similarity
from .interruption import Disposition, ToolFeedback, ToolInvocationRecord
from .model import ChatModelCapability, ModelCapability, message_text
from .runner import PipelineRunner
from .sessions import SessionStore
from .stage import OutcomeStatus, RunContext, Stage, StepOutcome
from .state import INPUT_SLOT, Session, SessionStatus
from .streaming import StreamingEmitter

__all__ = [
    # Composition
    "Stage",
    "SequentialComposer",
    "ParallelComposer",
    "DefaultMergeStrategy",
    "BranchDelta",
    "MergeConflict",
    "validate_pipeline",
    "RunContext",
    "StepOutcome",
    "OutcomeStatus",
    # Hooks & model
    "StageHook",
    "SummarizationHook",
    "HumanApprovalHook",
    "ModelCapability",
    "ChatModelCapability",
    "message_text",
    "ToolCallGovernor",
    # Sessions
    "PipelineRunner",
    "SessionStore",
    "Session",
    "SessionStatus",
    "INPUT_SLOT",
    "Disposition",
    "ToolFeedback",
    "ToolInvocationRecord",
    # Events
    "EventType",
    "PipelineEvent",
    "StreamingEmitter",
    # Similarity
    "SimilarityIndex",
    "SimilarityRecord",
    "ScoredRecord",
    "cosine_similarity",
    # Errors
    "PipelineError",
    "CapabilityError",
    "ProtocolError",
    "SessionNotFoundError",
    "SessionExistsError",
    "SessionNotSuspendedError",
    "SessionBusyError",
    "UnknownInvocationError",
    "InvalidFeedbackError",
]
