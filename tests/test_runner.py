"""
Pipeline runner tests: session lifecycle, event sequencing, failure,
truncation and suspend/resume equivalence.
"""

import pytest
from langchain_core.tools import tool

from feedback_analyzer.engine import (
    Disposition,
    EventType,
    HumanApprovalHook,
    ParallelComposer,
    PipelineRunner,
    SequentialComposer,
    SessionExistsError,
    SessionStatus,
    Stage,
    ToolCallGovernor,
    ToolFeedback,
)

from conftest import ScriptedModel, tool_call_reply, tool_results


@tool
def lookup(query: str) -> str:
    """Look up a ticket by query."""
    return f"found {query}"


def lookup_then_answer(history, tools):
    results = tool_results(history)
    if not results:
        return tool_call_reply("lookup", {"query": "login crash"}, "call_1")
    return f"answer using {results[0].content}"


def build_pipeline(gated: bool = False, max_tool_calls: int = 30):
    hooks = (HumanApprovalHook({"lookup": "Confirm lookup."}),) if gated else ()
    return SequentialComposer("main", [
        Stage(name="intake", instruction="Stage intake.", output_key="structured", input_keys=("input",)),
        Stage(
            name="classify", instruction="Stage classify.", output_key="classification",
            tools=(lookup,), hooks=hooks, input_keys=("structured",), max_tool_calls=max_tool_calls,
        ),
        ParallelComposer("deep", [
            Stage(name="cause", instruction="Stage cause.", output_key="cause", input_keys=("classification",)),
            Stage(name="impact", instruction="Stage impact.", output_key="impact", input_keys=("classification",)),
        ]),
        Stage(name="report", instruction="Stage report.", output_key="report", input_keys=("cause", "impact")),
    ])


def build_model():
    return ScriptedModel({
        "Stage intake.": ["structured ticket"],
        "Stage classify.": lookup_then_answer,
        "Stage cause.": ["null token"],
        "Stage impact.": ["P1"],
        "Stage report.": lambda history, tools: f"report of {history[0].content}",
    })


class TestPipelineRunner:

    def test_invoke_completes_session(self):
        runner = PipelineRunner(build_pipeline(), build_model())

        session = runner.invoke("app crashes on login")

        assert session.status is SessionStatus.COMPLETED
        assert session.state["input"] == "app crashes on login"
        assert session.state["classification"] == "answer using found login crash"
        assert session.state["cause"] == "null token"
        assert "P1" in session.state["report"]
        assert runner.get_session(session.session_id) is session

    def test_events_are_numbered_in_emission_order(self):
        runner = PipelineRunner(build_pipeline(), build_model())
        events = []

        runner.invoke("ticket", listener=events.append)

        assert [e.sequence for e in events] == list(range(1, len(events) + 1))
        assert events[0].type is EventType.SESSION_STARTED
        assert events[-1].type is EventType.SESSION_COMPLETED
        assert sum(1 for e in events if e.is_terminal) == 1
        started = [e.node for e in events if e.type is EventType.STAGE_STARTED]
        assert started[:3] == ["intake", "classify", "deep"]
        assert started[-1] == "report"

    def test_explicit_session_id_cannot_be_reused(self):
        runner = PipelineRunner(build_pipeline(), build_model())
        runner.invoke("ticket", session_id="fixed")

        with pytest.raises(SessionExistsError):
            runner.invoke("ticket", session_id="fixed")

    def test_failed_stage_fails_session(self):
        model = build_model()
        model.scripts["Stage cause."] = [RuntimeError("bedrock unavailable")]
        runner = PipelineRunner(build_pipeline(), model)
        events = []

        session = runner.invoke("ticket", listener=events.append)

        assert session.status is SessionStatus.FAILED
        assert "bedrock unavailable" in session.error
        assert session.state["impact"] == "P1"
        assert "report" not in session.state
        assert events[-1].type is EventType.SESSION_FAILED

    def test_truncation_recorded_on_session(self):
        model = build_model()
        model.scripts["Stage classify."] = [tool_call_reply("lookup", {"query": "q"}, "c", text="partial")]
        governor = ToolCallGovernor()
        runner = PipelineRunner(build_pipeline(max_tool_calls=1), model, governor=governor)

        session = runner.invoke("ticket")

        assert session.status is SessionStatus.COMPLETED
        assert session.truncated_stages == ["classify"]
        assert session.state["classification"] == "partial"
        assert governor.count(session.session_id, "classify") == 0

    def test_unknown_output_slot_rejected_at_construction(self):
        with pytest.raises(ValueError):
            PipelineRunner(build_pipeline(), build_model(), allowed_slots={"structured"})

    def test_allowed_slots_include_input(self):
        slots = {"structured", "classification", "cause", "impact", "report"}
        runner = PipelineRunner(build_pipeline(), build_model(), allowed_slots=slots)
        assert runner.invoke("ticket").status is SessionStatus.COMPLETED


class TestSuspendResume:

    def test_gated_call_suspends_session(self):
        runner = PipelineRunner(build_pipeline(gated=True), build_model())
        events = []

        session = runner.invoke("ticket", listener=events.append)

        assert session.status is SessionStatus.AWAITING_APPROVAL
        assert session.continuation is not None
        assert [r.tool_name for r in session.pending] == ["lookup"]
        assert "classification" not in session.state
        assert events[-1].type is EventType.SESSION_SUSPENDED
        assert events[-1].data["pending"][0]["id"] == "call_1"

    def test_approved_resume_matches_ungated_run(self):
        plain = PipelineRunner(build_pipeline(), build_model()).invoke("ticket")

        runner = PipelineRunner(build_pipeline(gated=True), build_model())
        suspended = runner.invoke("ticket")
        resumed = runner.resume(
            suspended.session_id,
            ToolFeedback("call_1", Disposition.APPROVED, tool_name="lookup"),
        )

        assert resumed.status is SessionStatus.COMPLETED
        assert resumed.state == plain.state
        assert resumed.pending == []
        assert resumed.continuation is None
        assert [a.disposition for a in resumed.approvals] == [Disposition.APPROVED]

    def test_rejected_resume_completes_without_tool(self):
        runner = PipelineRunner(build_pipeline(gated=True), build_model())
        suspended = runner.invoke("ticket")

        resumed = runner.resume(
            suspended.session_id,
            ToolFeedback("call_1", Disposition.REJECTED, description="privacy"),
        )

        assert resumed.status is SessionStatus.COMPLETED
        assert "rejected" in resumed.state["classification"]
        assert "found" not in resumed.state["classification"]

    def test_resume_events_continue_the_sequence(self):
        runner = PipelineRunner(build_pipeline(gated=True), build_model())
        first, second = [], []
        suspended = runner.invoke("ticket", listener=first.append)

        runner.resume(
            suspended.session_id,
            ToolFeedback("call_1", Disposition.APPROVED),
            listener=second.append,
        )

        assert second[0].type is EventType.SESSION_RESUMED
        assert second[0].sequence == first[-1].sequence + 1
        assert second[-1].type is EventType.SESSION_COMPLETED
