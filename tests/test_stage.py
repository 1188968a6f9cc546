"""
Stage tests: model/tool loop, tool errors, capability failure, governor
truncation, artifacts, approval gating and resume.
"""

import json

import pytest
from langchain_core.messages import AIMessage, ToolMessage
from langchain_core.tools import tool

from feedback_analyzer.engine import (
    Disposition,
    EventType,
    HumanApprovalHook,
    OutcomeStatus,
    Stage,
    StageHook,
    ToolCallGovernor,
    ToolFeedback,
    UnknownInvocationError,
)
from feedback_analyzer.tools import create_similar_ticket_search_tool

from conftest import ScriptedModel, tool_call_reply, tool_results

MARKER = "Stage under test."


def make_lookup_tool(calls):
    @tool
    def lookup(query: str) -> str:
        """Look up a ticket by query."""
        calls.append(query)
        return f"result for {query}"

    return lookup


@tool
def explode(query: str) -> str:
    """Always fails."""
    raise RuntimeError("boom")


def lookup_then_answer(answer="final answer"):
    def script(history, tools):
        if not tool_results(history):
            return tool_call_reply("lookup", {"query": "login crash"}, "call_1")
        return answer
    return script


def event_types(events):
    return [event[0] for event in events]


# ============================================================================
# Basic loop
# ============================================================================

class TestStageLoop:

    def test_plain_answer_sets_output_slot(self, make_context, events):
        model = ScriptedModel({MARKER: ["The ticket is about a crash."]})
        stage = Stage(name="summarizer", instruction=MARKER, output_key="summary")

        outcome = stage.run({"input": "app crashes"}, make_context(model))

        assert outcome.status is OutcomeStatus.COMPLETED
        assert outcome.delta == {"summary": "The ticket is about a crash."}
        assert outcome.truncated == []
        assert event_types(events) == [
            EventType.STAGE_STARTED,
            EventType.STAGE_ITERATION,
            EventType.STAGE_COMPLETED,
        ]

    def test_render_input_uses_declared_keys(self):
        stage = Stage(name="s", instruction=MARKER, output_key="out", input_keys=("b", "a", "missing"))

        rendered = stage.render_input({"a": "alpha", "b": {"n": 1}, "c": "ignored"})

        assert rendered.index("## b") < rendered.index("## a")
        assert '"n": 1' in rendered
        assert "missing" not in rendered
        assert "ignored" not in rendered

    def test_render_input_defaults_to_all_slots(self):
        stage = Stage(name="s", instruction=MARKER, output_key="out")
        rendered = stage.render_input({"input": "text", "empty": None})
        assert rendered == "## input\ntext"

    def test_model_sees_instruction_and_input(self, make_context):
        model = ScriptedModel({MARKER: ["done"]})
        stage = Stage(name="s", instruction=MARKER, output_key="out", input_keys=("input",))

        stage.run({"input": "app crashes on login"}, make_context(model))

        call = model.calls[0]
        assert call["instruction"] == MARKER
        assert "app crashes on login" in call["history"][0].content

    def test_tool_call_then_answer(self, make_context, events):
        calls = []
        model = ScriptedModel({MARKER: lookup_then_answer()})
        stage = Stage(name="s", instruction=MARKER, output_key="out", tools=(make_lookup_tool(calls),))

        outcome = stage.run({"input": "x"}, make_context(model))

        assert outcome.status is OutcomeStatus.COMPLETED
        assert outcome.delta["out"] == "final answer"
        assert calls == ["login crash"]

        second_history = model.calls[1]["history"]
        results = tool_results(second_history)
        assert results[0].content == "result for login crash"
        assert results[0].tool_call_id == "call_1"
        assert model.calls[0]["tools"] == ["lookup"]

        tool_events = [e for e in events if e[0] is EventType.TOOL_RESULT]
        assert tool_events[0][3]["toolName"] == "lookup"

    def test_tool_error_is_reported_to_model(self, make_context):
        def script(history, tools):
            results = tool_results(history)
            if not results:
                return tool_call_reply("explode", {"query": "x"}, "call_1")
            return f"saw: {results[0].content}"

        model = ScriptedModel({MARKER: script})
        stage = Stage(name="s", instruction=MARKER, output_key="out", tools=(explode,))

        outcome = stage.run({}, make_context(model))

        assert outcome.status is OutcomeStatus.COMPLETED
        assert "boom" in outcome.delta["out"]
        error_message = tool_results(model.calls[1]["history"])[0]
        assert error_message.status == "error"

    def test_unknown_tool_is_reported_to_model(self, make_context):
        def script(history, tools):
            results = tool_results(history)
            if not results:
                return tool_call_reply("no_such_tool", {}, "call_1")
            return results[0].content

        model = ScriptedModel({MARKER: script})
        stage = Stage(name="s", instruction=MARKER, output_key="out")

        outcome = stage.run({}, make_context(model))

        assert "unknown tool" in outcome.delta["out"]

    def test_missing_call_id_is_filled_in(self, make_context):
        calls = []

        def script(history, tools):
            if not tool_results(history):
                return AIMessage(content="", tool_calls=[{"name": "lookup", "args": {"query": "q"}, "id": None}])
            request = next(message for message in history if isinstance(message, AIMessage))
            answered = tool_results(history)[0].tool_call_id
            return f"{request.tool_calls[0]['id']} {answered}"

        model = ScriptedModel({MARKER: script})
        stage = Stage(name="s", instruction=MARKER, output_key="out", tools=(make_lookup_tool(calls),))

        outcome = stage.run({}, make_context(model))

        requested, answered = outcome.delta["out"].split()
        assert answered.startswith("call_")
        assert requested == answered


# ============================================================================
# Failure and truncation
# ============================================================================

class TestStageTermination:

    def test_model_failure_fails_stage(self, make_context, events):
        model = ScriptedModel({MARKER: [TimeoutError("bedrock timed out")]})
        stage = Stage(name="classifier", instruction=MARKER, output_key="out")

        outcome = stage.run({}, make_context(model))

        assert outcome.status is OutcomeStatus.FAILED
        assert "classifier" in outcome.error
        assert "bedrock timed out" in outcome.error
        assert outcome.delta == {}
        assert events[-1][0] is EventType.STAGE_FAILED

    def test_governor_truncates_with_partial_text(self, make_context):
        calls = []
        looping = tool_call_reply("lookup", {"query": "again"}, "call_x", text="partial findings")
        model = ScriptedModel({MARKER: [looping]})
        stage = Stage(
            name="looper",
            instruction=MARKER,
            output_key="out",
            tools=(make_lookup_tool(calls),),
            max_tool_calls=2,
        )

        outcome = stage.run({}, make_context(model))

        assert outcome.status is OutcomeStatus.COMPLETED
        assert outcome.truncated == ["looper"]
        assert outcome.delta["out"] == "partial findings"
        assert len(calls) == 2

    def test_truncation_with_no_text_yields_empty_output(self, make_context):
        calls = []
        model = ScriptedModel({MARKER: [tool_call_reply("lookup", {"query": "q"}, "c")]})
        stage = Stage(
            name="looper", instruction=MARKER, output_key="out",
            tools=(make_lookup_tool(calls),), max_tool_calls=0,
        )

        outcome = stage.run({}, make_context(model))

        assert outcome.delta["out"] == ""
        assert outcome.truncated == ["looper"]
        assert calls == []

    def test_governor_counts_are_per_stage(self, make_context):
        governor = ToolCallGovernor(limit=1)
        calls = []
        model = ScriptedModel({MARKER: lookup_then_answer()})
        first = Stage(name="a", instruction=MARKER, output_key="a", tools=(make_lookup_tool(calls),), max_tool_calls=1)
        second = Stage(name="b", instruction=MARKER, output_key="b", tools=(make_lookup_tool(calls),), max_tool_calls=1)

        ctx = make_context(model, gov=governor)
        assert first.run({}, ctx).truncated == []
        assert second.run({}, ctx).truncated == []
        assert len(calls) == 2


# ============================================================================
# Artifacts and hooks
# ============================================================================

class UpperCaseHook(StageHook):
    def after_tool_result(self, stage, tool_call, message, ctx):
        return ToolMessage(
            content=message.content.upper(),
            tool_call_id=message.tool_call_id,
            name=message.name,
        )

    def before_finish(self, stage, output, ctx):
        return f"[{stage.name}] {output}"


class TestStageHooksAndArtifacts:

    def test_artifacts_written_to_artifacts_key(self, make_context, index):
        index.ingest("app crashes on login", metadata={"ticketId": "TICKET-1"}, record_id="TICKET-1")
        search = create_similar_ticket_search_tool(index, top_k=3)

        def script(history, tools):
            if not tool_results(history):
                return tool_call_reply("search_similar_tickets", {"query": "crash on login"}, "call_1")
            return "classified"

        model = ScriptedModel({MARKER: script})
        stage = Stage(
            name="classifier", instruction=MARKER, output_key="classification",
            tools=(search,), artifacts_key="similar_tickets",
        )

        outcome = stage.run({}, make_context(model))

        assert outcome.delta["classification"] == "classified"
        assert [hit["ticket_id"] for hit in outcome.delta["similar_tickets"]] == ["TICKET-1"]

    def test_artifacts_key_present_without_tool_calls(self, make_context):
        model = ScriptedModel({MARKER: ["no search needed"]})
        stage = Stage(name="s", instruction=MARKER, output_key="out", artifacts_key="hits")

        outcome = stage.run({}, make_context(model))

        assert outcome.delta["hits"] == []

    def test_hooks_rewrite_tool_results_and_output(self, make_context):
        calls = []

        def script(history, tools):
            results = tool_results(history)
            if not results:
                return tool_call_reply("lookup", {"query": "q"}, "call_1")
            return results[0].content

        model = ScriptedModel({MARKER: script})
        stage = Stage(
            name="s", instruction=MARKER, output_key="out",
            tools=(make_lookup_tool(calls),), hooks=(UpperCaseHook(),),
        )

        outcome = stage.run({}, make_context(model))

        assert outcome.delta["out"] == "[s] RESULT FOR Q"

    def test_stage_validation(self):
        calls = []
        with pytest.raises(ValueError):
            Stage(name="", instruction=MARKER, output_key="out")
        with pytest.raises(ValueError):
            Stage(name="s", instruction=MARKER, output_key="")
        with pytest.raises(ValueError):
            Stage(
                name="s", instruction=MARKER, output_key="out",
                tools=(make_lookup_tool(calls), make_lookup_tool(calls)),
            )


# ============================================================================
# Approval gating
# ============================================================================

class TestStageApproval:

    @pytest.fixture
    def gated(self):
        calls = []
        stage = Stage(
            name="gated",
            instruction=MARKER,
            output_key="out",
            tools=(make_lookup_tool(calls),),
            hooks=(HumanApprovalHook({"lookup": "Confirm the lookup."}),),
        )
        return stage, calls

    def test_gated_call_suspends_without_executing(self, gated, make_context, events):
        stage, calls = gated
        model = ScriptedModel({MARKER: lookup_then_answer()})

        outcome = stage.run({}, make_context(model))

        assert outcome.status is OutcomeStatus.SUSPENDED
        assert calls == []
        record = outcome.pending[0]
        assert record.invocation_id == "call_1"
        assert record.tool_name == "lookup"
        assert record.stage_name == "gated"
        assert record.disposition is Disposition.PENDING
        assert record.description == "Confirm the lookup."
        assert json.loads(record.arguments) == {"query": "login crash"}
        assert events[-1][0] is EventType.AWAITING_APPROVAL

    def test_approved_call_executes_on_resume(self, gated, make_context):
        stage, calls = gated
        model = ScriptedModel({MARKER: lookup_then_answer()})
        ctx = make_context(model)
        suspended = stage.run({}, ctx)

        outcome = stage.resume(
            suspended.continuation, ToolFeedback("call_1", Disposition.APPROVED), ctx
        )

        assert outcome.status is OutcomeStatus.COMPLETED
        assert outcome.delta["out"] == "final answer"
        assert calls == ["login crash"]

    def test_approved_with_supplied_result_skips_execution(self, gated, make_context):
        stage, calls = gated

        def script(history, tools):
            results = tool_results(history)
            if not results:
                return tool_call_reply("lookup", {"query": "q"}, "call_1")
            return results[0].content

        model = ScriptedModel({MARKER: script})
        ctx = make_context(model)
        suspended = stage.run({}, ctx)

        outcome = stage.resume(
            suspended.continuation,
            ToolFeedback("call_1", Disposition.APPROVED, result="reviewer supplied"),
            ctx,
        )

        assert outcome.delta["out"] == "reviewer supplied"
        assert calls == []

    def test_rejected_call_is_reported_to_model(self, gated, make_context):
        stage, calls = gated

        def script(history, tools):
            results = tool_results(history)
            if not results:
                return tool_call_reply("lookup", {"query": "q"}, "call_1")
            return results[0].content

        model = ScriptedModel({MARKER: script})
        ctx = make_context(model)
        suspended = stage.run({}, ctx)

        outcome = stage.resume(
            suspended.continuation,
            ToolFeedback("call_1", Disposition.REJECTED, description="not needed"),
            ctx,
        )

        assert outcome.status is OutcomeStatus.COMPLETED
        assert "rejected" in outcome.delta["out"]
        assert "not needed" in outcome.delta["out"]
        assert calls == []

    def test_resume_with_wrong_invocation_raises(self, gated, make_context):
        stage, _ = gated
        model = ScriptedModel({MARKER: lookup_then_answer()})
        ctx = make_context(model)
        suspended = stage.run({}, ctx)

        with pytest.raises(UnknownInvocationError):
            stage.resume(suspended.continuation, ToolFeedback("call_9", Disposition.APPROVED), ctx)

    def test_calls_after_gated_one_run_on_resume(self, make_context):
        calls = []
        lookup = make_lookup_tool(calls)

        @tool
        def notify(channel: str) -> str:
            """Notify a channel."""
            calls.append(f"notify:{channel}")
            return "sent"

        def script(history, tools):
            if not tool_results(history):
                return AIMessage(content="", tool_calls=[
                    {"name": "notify", "args": {"channel": "oncall"}, "id": "call_n"},
                    {"name": "lookup", "args": {"query": "q"}, "id": "call_l"},
                ])
            return "done"

        model = ScriptedModel({MARKER: script})
        stage = Stage(
            name="s", instruction=MARKER, output_key="out", tools=(lookup, notify),
            hooks=(HumanApprovalHook({"notify": "Confirm notification."}),),
        )
        ctx = make_context(model)

        suspended = stage.run({}, ctx)
        assert calls == []

        outcome = stage.resume(suspended.continuation, ToolFeedback("call_n", Disposition.APPROVED), ctx)

        assert outcome.status is OutcomeStatus.COMPLETED
        assert calls == ["notify:oncall", "q"]
        history = model.calls[-1]["history"]
        assert [m.tool_call_id for m in tool_results(history)] == ["call_n", "call_l"]
