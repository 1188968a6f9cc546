"""
Ticket Analysis Agent System

Builds the multi-stage ticket analysis pipeline:

    ticket_receiver ─▶ ticket_classifier ─▶ deep_analysis_parallel ─▶ result_generator
                                              ├─ root_cause_analyst
                                              ├─ impact_assessor
                                              └─ solution_provider

Every stage gets the summarization hook. Tools listed in approval_tools are
gated behind human approval.
"""

from typing import Iterable, Optional, Tuple

from feedback_analyzer import config
from feedback_analyzer.engine import (
    DefaultMergeStrategy,
    HumanApprovalHook,
    ParallelComposer,
    PipelineRunner,
    SequentialComposer,
    SessionStore,
    Stage,
    StageHook,
    SummarizationHook,
    ToolCallGovernor,
)
from feedback_analyzer.engine.model import ModelCapability
from feedback_analyzer.tools.screenshot import create_screenshot_analysis_tool
from feedback_analyzer.tools.similar_tickets import create_similar_ticket_search_tool

from .prompts import (
    IMPACT_ASSESSMENT_PROMPT,
    RESULT_GENERATOR_PROMPT,
    ROOT_CAUSE_PROMPT,
    SOLUTION_PROMPT,
    TICKET_CLASSIFIER_PROMPT,
    TICKET_RECEIVER_PROMPT,
)


class AnalysisSlots:
    """Closed set of state slots used by the ticket analysis pipeline."""
    INPUT = "input"
    STRUCTURED_TICKET = "structured_ticket"
    CLASSIFICATION_RESULT = "classification_result"
    SIMILAR_TICKETS = "similar_tickets"
    ROOT_CAUSE_ANALYSIS = "root_cause_analysis"
    IMPACT_ASSESSMENT = "impact_assessment"
    SOLUTION_PROPOSAL = "solution_proposal"
    FINAL_REPORT = "final_report"

    ALL = (
        INPUT,
        STRUCTURED_TICKET,
        CLASSIFICATION_RESULT,
        SIMILAR_TICKETS,
        ROOT_CAUSE_ANALYSIS,
        IMPACT_ASSESSMENT,
        SOLUTION_PROPOSAL,
        FINAL_REPORT,
    )


# Reviewer-facing text for gated tools
APPROVAL_DESCRIPTIONS = {
    "search_similar_tickets": (
        "Review whether similar historical tickets should be retrieved. "
        "High-priority tickets need human confirmation."
    ),
    "analyze_screenshot": "Review whether the attached screenshot may be sent to the model.",
}


class TicketAnalysisAgentSystem:
    """
    Factory for the ticket analysis stages and pipeline.

    Example:
        system = TicketAnalysisAgentSystem(ChatModelCapability(get_chat_model()), index)
        runner = system.create_runner()
        session = runner.invoke(get_analysis_input(user_request="app crashes on login"))
        print(session.state["final_report"])
    """

    def __init__(
        self,
        model: ModelCapability,
        index,
        tool_call_limit: int = config.TOOL_CALL_LIMIT,
        summary_max_tokens: int = config.SUMMARY_MAX_TOKENS,
        summary_keep_messages: int = config.SUMMARY_KEEP_MESSAGES,
        similar_top_k: int = config.SIMILAR_TOP_K,
        approval_tools: Optional[Iterable[str]] = None,
        parallel_workers: Optional[int] = config.PARALLEL_WORKERS,
    ):
        """
        Args:
            model: Model capability shared by every stage
            index: Similarity index backing search_similar_tickets
            tool_call_limit: Per-stage tool call ceiling
            summary_max_tokens: Conversation size that triggers summarization
            summary_keep_messages: Recent messages kept verbatim when summarizing
            similar_top_k: Tickets returned per similarity search
            approval_tools: Tool names that need human approval
            parallel_workers: Thread pool size of the deep analysis stage
        """
        self.model = model
        self.index = index
        self.tool_call_limit = tool_call_limit
        self.similar_top_k = similar_top_k
        self.parallel_workers = parallel_workers

        self.summarization_hook = SummarizationHook(
            max_tokens_before_summary=summary_max_tokens,
            messages_to_keep=summary_keep_messages,
        )
        approval_tools = list(config.APPROVAL_TOOLS if approval_tools is None else approval_tools)
        self.human_approval_hook = None
        if approval_tools:
            self.human_approval_hook = HumanApprovalHook({
                name: APPROVAL_DESCRIPTIONS.get(name, f"Review the call to {name}.")
                for name in approval_tools
            })

    def _hooks(self) -> Tuple[StageHook, ...]:
        if self.human_approval_hook is None:
            return (self.summarization_hook,)
        return (self.summarization_hook, self.human_approval_hook)

    # ========== STAGES ==========

    # 1. Ticket intake and preprocessing
    def create_ticket_receiver_agent(self) -> Stage:
        return Stage(
            name="ticket_receiver",
            instruction=TICKET_RECEIVER_PROMPT,
            output_key=AnalysisSlots.STRUCTURED_TICKET,
            tools=(create_screenshot_analysis_tool(self.model),),
            input_keys=(AnalysisSlots.INPUT,),
            max_tool_calls=self.tool_call_limit,
            hooks=self._hooks(),
        )

    # 2. Classification with similar ticket lookup
    def create_ticket_classifier_agent(self) -> Stage:
        return Stage(
            name="ticket_classifier",
            instruction=TICKET_CLASSIFIER_PROMPT,
            output_key=AnalysisSlots.CLASSIFICATION_RESULT,
            tools=(create_similar_ticket_search_tool(self.index, top_k=self.similar_top_k),),
            input_keys=(AnalysisSlots.INPUT, AnalysisSlots.STRUCTURED_TICKET),
            max_tool_calls=self.tool_call_limit,
            hooks=self._hooks(),
            artifacts_key=AnalysisSlots.SIMILAR_TICKETS,
        )

    # 3. Deep analysis, three dimensions in parallel
    def create_deep_analysis_agent(self) -> ParallelComposer:
        input_keys = (AnalysisSlots.STRUCTURED_TICKET, AnalysisSlots.CLASSIFICATION_RESULT)

        root_cause_agent = Stage(
            name="root_cause_analyst",
            instruction=ROOT_CAUSE_PROMPT,
            output_key=AnalysisSlots.ROOT_CAUSE_ANALYSIS,
            input_keys=input_keys,
            max_tool_calls=self.tool_call_limit,
            hooks=self._hooks(),
        )
        impact_assessment_agent = Stage(
            name="impact_assessor",
            instruction=IMPACT_ASSESSMENT_PROMPT,
            output_key=AnalysisSlots.IMPACT_ASSESSMENT,
            input_keys=input_keys,
            max_tool_calls=self.tool_call_limit,
            hooks=self._hooks(),
        )
        solution_agent = Stage(
            name="solution_provider",
            instruction=SOLUTION_PROMPT,
            output_key=AnalysisSlots.SOLUTION_PROPOSAL,
            input_keys=input_keys,
            max_tool_calls=self.tool_call_limit,
            hooks=self._hooks(),
        )

        return ParallelComposer(
            name="deep_analysis_parallel",
            members=[root_cause_agent, impact_assessment_agent, solution_agent],
            merge_strategy=DefaultMergeStrategy(),
            max_workers=self.parallel_workers,
        )

    # 4. Final report
    def create_result_generator_agent(self) -> Stage:
        return Stage(
            name="result_generator",
            instruction=RESULT_GENERATOR_PROMPT,
            output_key=AnalysisSlots.FINAL_REPORT,
            input_keys=(
                AnalysisSlots.STRUCTURED_TICKET,
                AnalysisSlots.CLASSIFICATION_RESULT,
                AnalysisSlots.ROOT_CAUSE_ANALYSIS,
                AnalysisSlots.IMPACT_ASSESSMENT,
                AnalysisSlots.SOLUTION_PROPOSAL,
            ),
            max_tool_calls=self.tool_call_limit,
            hooks=self._hooks(),
        )

    # ========== PIPELINE ==========

    def create_main_analysis_agent(self) -> SequentialComposer:
        return SequentialComposer(
            name="ticket_analysis_main",
            members=[
                self.create_ticket_receiver_agent(),
                self.create_ticket_classifier_agent(),
                self.create_deep_analysis_agent(),
                self.create_result_generator_agent(),
            ],
        )

    def create_runner(
        self,
        governor: Optional[ToolCallGovernor] = None,
        sessions: Optional[SessionStore] = None,
    ) -> PipelineRunner:
        return PipelineRunner(
            pipeline=self.create_main_analysis_agent(),
            model=self.model,
            governor=governor or ToolCallGovernor(limit=self.tool_call_limit),
            sessions=sessions,
            allowed_slots=AnalysisSlots.ALL,
        )
