from typing import TypedDict, List, Dict, Any, Optional, Set, Sequence, Literal
from langgraph.graph import StateGraph, END
from pydantic import BaseModel, ConfigDict, Field
import structlog
import asyncio
import uuid

from kb_agent.domain.context.context_window import ContextWindow
from kb_agent.domain.context.memory.memory_store import MemoryStore
from kb_agent.domain.context.tool_result_limiter import ToolResultLimiter, summarize_for_log
from kb_agent.domain.llm.provider import LanguageModelProvider, ProviderResponse, ToolChoice
from kb_agent.domain.models.agent_state import (
    AgentRunResult, AgentStatus, ExitReason, MemorySource, RunMode,
    ToolCall, ToolCallRecord, ToolCallStatus, normalize_title
)
from kb_agent.domain.models.errors import ProviderError
from kb_agent.domain.orchestration.core import prompts
from kb_agent.domain.orchestration.core.batch_context import BatchContext
from kb_agent.domain.orchestration.core.phase_router import Phase, PhaseBudget, PhaseRouter
from kb_agent.domain.orchestration.parsing.action_parser import looks_like_unexecuted_plan, parse_actions
from kb_agent.domain.orchestration.pipeline.task_pipeline import PipelineResult, TaskPipeline
from kb_agent.domain.tool.tool_executor import ToolExecutor, ToolResult
from kb_agent.domain.tool.tool_registry import ToolRegistry
from kb_agent.infrastructure.config.settings import AgentSettings, get_settings
from kb_agent.infrastructure.observability.logging import agent_logger

logger = structlog.get_logger(__name__)

# Pipeline step tool name that runs a nested agent loop instead of a registry tool
CHAT_AGENT_TOOL = "chat_agent"


class AgentRun(BaseModel):
    """Everything one execute() call owns; never shared between runs"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    session_id: str
    prompt: str
    mode: RunMode
    native: bool
    context: ContextWindow
    router: Optional[PhaseRouter] = None
    batch: Optional[BatchContext] = None
    base_prompt: str
    tool_schemas: List[Dict[str, Any]] = Field(default_factory=list)
    known_tools: Set[str] = Field(default_factory=set)
    allowed_tools: Set[str] = Field(default_factory=set)
    dimension: Optional[str] = None
    temperature: Optional[float] = None
    max_iterations: int

    status: AgentStatus = AgentStatus.IDLE
    iterations: int = 0
    consecutive_failures: int = 0
    corrective_used: bool = False
    pending_text: Optional[str] = None
    pending_calls: List[ToolCall] = Field(default_factory=list)
    tool_log: List[ToolCallRecord] = Field(default_factory=list)
    submitted_titles: Dict[str, str] = Field(default_factory=dict)
    final_answer: Optional[str] = None
    exit_reason: Optional[ExitReason] = None
    forced_summary: bool = False


class WorkflowState(TypedDict):
    """State for the ReAct graph"""
    run: AgentRun
    next_action: Optional[str]


class ChatAgent:
    """ReAct agent over a tool registry, built as a LangGraph state machine

    Interactive runs answer a person in a chat and stop at the first text
    reply. System runs work through an automated task and are paced by a
    PhaseRouter. Both always end with a non-empty reply: provider outages,
    exhausted budgets and internal errors all degrade into a summary.
    """

    def __init__(
        self,
        tool_registry: ToolRegistry,
        provider: LanguageModelProvider,
        settings: Optional[AgentSettings] = None,
        memory: Optional[MemoryStore] = None
    ):
        self.tool_registry = tool_registry
        self.provider = provider
        self.settings = settings or get_settings()
        self.memory = memory if memory is not None else MemoryStore.from_settings(self.settings)
        self.tool_executor = ToolExecutor(tool_registry, timeout_seconds=self.settings.tool_timeout_seconds)
        self.limiter = ToolResultLimiter(
            submit_tool_names=self.settings.submit_tool_names,
            search_tool_names=self.settings.search_tool_names,
            file_tool_names=self.settings.file_tool_names
        )
        self.submit_tool_names = frozenset(self.settings.submit_tool_names)
        self.tasks: Dict[str, TaskPipeline] = {}
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        """Create the ReAct loop graph"""

        workflow = StateGraph(WorkflowState)

        workflow.add_node("prepare_turn", self.prepare_turn_node)
        workflow.add_node("model_call", self.model_call_node)
        workflow.add_node("tool_execution", self.tool_execution_node)
        workflow.add_node("final_answer", self.final_answer_node)
        workflow.add_node("forced_summary", self.forced_summary_node)

        workflow.set_entry_point("prepare_turn")

        workflow.add_conditional_edges(
            "prepare_turn",
            self.route_next_action,
            {
                "model_call": "model_call",
                "forced_summary": "forced_summary"
            }
        )

        workflow.add_conditional_edges(
            "model_call",
            self.route_next_action,
            {
                "model_call": "model_call",
                "tool_execution": "tool_execution",
                "prepare_turn": "prepare_turn",
                "final_answer": "final_answer",
                "forced_summary": "forced_summary"
            }
        )

        workflow.add_edge("tool_execution", "prepare_turn")
        workflow.add_edge("final_answer", END)
        workflow.add_edge("forced_summary", END)

        return workflow.compile()

    # ─── public API ──────────────────────────────────────

    async def execute(self, prompt: str, **kwargs) -> str:
        """Run the loop and return only the reply text; never raises"""

        result = await self.run(prompt, **kwargs)
        return result.reply

    async def run(
        self,
        prompt: str,
        *,
        mode: RunMode = RunMode.INTERACTIVE,
        history: Optional[Sequence[Dict[str, Any]]] = None,
        system_prompt: Optional[str] = None,
        budget: Optional[PhaseBudget] = None,
        batch: Optional[BatchContext] = None,
        allowed_tools: Optional[Sequence[str]] = None,
        temperature: Optional[float] = None,
        dimension: Optional[str] = None,
        disable_phase_router: bool = False,
        skip_produce: bool = False,
        session_id: Optional[str] = None
    ) -> AgentRunResult:
        """Run the ReAct loop and return a structured result"""

        mode = RunMode(mode)
        session_id = session_id or f"run_{uuid.uuid4().hex[:12]}"

        with structlog.contextvars.bound_contextvars(session_id=session_id, run_mode=mode.value):
            run: Optional[AgentRun] = None
            try:
                run = await self._start_run(
                    prompt, mode, session_id, history, system_prompt, budget, batch,
                    allowed_tools, temperature, dimension, disable_phase_router, skip_produce
                )
                agent_logger.log_agent_event("run_started", session_id, {
                    "mode": mode.value,
                    "native": run.native,
                    "max_iterations": run.max_iterations,
                    "tools": len(run.allowed_tools),
                    "dimension": dimension
                })

                final_state = await self.workflow.ainvoke(
                    {"run": run, "next_action": None},
                    config={"recursion_limit": 4 * (run.max_iterations + 2) + 10}
                )
                run = final_state["run"]
            except Exception as e:
                logger.exception("Agent run failed", error=str(e))
                if run is None:
                    return AgentRunResult(
                        reply=prompts.synthesize_local_summary(prompt, []),
                        exit_reason=ExitReason.INTERNAL_ERROR,
                        forced_summary=True
                    )
                run.status = AgentStatus.FAILED
                run.exit_reason = ExitReason.INTERNAL_ERROR
                run.forced_summary = True
                run.final_answer = prompts.synthesize_local_summary(
                    prompt, run.tool_log, list(run.submitted_titles.values())
                )

            result = self._build_result(run)
            agent_logger.log_agent_event("run_finished", session_id, {
                "exit_reason": result.exit_reason.value,
                "iterations": result.iterations,
                "tool_calls": len(result.tool_calls),
                "forced_summary": result.forced_summary
            })
            return result

    async def execute_tool(
        self,
        tool_name: str,
        params: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> Any:
        """Call one tool directly, outside the ReAct loop; errors propagate"""

        return await self.tool_registry.execute(tool_name, params or {}, context or {"mode": "direct"})

    def get_capabilities(self) -> Dict[str, Any]:
        """Tools and canned tasks this agent offers"""

        return {
            "tools": self.tool_registry.describe(),
            "tasks": [pipeline.describe() for pipeline in self.tasks.values()],
            "native_tool_calling": self.provider.supports_native_tool_calling,
        }

    def register_task(self, pipeline: TaskPipeline):
        if pipeline.id in self.tasks:
            raise ValueError(f"Task '{pipeline.id}' is already registered")
        self.tasks[pipeline.id] = pipeline

    async def run_task(self, task_name: str, inputs: Optional[Dict[str, Any]] = None) -> PipelineResult:
        pipeline = self.tasks.get(task_name)
        if pipeline is None:
            raise ValueError(f"Unknown task: {task_name}")
        return await self.run_pipeline(pipeline, inputs)

    async def run_pipeline(self, pipeline: TaskPipeline, inputs: Optional[Dict[str, Any]] = None) -> PipelineResult:
        """Execute a pipeline with this agent's tools

        A step whose tool is ``chat_agent`` runs a nested agent loop; its params
        are passed to run() and the step result is the reply text.
        """

        async def executor(tool_name: str, params: Dict[str, Any]) -> Any:
            if tool_name == CHAT_AGENT_TOOL:
                params = dict(params)
                prompt = params.pop("prompt", None)
                if not prompt:
                    raise ValueError("chat_agent step needs a 'prompt' param")
                params.setdefault("mode", RunMode.SYSTEM)
                return await self.execute(prompt, **params)
            return await self.execute_tool(tool_name, params, {"pipeline_id": pipeline.id})

        return await pipeline.execute(executor, inputs)

    # ─── graph nodes ─────────────────────────────────────

    async def prepare_turn_node(self, state: WorkflowState) -> Dict[str, Any]:
        """Check budgets, open a new iteration and compact the context"""

        run = state["run"]

        if run.router is not None and run.router.should_exit():
            run.exit_reason = run.exit_reason or (
                ExitReason.MAX_ITERATIONS
                if run.router.total_iterations >= run.router.budget.max_iterations
                else ExitReason.PHASE_EXIT
            )
            state["next_action"] = "forced_summary"
            return state

        if run.iterations >= run.max_iterations:
            run.exit_reason = run.exit_reason or ExitReason.MAX_ITERATIONS
            state["next_action"] = "forced_summary"
            return state

        run.iterations += 1
        if run.router is not None:
            run.router.tick()

        usage_before = run.context.get_token_usage_ratio()
        compaction = run.context.compact_if_needed()
        if compaction.level:
            agent_logger.log_context_compaction(
                session_id=run.session_id,
                level=compaction.level,
                removed=compaction.removed,
                usage_before=usage_before,
                usage_after=run.context.get_token_usage_ratio()
            )

        logger.debug(
            "Starting iteration",
            iteration=run.iterations,
            phase=run.router.phase.value if run.router else None,
            messages=len(run.context)
        )
        state["next_action"] = "model_call"
        return state

    async def model_call_node(self, state: WorkflowState) -> Dict[str, Any]:
        """Ask the provider for the next step and decide where to go"""

        run = state["run"]
        run.status = AgentStatus.THINKING

        try:
            response = await self._call_provider(run)
        except ProviderError as e:
            state["next_action"] = await self._on_provider_failure(run, e)
            return state

        run.consecutive_failures = 0

        if run.native:
            calls = [ToolCall(id=fc.id, name=fc.name, arguments=fc.args) for fc in response.function_calls]
        else:
            calls = parse_actions(response.text, known_tools=run.known_tools)
            if not calls and self._needs_corrective_reprompt(run, response.text):
                run.corrective_used = True
                logger.info("Reply announced tool use without calling tools; re-prompting")
                run.context.append_assistant_text(response.text)
                run.context.append_user_nudge(prompts.CORRECTIVE_REPROMPT)
                state["next_action"] = "prepare_turn"
                return state

        if not calls:
            state["next_action"] = self._on_text_reply(run, response.text or "")
            return state

        if run.router is not None and run.router.phase == Phase.SUMMARIZE:
            # Tools are closed; only a text reply can end the run from here
            if response.text and response.text.strip():
                run.final_answer = prompts.clean_final_answer(response.text)
                run.exit_reason = ExitReason.ANSWER
                state["next_action"] = "final_answer"
            else:
                run.context.append_user_nudge(prompts.TOOLS_CLOSED_NUDGE)
                state["next_action"] = "prepare_turn"
            return state

        cap = self.settings.max_tool_calls_per_iteration
        if cap and len(calls) > cap:
            logger.warning("Dropping tool calls over the per-iteration cap", requested=len(calls), cap=cap)
            calls = calls[:cap]

        run.pending_text = response.text
        run.pending_calls = calls
        state["next_action"] = "tool_execution"
        return state

    async def tool_execution_node(self, state: WorkflowState) -> Dict[str, Any]:
        """Run one round of tool calls and append them with their results"""

        run = state["run"]
        run.status = AgentStatus.EXECUTING
        calls, run.pending_calls = run.pending_calls, []
        text, run.pending_text = run.pending_text, None

        # Duplicate decisions are made before anything is awaited
        immediate: Dict[str, Dict[str, Any]] = {}
        statuses: Dict[str, ToolCallStatus] = {}
        claimed_titles: Dict[str, str] = {}
        round_titles: Set[str] = set()
        to_run: List[ToolCall] = []

        for call in calls:
            if call.name not in run.allowed_tools:
                immediate[call.id] = {"error": f"Tool '{call.name}' is not available in this run", "tool": call.name}
                statuses[call.id] = ToolCallStatus.REJECTED
                continue

            if call.name in self.submit_tool_names:
                title = call.declared_title((self.settings.submit_title_key,))
                if title:
                    key = normalize_title(title)
                    already = (
                        key in run.submitted_titles
                        or key in round_titles
                        or (run.batch is not None and run.batch.has(title))
                    )
                    if already:
                        immediate[call.id] = {
                            "status": "duplicate",
                            "message": f"'{title}' was already submitted; skipped. Submit a different finding."
                        }
                        statuses[call.id] = ToolCallStatus.DUPLICATE
                        continue
                    round_titles.add(key)
                    claimed_titles[call.id] = title

            to_run.append(call)

        tool_context = {
            "session_id": run.session_id,
            "mode": run.mode.value,
            "dimension": run.dimension,
            "iteration": run.iterations,
        }
        outcomes: List[ToolResult] = await asyncio.gather(*(
            self.tool_executor.execute_tool(call.name, call.arguments, tool_context) for call in to_run
        ))
        executed: Dict[str, ToolResult] = {call.id: outcome for call, outcome in zip(to_run, outcomes)}

        quota = run.context.get_tool_result_quota()
        run.context.append_assistant_with_tool_calls(text, calls)

        submit_count = 0
        for call in calls:
            outcome = executed.get(call.id)
            if outcome is None:
                observation, status, duration_ms = immediate[call.id], statuses[call.id], 0.0
            else:
                observation = outcome.observation
                status = ToolCallStatus.OK if outcome.success else ToolCallStatus.ERROR
                duration_ms = outcome.duration_ms

            if status == ToolCallStatus.OK and call.id in claimed_titles:
                title = claimed_titles[call.id]
                run.submitted_titles.setdefault(normalize_title(title), title)
                if run.batch is not None:
                    run.batch.add(title)
                submit_count += 1

            limited = self.limiter.limit(call.name, observation, quota)
            if not run.native:
                limited = prompts.build_observation(call.name, limited, run.prompt)
            run.context.append_tool_result(call.id, call.name, limited)

            run.tool_log.append(ToolCallRecord(
                name=call.name,
                arguments=call.arguments,
                result=summarize_for_log(observation, self.settings.tool_log_result_chars),
                status=status,
                iteration=run.iterations,
                duration_ms=duration_ms
            ))

        if run.router is not None:
            run.router.update(function_calls=calls, submit_count=submit_count)

        return state

    async def final_answer_node(self, state: WorkflowState) -> Dict[str, Any]:
        run = state["run"]
        if not run.final_answer:
            run.final_answer = prompts.synthesize_local_summary(
                run.prompt, run.tool_log, list(run.submitted_titles.values())
            )
        run.exit_reason = run.exit_reason or ExitReason.ANSWER
        run.status = AgentStatus.COMPLETED
        return state

    async def forced_summary_node(self, state: WorkflowState) -> Dict[str, Any]:
        """One tool-free provider call; falls back to a locally built summary"""

        run = state["run"]
        run.status = AgentStatus.SUMMARIZING
        run.forced_summary = True
        run.exit_reason = run.exit_reason or ExitReason.MAX_ITERATIONS
        submitted = list(run.submitted_titles.values())

        summary_prompt = prompts.build_summary_prompt(run.prompt, run.tool_log, run.iterations, submitted)
        try:
            text = await self.provider.chat(
                summary_prompt,
                history=[],
                system_prompt=prompts.SUMMARY_SYSTEM_PROMPT,
                temperature=run.temperature,
                max_tokens=self.settings.max_tokens
            )
            if not text or not text.strip():
                raise ProviderError("empty summary", empty_response=True)
            run.final_answer = prompts.clean_final_answer(text)
        except Exception as e:
            # Any provider failure here falls back to the local summary
            logger.warning("Forced summary failed, synthesizing locally", error=str(e))
            run.final_answer = prompts.synthesize_local_summary(run.prompt, run.tool_log, submitted)

        run.status = AgentStatus.COMPLETED
        return state

    def route_next_action(self, state: WorkflowState) -> Literal[
        "model_call", "tool_execution", "prepare_turn", "final_answer", "forced_summary"
    ]:
        return state.get("next_action") or "forced_summary"

    # ─── helpers ─────────────────────────────────────────

    async def _start_run(
        self,
        prompt: str,
        mode: RunMode,
        session_id: str,
        history: Optional[Sequence[Dict[str, Any]]],
        system_prompt: Optional[str],
        budget: Optional[PhaseBudget],
        batch: Optional[BatchContext],
        allowed_tools: Optional[Sequence[str]],
        temperature: Optional[float],
        dimension: Optional[str],
        disable_phase_router: bool,
        skip_produce: bool
    ) -> AgentRun:
        schemas = self.tool_registry.describe()
        known = {schema["name"] for schema in schemas}
        allowed = known if allowed_tools is None else known & set(allowed_tools)
        schemas = [schema for schema in schemas if schema["name"] in allowed]

        router = None
        if mode == RunMode.SYSTEM:
            budget = budget or PhaseBudget(max_iterations=self.settings.system_max_iterations)
            max_iterations = budget.max_iterations
            if not disable_phase_router:
                router = PhaseRouter(budget, skip_produce=skip_produce, session_id=session_id)
        else:
            max_iterations = budget.max_iterations if budget else self.settings.interactive_max_iterations

        memory_section = ""
        if self.memory is not None:
            source = MemorySource.SYSTEM if mode == RunMode.SYSTEM else MemorySource.USER
            memory_section = await self.memory.to_prompt_section(source)

        base_prompt = system_prompt or prompts.DEFAULT_BASE_PROMPT
        if dimension:
            base_prompt += f"\n\nCurrent analysis dimension: {dimension}"
        if memory_section:
            base_prompt += f"\n\n{memory_section}"

        context = ContextWindow(
            prompts.build_anchor(prompt, history if mode == RunMode.INTERACTIVE else None),
            token_budget=self.settings.token_budget,
            submit_tool_names=self.settings.submit_tool_names,
            submit_label_keys=self.settings.submit_label_keys
        )

        return AgentRun(
            session_id=session_id,
            prompt=prompt,
            mode=mode,
            native=self.provider.supports_native_tool_calling,
            context=context,
            router=router,
            batch=batch,
            base_prompt=base_prompt,
            tool_schemas=schemas,
            known_tools=known,
            allowed_tools=allowed,
            dimension=dimension,
            temperature=self.settings.temperature if temperature is None else temperature,
            max_iterations=max_iterations
        )

    async def _call_provider(self, run: AgentRun) -> ProviderResponse:
        """One provider turn, retrying empty replies; raises ProviderError"""

        tool_choice: ToolChoice = run.router.get_tool_choice() if run.router is not None else "auto"
        system_prompt = prompts.build_system_prompt(
            run.tool_schemas,
            native=run.native,
            base=run.base_prompt,
            phase_hint=run.router.get_phase_hint() if run.router is not None else None
        )
        messages = run.context.to_messages()

        attempts = self.settings.empty_response_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                if run.native:
                    response = await self.provider.chat_with_tools(
                        run.prompt,
                        messages=messages,
                        tool_schemas=run.tool_schemas,
                        tool_choice=tool_choice,
                        system_prompt=system_prompt,
                        temperature=run.temperature,
                        max_tokens=self.settings.max_tokens
                    )
                else:
                    rendered = prompts.render_history_for_text_mode(messages)
                    text = await self.provider.chat(
                        rendered[-1].content or run.prompt,
                        history=rendered[:-1],
                        system_prompt=system_prompt,
                        temperature=run.temperature,
                        max_tokens=self.settings.max_tokens
                    )
                    response = ProviderResponse(text=text)
            except ProviderError:
                raise
            except Exception as e:
                raise ProviderError(f"{type(e).__name__}: {e}") from e

            if not response.is_empty:
                return response
            logger.warning("Empty provider response", attempt=attempt, attempts=attempts)

        raise ProviderError("provider returned empty responses", empty_response=True)

    async def _on_provider_failure(self, run: AgentRun, error: ProviderError) -> str:
        run.consecutive_failures += 1
        logger.warning(
            "Provider call failed",
            error=str(error),
            consecutive_failures=run.consecutive_failures,
            empty_response=error.empty_response
        )

        if run.consecutive_failures >= self.settings.max_consecutive_provider_failures:
            run.exit_reason = ExitReason.PROVIDER_FAILURE
            if run.mode == RunMode.INTERACTIVE:
                run.final_answer = prompts.APOLOGY
                return "final_answer"
            run.context.reset_to_prompt_only()
            return "forced_summary"

        backoff = self.settings.provider_retry_backoff_seconds * 2 ** (run.consecutive_failures - 1)
        if backoff > 0:
            await asyncio.sleep(backoff)
        return "model_call"

    def _needs_corrective_reprompt(self, run: AgentRun, text: Optional[str]) -> bool:
        return (
            run.mode == RunMode.SYSTEM
            and not run.corrective_used
            and looks_like_unexecuted_plan(text)
        )

    def _on_text_reply(self, run: AgentRun, text: str) -> str:
        if run.router is None or run.router.phase == Phase.SUMMARIZE:
            run.final_answer = prompts.clean_final_answer(text)
            run.exit_reason = ExitReason.ANSWER
            return "final_answer"

        run.router.update(is_text_only=True)
        if run.router.should_exit():
            run.final_answer = prompts.clean_final_answer(text)
            run.exit_reason = ExitReason.ANSWER
            return "final_answer"

        run.context.append_assistant_text(text)
        run.context.append_user_nudge(prompts.CONTINUE_NUDGE)
        return "prepare_turn"

    def _build_result(self, run: AgentRun) -> AgentRunResult:
        return AgentRunResult(
            reply=run.final_answer or prompts.synthesize_local_summary(run.prompt, run.tool_log),
            tool_calls=run.tool_log,
            iterations=run.iterations,
            exit_reason=run.exit_reason or ExitReason.ANSWER,
            forced_summary=run.forced_summary,
            phase=run.router.phase.value if run.router is not None else None,
            submitted_titles=list(run.submitted_titles.values())
        )
