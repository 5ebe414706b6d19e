"""
Declarative DAG executor for canned multi-tool workflows.

Steps are grouped into layers (layer = 1 + deepest dependency layer) and each
layer runs concurrently. The pipeline never touches a ToolRegistry directly:
it calls an ``executor(tool_name, params)`` coroutine, usually
``ChatAgent.execute_tool``.

Example::

    pipeline = create_pipeline("bootstrap", [
        PipelineStep(name="scan", tool="bootstrap_knowledge", params={"max_files": 500}),
        PipelineStep(name="enrich", tool="enrich_candidate",
                     params={"candidate_ids": "scan:candidates.ids"}, depends_on=["scan"]),
        PipelineStep(name="refine", tool="refine_candidates",
                     params={"prompt": "input:refine_prompt"}, depends_on=["enrich"],
                     when=lambda ctx: ctx.results["scan"]["candidates"]["created"] > 0),
    ])
    result = await pipeline.execute(agent.execute_tool, {"refine_prompt": "..."})
"""

from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Literal, Mapping, Optional, Sequence, Set
import asyncio
import time

import structlog
from pydantic import BaseModel, ConfigDict, Field

from kb_agent.domain.models.errors import PipelineStepError, PipelineValidationError
from kb_agent.domain.orchestration.pipeline.param_refs import (
    ParamExpr, PipelineContext, StepRef, compile_params, resolve_params
)
from kb_agent.infrastructure.observability.logging import agent_logger

logger = structlog.get_logger(__name__)

ToolExecutorFn = Callable[[str, Dict[str, Any]], Awaitable[Any]]

# Output markers; each step gets its own copy so results stay plain JSON
SKIPPED: Dict[str, Any] = {"_skipped": True}


def skipped_sentinel() -> Dict[str, Any]:
    return dict(SKIPPED)


def error_sentinel(message: str) -> Dict[str, Any]:
    return {"_error": message}


class PipelineStep(BaseModel):
    """One tool invocation in a pipeline"""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    tool: str
    params: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)
    when: Optional[Callable[[PipelineContext], bool]] = None
    error_strategy: Literal["fail", "continue"] = "fail"
    retries: int = Field(default=0, ge=0, description="Extra attempts after the first failure")
    retry_delay: float = Field(default=0.0, ge=0, description="Seconds between attempts")
    transform: Optional[Callable[[Any, PipelineContext], Any]] = None


class StepTrace(BaseModel):
    step: str
    status: Literal["ok", "skipped", "failed"]
    duration_ms: float = 0.0
    error: Optional[str] = None
    attempt: Optional[int] = None


class PipelineResult(BaseModel):
    success: bool
    pipeline_id: str
    outputs: Dict[str, Any] = Field(default_factory=dict)
    trace: List[StepTrace] = Field(default_factory=list)
    duration_ms: float = 0.0
    error: Optional[str] = None

    def step_status(self, name: str) -> Optional[str]:
        for entry in self.trace:
            if entry.step == name:
                return entry.status
        return None


class TaskPipeline:
    """Immutable DAG of tool steps; invalid graphs fail at construction"""

    def __init__(self, pipeline_id: str, steps: Sequence[PipelineStep]):
        self.id = pipeline_id
        self.steps: Dict[str, PipelineStep] = {}
        for step in steps:
            if not step.name:
                raise PipelineValidationError(f"Pipeline '{pipeline_id}': every step needs a name")
            if not step.tool:
                raise PipelineValidationError(f"Pipeline '{pipeline_id}': step '{step.name}' needs a tool")
            if step.name in self.steps:
                raise PipelineValidationError(f"Pipeline '{pipeline_id}': duplicate step name '{step.name}'")
            self.steps[step.name] = step

        for step in self.steps.values():
            for dep in step.depends_on:
                if dep not in self.steps:
                    raise PipelineValidationError(
                        f"Pipeline '{pipeline_id}': step '{step.name}' depends on unknown step '{dep}'"
                    )

        self.order = self._topological_order()
        self.layers = self._layers()
        self.params: Mapping[str, Mapping[str, ParamExpr]] = MappingProxyType({
            name: compile_params(step.params, self.steps.keys()) for name, step in self.steps.items()
        })
        self._validate_references()

    def __len__(self) -> int:
        return len(self.steps)

    async def execute(self, executor: ToolExecutorFn, inputs: Optional[Dict[str, Any]] = None) -> PipelineResult:
        started = time.monotonic()
        results: Dict[str, Any] = {}
        ctx = PipelineContext(
            pipeline_id=self.id,
            inputs=MappingProxyType(dict(inputs or {})),
            results=MappingProxyType(results),
        )
        trace: List[StepTrace] = []

        with structlog.contextvars.bound_contextvars(pipeline_id=self.id):
            logger.info("Pipeline started", steps=len(self.steps), layers=len(self.layers))

            for layer in self.layers:
                outcomes = await asyncio.gather(
                    *(self._run_step(self.steps[name], executor, ctx, results, trace) for name in layer),
                    return_exceptions=True
                )
                failures = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
                if failures:
                    failure = failures[0]
                    if not isinstance(failure, PipelineStepError):
                        logger.error("Pipeline step crashed", error=repr(failure))
                    logger.error("Pipeline aborted", error=str(failure))
                    return PipelineResult(
                        success=False,
                        pipeline_id=self.id,
                        outputs=dict(results),
                        trace=trace,
                        duration_ms=_elapsed_ms(started),
                        error=str(failure),
                    )

            logger.info("Pipeline finished", duration_ms=_elapsed_ms(started))

        return PipelineResult(
            success=True,
            pipeline_id=self.id,
            outputs=dict(results),
            trace=trace,
            duration_ms=_elapsed_ms(started),
        )

    async def _run_step(
        self,
        step: PipelineStep,
        executor: ToolExecutorFn,
        ctx: PipelineContext,
        results: Dict[str, Any],
        trace: List[StepTrace]
    ):
        started = time.monotonic()

        try:
            skip = step.when is not None and not step.when(ctx)
            params = None if skip else resolve_params(self.params[step.name], ctx)
        except Exception as e:
            self._record_failure(step, f"could not prepare step: {e}", 0, started, results, trace)
            return

        if skip:
            results[step.name] = skipped_sentinel()
            trace.append(StepTrace(step=step.name, status="skipped"))
            agent_logger.log_pipeline_step(self.id, step.name, "skipped", 0.0)
            return

        attempts = step.retries + 1
        last_error = "unknown error"
        for attempt in range(1, attempts + 1):
            try:
                result = await executor(step.tool, params)
                if step.transform is not None:
                    result = step.transform(result, ctx)
            except Exception as e:
                last_error = str(e) or type(e).__name__
                logger.debug("Step attempt failed", step=step.name, attempt=attempt, error=last_error)
                if attempt < attempts and step.retry_delay:
                    await asyncio.sleep(step.retry_delay)
                continue

            results[step.name] = result
            duration_ms = _elapsed_ms(started)
            trace.append(StepTrace(step=step.name, status="ok", duration_ms=duration_ms, attempt=attempt))
            agent_logger.log_pipeline_step(self.id, step.name, "ok", duration_ms, attempt=attempt)
            return

        self._record_failure(step, last_error, attempts, started, results, trace)

    def _record_failure(
        self,
        step: PipelineStep,
        message: str,
        attempts: int,
        started: float,
        results: Dict[str, Any],
        trace: List[StepTrace]
    ):
        duration_ms = _elapsed_ms(started)
        results[step.name] = error_sentinel(message)
        trace.append(StepTrace(
            step=step.name, status="failed", duration_ms=duration_ms, error=message, attempt=attempts or None
        ))
        agent_logger.log_pipeline_step(self.id, step.name, "failed", duration_ms, attempt=attempts, error=message)

        if step.error_strategy == "fail":
            raise PipelineStepError(step.name, message, attempts)
        logger.warning("Step failed, continuing", step=step.name, error=message)

    def _topological_order(self) -> List[str]:
        order: List[str] = []
        visited: Set[str] = set()
        visiting: Set[str] = set()

        def visit(name: str, path: List[str]):
            if name in visited:
                return
            if name in visiting:
                cycle = " -> ".join(path[path.index(name):] + [name])
                raise PipelineValidationError(f"Pipeline '{self.id}': circular dependency {cycle}")
            visiting.add(name)
            for dep in self.steps[name].depends_on:
                visit(dep, path + [name])
            visiting.discard(name)
            visited.add(name)
            order.append(name)

        for name in self.steps:
            visit(name, [])
        return order

    def _layers(self) -> List[List[str]]:
        depth: Dict[str, int] = {}
        for name in self.order:
            deps = self.steps[name].depends_on
            depth[name] = max((depth[dep] + 1 for dep in deps), default=0)

        layers: List[List[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for name in self.order:
            layers[depth[name]].append(name)
        return layers

    def ancestors(self, name: str) -> Set[str]:
        found: Set[str] = set()
        stack = list(self.steps[name].depends_on)
        while stack:
            dep = stack.pop()
            if dep not in found:
                found.add(dep)
                stack.extend(self.steps[dep].depends_on)
        return found

    def _validate_references(self):
        for name, params in self.params.items():
            allowed = self.ancestors(name)
            for key, expr in params.items():
                if isinstance(expr, StepRef) and expr.step not in allowed:
                    raise PipelineValidationError(
                        f"Pipeline '{self.id}': step '{name}' param '{key}' reads '{expr.step}', "
                        f"which is not one of its dependencies"
                    )

    def describe(self) -> Dict[str, Any]:
        """Steps and parallel layers, for debugging and capability listings"""

        return {
            "id": self.id,
            "steps": [
                {
                    "name": step.name,
                    "tool": step.tool,
                    "depends_on": list(step.depends_on),
                    "error_strategy": step.error_strategy,
                    "retries": step.retries,
                    "has_when": step.when is not None,
                }
                for step in self.steps.values()
            ],
            "layers": [{"layer": index, "parallel": list(layer)} for index, layer in enumerate(self.layers)],
        }


def create_pipeline(pipeline_id: str, steps: Sequence[PipelineStep]) -> TaskPipeline:
    return TaskPipeline(pipeline_id, steps)


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 2)
