from kb_agent.domain.orchestration.pipeline.param_refs import Fn, InputRef, Literal, PipelineContext, StepRef
from kb_agent.domain.orchestration.pipeline.task_pipeline import (
    SKIPPED, PipelineResult, PipelineStep, StepTrace, TaskPipeline, create_pipeline
)
