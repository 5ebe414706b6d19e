"""
Step parameter expressions.

Every parameter value of a pipeline step is compiled once, when the pipeline
is built, into one of four expression kinds:

    Literal(value)          used as-is
    InputRef(path)          "input:a.b"  -> inputs["a"]["b"]
    StepRef(step, path)     "fetch:x.y"  -> results["fetch"]["x"]["y"]
    Fn(func)                func(ctx) evaluated at run time

A string only becomes a StepRef when the part before the first colon names
a declared step, so values such as URLs stay literals.
"""

from types import MappingProxyType
from typing import Any, Callable, Collection, Dict, Mapping, NamedTuple, Union

from pydantic import BaseModel, ConfigDict


class PipelineContext(NamedTuple):
    """Read-only view handed to when/transform/Fn callables"""
    pipeline_id: str
    inputs: Mapping[str, Any]
    results: Mapping[str, Any]


class _Expr(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class Literal(_Expr):
    value: Any


class InputRef(_Expr):
    path: str


class StepRef(_Expr):
    step: str
    path: str


class Fn(_Expr):
    func: Callable[[PipelineContext], Any]


ParamExpr = Union[Literal, InputRef, StepRef, Fn]

INPUT_SOURCE = "input"


def compile_param(value: Any, step_names: Collection[str]) -> ParamExpr:
    if callable(value):
        return Fn(func=value)
    if isinstance(value, str) and ":" in value:
        source, path = value.split(":", 1)
        if source == INPUT_SOURCE:
            return InputRef(path=path)
        if source in step_names:
            return StepRef(step=source, path=path)
    return Literal(value=value)


def compile_params(params: Mapping[str, Any], step_names: Collection[str]) -> Mapping[str, ParamExpr]:
    return MappingProxyType({key: compile_param(value, step_names) for key, value in params.items()})


def get_path(value: Any, path: str) -> Any:
    """Dotted lookup through mappings, sequences and attributes; missing -> None"""

    if not path:
        return value
    current = value
    for part in path.split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            current = current[index] if -len(current) <= index < len(current) else None
        else:
            current = getattr(current, part, None)
    return current


def evaluate(expr: ParamExpr, ctx: PipelineContext) -> Any:
    if isinstance(expr, Literal):
        return expr.value
    if isinstance(expr, InputRef):
        return get_path(ctx.inputs, expr.path)
    if isinstance(expr, StepRef):
        return get_path(ctx.results.get(expr.step), expr.path)
    if isinstance(expr, Fn):
        return expr.func(ctx)
    raise TypeError(f"Unknown parameter expression: {expr!r}")


def resolve_params(params: Mapping[str, ParamExpr], ctx: PipelineContext) -> Dict[str, Any]:
    return {key: evaluate(expr, ctx) for key, expr in params.items()}
