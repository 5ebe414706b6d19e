from typing import Any, Dict, List, NamedTuple

import jsonschema


class ValidationResult(NamedTuple):
    is_valid: bool
    errors: List[str]


# Parameter & schema validation
class ToolParameterValidator:
    @staticmethod
    def validate_tool_call(parameters_schema: Dict[str, Any], parameters: Dict[str, Any]) -> ValidationResult:
        schema = parameters_schema or {"type": "object"}

        validator_cls = jsonschema.validators.validator_for(schema)
        try:
            validator_cls.check_schema(schema)
        except jsonschema.SchemaError as e:
            return ValidationResult(False, [f"Invalid tool schema: {e.message}"])

        errors = sorted(validator_cls(schema).iter_errors(parameters), key=lambda e: list(e.path))
        if errors:
            return ValidationResult(False, [ToolParameterValidator._format_error(e) for e in errors])

        return ValidationResult(True, [])

    @staticmethod
    def _format_error(error: jsonschema.ValidationError) -> str:
        location = ".".join(str(p) for p in error.path)
        if location:
            return f"Schema validation failed at '{location}': {error.message}"
        return f"Schema validation failed: {error.message}"
