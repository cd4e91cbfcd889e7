# schemas.py
# Validation of step inputs, step outputs and agent results.
#
# A schema is anything pydantic can validate against: a BaseModel subclass,
# a TypedDict, list[int], and so on.

from functools import lru_cache
from typing import Any

from pydantic import BaseModel, TypeAdapter, ValidationError


class SchemaValidationError(ValueError):
    """Raised when a value does not satisfy its schema. Carries one issue per violation."""

    def __init__(self, issues: list[str], message: str = "Value failed schema validation.") -> None:
        self.issues = issues
        super().__init__(f"{message}\n" + "\n".join(issues))


def _is_model(schema: Any) -> bool:
    return isinstance(schema, type) and issubclass(schema, BaseModel)


@lru_cache(maxsize=256)
def _adapter(schema: Any) -> TypeAdapter:
    return TypeAdapter(schema)


def format_issues(exc: ValidationError) -> list[str]:
    """Render pydantic errors as `  - dotted.path: message` lines."""
    issues: list[str] = []
    for error in exc.errors():
        path = ".".join(str(part) for part in error["loc"]) or "(root)"
        issues.append(f"  - {path}: {error['msg']}")
    return issues


def validate_against(schema: Any, value: Any) -> Any:
    """
    Validate `value` and return the parsed result.

    Model instances of the right class pass through untouched. Raises
    SchemaValidationError listing every violation.
    """
    try:
        if _is_model(schema):
            if isinstance(value, schema):
                return value
            return schema.model_validate(value)
        return _adapter(schema).validate_python(value)
    except ValidationError as exc:
        raise SchemaValidationError(format_issues(exc)) from exc


def schema_name(schema: Any) -> str:
    return getattr(schema, "__name__", None) or repr(schema)
