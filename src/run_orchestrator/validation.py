"""JSON-Schema validation port used for result schemas, model output and tool input."""

from __future__ import annotations

from typing import Any, Protocol

import jsonschema
from jsonschema.exceptions import SchemaError


class SchemaValidator(Protocol):
    def validate(self, instance: Any, schema: dict[str, Any]) -> list[dict[str, Any]]: ...

    def check_schema(self, schema: dict[str, Any]) -> list[dict[str, Any]]: ...


class JsonSchemaValidator:
    """Draft 2020-12 validator returning structured error lists instead of raising."""

    def validate(self, instance: Any, schema: dict[str, Any]) -> list[dict[str, Any]]:
        validator = jsonschema.Draft202012Validator(
            schema, format_checker=jsonschema.FormatChecker()
        )
        errors = sorted(
            validator.iter_errors(instance),
            key=lambda err: [str(part) for part in err.absolute_path],
        )
        return [_format_validation_error(err) for err in errors]

    def check_schema(self, schema: dict[str, Any]) -> list[dict[str, Any]]:
        try:
            jsonschema.Draft202012Validator.check_schema(schema)
        except SchemaError as exc:
            return [_format_validation_error(exc)]
        return []


def _format_validation_error(exc: Any) -> dict[str, Any]:
    path = getattr(exc, "absolute_path", None)
    if path:
        pointer = "/" + "/".join(str(part) for part in path)
    else:
        pointer = "$"
    return {
        "path": pointer,
        "message": getattr(exc, "message", None) or str(exc),
        "validator": getattr(exc, "validator", None),
    }


def format_errors(errors: list[dict[str, Any]]) -> str:
    return "; ".join(f"{error['message']} (at {error['path']})" for error in errors)
