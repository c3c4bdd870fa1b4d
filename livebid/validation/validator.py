"""Request payload validation against the JSON Schemas shipped in ``livebid/schemas``."""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator, ValidationError

SCHEMA_DIR = Path(__file__).resolve().parent.parent / "schemas"


class PayloadError(ValueError):
    """A request body that does not match its schema."""

    def __init__(self, schema_name: str, errors: list[str]) -> None:
        super().__init__(f"{schema_name}: {'; '.join(errors)}")
        self.schema_name = schema_name
        self.errors = errors


def _describe(error: ValidationError) -> str:
    location = "/".join(str(part) for part in error.absolute_path)
    return f"{location or '<body>'}: {error.message}"


class SchemaRegistry:
    def __init__(self, schema_dir: Path) -> None:
        self._schema_dir = schema_dir
        self._validators: dict[str, Draft202012Validator] = {}
        self._load()

    def _load(self) -> None:
        for schema_path in sorted(self._schema_dir.glob("*.json")):
            data = json.loads(schema_path.read_text())
            Draft202012Validator.check_schema(data)
            self._validators[schema_path.stem] = Draft202012Validator(
                data, format_checker=Draft202012Validator.FORMAT_CHECKER
            )

    def names(self) -> list[str]:
        return sorted(self._validators)

    def validate(self, schema_name: str, payload: Any) -> None:
        try:
            validator = self._validators[schema_name]
        except KeyError as exc:
            raise ValueError(f"unknown schema {schema_name}") from exc
        errors = sorted(validator.iter_errors(payload), key=lambda err: list(err.absolute_path))
        if errors:
            raise PayloadError(schema_name, [_describe(error) for error in errors])


@lru_cache(maxsize=1)
def get_schema_registry() -> SchemaRegistry:
    return SchemaRegistry(SCHEMA_DIR)
