"""Report contract loading and validation.

Contracts ship inside the package (``authz_harness/contracts``), so an installed
harness validates its report regardless of the working directory. A profile
may point ``report.schema_root`` at another directory to override them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any, Mapping

import yaml
from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from .errors import HarnessError

CONTRACTS_PACKAGE = "pgroup_audit.authz_harness"
CONTRACTS_DIR = "contracts"


class HarnessSchemaError(HarnessError, ValueError):
    """A contract is missing or unreadable, or a payload fails validation."""

    def __init__(self, detail: str) -> None:
        super().__init__("SCHEMA_INVALID", detail)


@dataclass(frozen=True)
class HarnessSchemaRegistry:
    root: Path | None = None
    _cache: dict[str, dict[str, Any]] = field(default_factory=dict, init=False, repr=False, compare=False)

    def load(self, schema_name: str) -> dict[str, Any]:
        """Read and check ``schema_name``; cached, so a preflight costs one read."""
        name = str(schema_name or "").strip()
        if not name:
            raise HarnessSchemaError("schema_name is required")
        if name not in self._cache:
            try:
                schema = yaml.safe_load(self._read(name))
            except yaml.YAMLError as exc:
                raise HarnessSchemaError(f"schema is not valid YAML: {name}") from exc
            if not isinstance(schema, dict):
                raise HarnessSchemaError(f"schema is not a mapping: {name}")
            try:
                Draft202012Validator.check_schema(schema)
            except SchemaError as exc:
                raise HarnessSchemaError(f"{name}:{exc.message}") from exc
            self._cache[name] = schema
        return self._cache[name]

    def validate(self, schema_name: str, payload: Mapping[str, Any]) -> None:
        validator = Draft202012Validator(self.load(schema_name))
        errors = sorted(validator.iter_errors(dict(payload)), key=lambda item: list(item.path))
        if not errors:
            return
        first = errors[0]
        path = ".".join(str(item) for item in first.path) or "<root>"
        raise HarnessSchemaError(f"{schema_name}:{path}:{first.message}")

    def _read(self, name: str) -> str:
        if self.root is not None:
            path = Path(self.root) / name
            if not path.exists():
                raise HarnessSchemaError(f"schema not found: {path}")
            return path.read_text(encoding="utf-8")
        resource = resources.files(CONTRACTS_PACKAGE).joinpath(CONTRACTS_DIR).joinpath(name)
        if not resource.is_file():
            raise HarnessSchemaError(f"schema not packaged: {CONTRACTS_DIR}/{name}")
        return resource.read_text(encoding="utf-8")
