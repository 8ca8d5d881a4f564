"""Configuration loader for harness profiles (topology, identities, groups, wiring)."""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from .errors import ConfigError

_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


class NodeSpec(BaseModel):
    id: str = Field(..., min_length=1)
    endpoint: str = Field(..., min_length=1)


class IdentitySpec(BaseModel):
    name: str = Field(..., min_length=1)
    node: str = Field(..., min_length=1)
    labels: dict[str, str] = {}


class GroupSpec(BaseModel):
    name: str = Field(..., min_length=1)
    members: list[str] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _unique_members(self) -> "GroupSpec":
        if len(set(self.members)) != len(self.members):
            raise ValueError(f"group {self.name} lists a member more than once")
        return self


class PlatformSettings(BaseModel):
    domain: str = "pente"
    group_configuration: dict[str, Any] = {}
    member_ref: Literal["address", "lookup"] = "address"
    verifier_algorithm: str = "ecdsa:secp256k1"
    verifier_type: str = "eth_address"
    probe_artifact_ref: str | None = None
    store_function: str = "store"
    retrieve_function: str = "retrieve"


class WiringSettings(BaseModel):
    connect_timeout_seconds: float = 5.0
    request_timeout_seconds: float = 30.0
    transport_retry_attempts: int = Field(2, ge=1)
    transport_retry_base_delay_seconds: float = 0.5
    ready_timeout_seconds: float = 60.0
    ready_poll_seconds: float = 2.0
    receipt_timeout_seconds: float = 30.0
    receipt_poll_seconds: float = 1.0
    group_parallelism: int = Field(4, ge=1)
    read_parallelism: int = Field(4, ge=1)
    read_repeats: int = Field(2, ge=1)
    denial_error_codes: list[int] = []
    denial_phrases: list[str] | None = None
    probe_method: str = "transport_nodeName"


class ReportSettings(BaseModel):
    output_path: str | None = None
    # None: the contracts packaged with the harness.
    schema_root: str | None = None


class HarnessProfile(BaseModel):
    profile_id: str = "local"
    nodes: list[NodeSpec] = Field(..., min_length=1)
    identities: list[IdentitySpec] = Field(..., min_length=1)
    groups: list[GroupSpec] = []
    platform: PlatformSettings = PlatformSettings()
    wiring: WiringSettings = WiringSettings()
    report: ReportSettings = ReportSettings()

    @model_validator(mode="after")
    def _check_references(self) -> "HarnessProfile":
        node_ids = [node.id for node in self.nodes]
        if len(set(node_ids)) != len(node_ids):
            raise ValueError("node ids must be unique")
        names = [identity.name for identity in self.identities]
        if len(set(names)) != len(names):
            raise ValueError("identity names must be unique")
        unknown_nodes = sorted({item.node for item in self.identities} - set(node_ids))
        if unknown_nodes:
            raise ValueError(f"identities reference undeclared nodes: {unknown_nodes}")
        group_names = [group.name for group in self.groups]
        if len(set(group_names)) != len(group_names):
            raise ValueError("group names must be unique")
        known = set(names)
        for group in self.groups:
            missing = sorted(set(group.members) - known)
            if missing:
                raise ValueError(f"group {group.name} references undeclared identities: {missing}")
        return self

    def node_for(self, identity_name: str) -> str:
        for identity in self.identities:
            if identity.name == identity_name:
                return identity.node
        raise KeyError(identity_name)


class ProbeArtifact(BaseModel):
    abi: list[dict[str, Any]]
    bytecode: str = Field(..., min_length=2)

    def function(self, name: str) -> dict[str, Any]:
        for item in self.abi:
            if item.get("type") == "function" and item.get("name") == name:
                return item
        raise ConfigError("PROBE_ABI_ENTRY_MISSING", name)

    def constructor(self) -> dict[str, Any]:
        for item in self.abi:
            if item.get("type") == "constructor":
                return item
        return {"type": "constructor", "inputs": [], "stateMutability": "nonpayable"}


def _expand_str(value: str) -> str:
    def replacer(match: re.Match[str]) -> str:
        token = match.group(1)
        if ":-" in token:
            key, default = token.split(":-", 1)
            actual = os.getenv(key, "")
            return actual if actual.strip() else default
        actual = os.getenv(token, "")
        if not actual.strip():
            raise ConfigError("ENV_VAR_MISSING", token)
        return actual

    return _VAR_PATTERN.sub(replacer, value)


def _expand_payload(value: Any) -> Any:
    if isinstance(value, str):
        return _expand_str(value)
    if isinstance(value, list):
        return [_expand_payload(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _expand_payload(item) for key, item in value.items()}
    return value


def load_profile(path: Path) -> HarnessProfile:
    if not path.exists():
        raise ConfigError("PROFILE_NOT_FOUND", str(path))
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ConfigError("PROFILE_INVALID", str(path))
    expanded = _expand_payload(data)
    try:
        profile = HarnessProfile(**expanded)
    except ValidationError as exc:
        raise ConfigError("PROFILE_INVALID", str(exc).splitlines()[0]) from exc
    # Relative references inside a profile are relative to the profile file.
    profile.platform.probe_artifact_ref = _anchor(path, profile.platform.probe_artifact_ref)
    profile.report.schema_root = _anchor(path, profile.report.schema_root)
    return profile


def _anchor(profile_path: Path, ref: str | None) -> str | None:
    if not ref or Path(ref).is_absolute():
        return ref
    return str((profile_path.parent / ref).resolve())


def load_probe_artifact(ref: str | None) -> ProbeArtifact:
    if not ref:
        raise ConfigError("PROBE_ARTIFACT_REQUIRED")
    path = Path(ref)
    if not path.exists():
        raise ConfigError("PROBE_ARTIFACT_NOT_FOUND", str(path))
    if path.suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    else:
        data = json.loads(path.read_text(encoding="utf-8"))
    try:
        return ProbeArtifact(**data)
    except (TypeError, ValidationError) as exc:
        raise ConfigError("PROBE_ARTIFACT_INVALID", str(path)) from exc
