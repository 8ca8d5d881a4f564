"""Harness data model: nodes, identities, groups, outcomes, test cases."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Operation(str, Enum):
    WRITE = "WRITE"
    READ = "READ"


class Decision(str, Enum):
    """Expected outcome, computed from declared membership only."""

    ALLOW = "ALLOW"
    DENY = "DENY"


class OutcomeKind(str, Enum):
    SUCCESS = "SUCCESS"
    DENIED = "DENIED"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"


class Classification(str, Enum):
    PASS = "PASS"
    UNEXPECTED_DENIAL = "UNEXPECTED_DENIAL"
    BREACH = "BREACH"
    INCONCLUSIVE = "INCONCLUSIVE"


class Finding(str, Enum):
    AUTHORIZATION = "AUTHORIZATION"
    CROSS_GROUP_LEAKAGE = "CROSS_GROUP_LEAKAGE"
    NON_DETERMINISTIC = "NON_DETERMINISTIC"
    VALUE_MISMATCH = "VALUE_MISMATCH"
    VALUE_UNVERIFIED = "VALUE_UNVERIFIED"
    TRANSPORT = "TRANSPORT"
    UNCLASSIFIED_ERROR = "UNCLASSIFIED_ERROR"


class GroupStatus(str, Enum):
    CREATING = "CREATING"
    READY = "READY"
    FAILED = "FAILED"


@dataclass(frozen=True)
class Node:
    id: str
    endpoint: str
    reachable: bool


@dataclass(frozen=True)
class Identity:
    name: str
    home_node_id: str
    address: str | None
    signing_handle: str | None
    labels: dict[str, str] = field(default_factory=dict, compare=False, hash=False)

    @property
    def resolved(self) -> bool:
        return bool(self.address and self.signing_handle)


@dataclass
class PrivacyGroup:
    name: str
    members: frozenset[str]
    id: str | None = None
    contract_address: str | None = None
    status: GroupStatus = GroupStatus.CREATING
    failure_reason: str | None = None

    @property
    def eligible(self) -> bool:
        return self.status == GroupStatus.READY and bool(self.contract_address)

    def bind_contract(self, contract_address: str) -> None:
        if self.contract_address and self.contract_address != contract_address:
            raise ValueError(f"group {self.name} already bound to {self.contract_address}")
        self.contract_address = contract_address

    def mark_ready(self) -> None:
        if not self.contract_address:
            raise ValueError(f"group {self.name} has no probe contract")
        self.status = GroupStatus.READY

    def mark_failed(self, reason: str) -> None:
        self.status = GroupStatus.FAILED
        self.failure_reason = reason


@dataclass(frozen=True)
class ActualOutcome:
    kind: OutcomeKind
    value: Any = None
    reason: str | None = None
    ambiguous: bool = False

    @classmethod
    def success(cls, value: Any = None) -> "ActualOutcome":
        return cls(kind=OutcomeKind.SUCCESS, value=value)

    @classmethod
    def denied(cls, reason: str) -> "ActualOutcome":
        return cls(kind=OutcomeKind.DENIED, reason=reason)

    @classmethod
    def transport_error(cls, reason: str, *, ambiguous: bool = False) -> "ActualOutcome":
        return cls(kind=OutcomeKind.TRANSPORT_ERROR, reason=reason, ambiguous=ambiguous)

    @property
    def is_success(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind.value}
        if self.value is not None:
            payload["value"] = str(self.value)
        if self.reason:
            payload["reason"] = self.reason
        if self.ambiguous:
            payload["ambiguous"] = True
        return payload


@dataclass
class TestCase:
    __test__ = False

    group_name: str
    group_id: str | None
    identity_name: str
    operation: Operation
    expected: Decision
    actual: ActualOutcome
    observations: tuple[ActualOutcome, ...] = ()
    classification: Classification | None = None
    finding: Finding | None = None

    def key(self) -> tuple[str, str, str]:
        return (self.group_name, self.identity_name, self.operation.value)

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "group": self.group_name,
            "group_id": self.group_id,
            "identity": self.identity_name,
            "operation": self.operation.value,
            "expected": self.expected.value,
            "actual": self.actual.as_dict(),
            "classification": self.classification.value if self.classification else None,
            "finding": self.finding.value if self.finding else None,
        }
        if len(self.observations) > 1:
            payload["observations"] = [item.as_dict() for item in self.observations]
        return payload
