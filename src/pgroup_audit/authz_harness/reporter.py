"""Breach detection and run reporting.

A breach is a success where the oracle expected a denial. The one extension is
cross-group leakage: a read that returns another group's sentinel is a breach
even for a member, because the value itself proves isolation failed. It
carries the ``CROSS_GROUP_LEAKAGE`` finding so it stays separate from
``AUTHORIZATION`` breaches.

A run that probed no group at all is ``INCOMPLETE``, never ``CLEAN``.
"""

from __future__ import annotations

from collections import Counter
import json
import logging
from pathlib import Path
from typing import Any, Iterable, Mapping

from pgroup_audit.platform_runtime import utc_now

from .models import (
    ActualOutcome,
    Classification,
    Decision,
    Finding,
    Identity,
    Operation,
    OutcomeKind,
    TestCase,
)
from .orchestrator import MatrixResult
from .schemas import HarnessSchemaRegistry


logger = logging.getLogger("pgroup_audit.authz_harness.reporter")

REPORT_SCHEMA = "authz_run_report.schema.yaml"

EXIT_CLEAN = 0
EXIT_NOT_CLEAN = 1
EXIT_INCOMPLETE = 3

# Breaches first, then everything that blocks a clean verdict.
_SEVERITY_ORDER = {
    Classification.BREACH: 0,
    Classification.INCONCLUSIVE: 1,
    Classification.UNEXPECTED_DENIAL: 2,
    Classification.PASS: 3,
}


def classify(
    case: TestCase,
    *,
    expected_value: int | None,
    sentinels: Mapping[str, int],
) -> tuple[Classification, Finding | None]:
    observations = case.observations or (case.actual,)
    foreign = {value: name for name, value in sentinels.items() if name != case.group_name}
    leaked = [item for item in observations if item.is_success and item.value in foreign]
    if leaked:
        return Classification.BREACH, Finding.CROSS_GROUP_LEAKAGE
    if case.expected == Decision.DENY and any(item.is_success for item in observations):
        return Classification.BREACH, Finding.AUTHORIZATION
    if not _consistent(observations):
        return Classification.INCONCLUSIVE, Finding.NON_DETERMINISTIC

    actual = observations[0]
    if actual.kind == OutcomeKind.TRANSPORT_ERROR:
        finding = Finding.UNCLASSIFIED_ERROR if actual.ambiguous else Finding.TRANSPORT
        return Classification.INCONCLUSIVE, finding
    if case.expected == Decision.DENY:
        return Classification.PASS, None
    if actual.kind == OutcomeKind.DENIED:
        return Classification.UNEXPECTED_DENIAL, Finding.AUTHORIZATION
    if case.operation == Operation.READ:
        if expected_value is None:
            return Classification.INCONCLUSIVE, Finding.VALUE_UNVERIFIED
        if actual.value != expected_value:
            return Classification.INCONCLUSIVE, Finding.VALUE_MISMATCH
    return Classification.PASS, None


def _consistent(observations: Iterable[ActualOutcome]) -> bool:
    shapes = {(item.kind, item.value if item.is_success else None) for item in observations}
    return len(shapes) <= 1


class BreachReporter:
    def __init__(self, schema_registry: HarnessSchemaRegistry | None = None) -> None:
        self.schema_registry = schema_registry or HarnessSchemaRegistry()

    def preflight(self) -> None:
        self.schema_registry.load(REPORT_SCHEMA)

    def classify_all(self, result: MatrixResult) -> list[TestCase]:
        expected_values = result.committed_sentinels
        for case in result.cases:
            classification, finding = classify(
                case,
                expected_value=expected_values.get(case.group_name),
                sentinels=result.sentinels,
            )
            case.classification = classification
            case.finding = finding
            if classification == Classification.BREACH:
                logger.error(
                    "BREACH group=%s identity=%s operation=%s finding=%s actual=%s",
                    case.group_name,
                    case.identity_name,
                    case.operation.value,
                    finding.value if finding else None,
                    case.actual.as_dict(),
                    extra={"finding": True},
                )
            elif classification == Classification.INCONCLUSIVE:
                logger.warning(
                    "INCONCLUSIVE group=%s identity=%s operation=%s finding=%s actual=%s",
                    case.group_name,
                    case.identity_name,
                    case.operation.value,
                    finding.value if finding else None,
                    case.actual.as_dict(),
                    extra={"finding": True},
                )
        return result.cases

    def build_report(
        self,
        result: MatrixResult,
        *,
        run_id: str,
        profile_id: str,
        identities: Iterable[Identity] = (),
        excluded_identities: Iterable[Identity] = (),
    ) -> dict[str, Any]:
        cases = self.classify_all(result)
        ordered = sorted(cases, key=lambda item: (_SEVERITY_ORDER[item.classification], item.key()))
        totals = Counter(case.classification.value for case in cases)
        groups: list[dict[str, Any]] = []
        excluded_groups: list[dict[str, Any]] = []
        for run in result.runs:
            if run.excluded:
                excluded_groups.append(
                    {
                        "group": run.name,
                        "group_id": run.group.id if run.group else None,
                        "status": run.group.status.value if run.group else "NOT_CREATED",
                        "reason": run.excluded_reason,
                    }
                )
                continue
            counts = Counter(case.classification.value for case in run.cases)
            groups.append(
                {
                    "group": run.name,
                    "group_id": run.group.id if run.group else None,
                    "status": run.group.status.value if run.group else "NOT_CREATED",
                    "members": sorted(run.group.members) if run.group else [],
                    "contract_address": run.group.contract_address if run.group else None,
                    "sentinel_committed": run.sentinel_committed,
                    "counts": _counts(counts),
                }
            )
        breaches = [case.as_dict() for case in ordered if case.classification == Classification.BREACH]
        inconclusive = [case.as_dict() for case in ordered if case.classification == Classification.INCONCLUSIVE]
        if not groups:
            verdict = "INCOMPLETE"
            logger.error("no group was probed; run is incomplete excluded_groups=%s", len(excluded_groups))
        elif breaches or inconclusive:
            verdict = "NOT_CLEAN"
        else:
            verdict = "CLEAN"
        clean = verdict == "CLEAN"
        return {
            "run_id": run_id,
            "profile_id": profile_id,
            "generated_at_utc": utc_now(),
            "verdict": verdict,
            "clean": clean,
            "summary": {"total": len(cases), **_counts(totals)},
            "breaches": breaches,
            "inconclusive": inconclusive,
            "groups": groups,
            "excluded_groups": excluded_groups,
            "identities": [
                {
                    "identity": item.name,
                    "node": item.home_node_id,
                    "address": item.address,
                    "labels": dict(item.labels),
                    "resolved": item.resolved,
                }
                for item in identities
            ],
            "excluded_identities": [
                {
                    "identity": item.name,
                    "node": item.home_node_id,
                    "labels": dict(item.labels),
                    "reason": "NODE_UNREACHABLE",
                }
                for item in excluded_identities
            ],
            "cases": [case.as_dict() for case in ordered],
        }

    def write_report(self, report: dict[str, Any], path: Path) -> Path:
        self.schema_registry.validate(REPORT_SCHEMA, report)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(report, sort_keys=True, ensure_ascii=True, indent=2) + "\n", encoding="utf-8")
        return path


def exit_code_for(report: Mapping[str, Any]) -> int:
    verdict = report.get("verdict")
    if verdict == "CLEAN":
        return EXIT_CLEAN
    if verdict == "INCOMPLETE":
        return EXIT_INCOMPLETE
    return EXIT_NOT_CLEAN


def _counts(counter: Counter) -> dict[str, int]:
    return {item.value: int(counter.get(item.value, 0)) for item in Classification}
