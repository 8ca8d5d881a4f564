"""Test orchestrator: builds and sequences the group x identity x operation matrix."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
import hashlib
import logging
from types import MappingProxyType
from typing import Iterable, Mapping

from .config import GroupSpec
from .errors import ConfirmationTimeoutError, ProbeDeploymentError, TopologyError
from .groups import PrivacyGroupManager
from .identity import IdentityRegistry
from .models import ActualOutcome, GroupStatus, Identity, Operation, PrivacyGroup, TestCase
from .oracle import expect
from .proxy import ContractInvocationProxy


logger = logging.getLogger("pgroup_audit.authz_harness.orchestrator")

_VALUE_BITS_HEX = 12


@dataclass
class GroupRun:
    name: str
    group: PrivacyGroup | None
    cases: list[TestCase] = field(default_factory=list)
    excluded_reason: str | None = None
    writer_name: str | None = None
    sentinel_committed: bool = False

    @property
    def excluded(self) -> bool:
        return self.excluded_reason is not None


@dataclass
class MatrixResult:
    runs: list[GroupRun]
    sentinels: Mapping[str, int]

    @property
    def cases(self) -> list[TestCase]:
        return [case for run in self.runs for case in run.cases]

    @property
    def committed_sentinels(self) -> dict[str, int]:
        return {run.name: self.sentinels[run.name] for run in self.runs if run.sentinel_committed}


def build_sentinel_table(run_id: str, group_names: Iterable[str]) -> Mapping[str, int]:
    """One group-unique sentinel per group, stable for a given run id."""
    table: dict[str, int] = {}
    used: set[int] = set()
    for name in sorted(group_names):
        value = _derive(f"{run_id}:sentinel:{name}")
        while value in used:
            value += 1
        used.add(value)
        table[name] = value
    return MappingProxyType(table)


def _derive(seed: str) -> int:
    return int(hashlib.sha256(seed.encode("utf-8")).hexdigest()[:_VALUE_BITS_HEX], 16) + 1


class TestOrchestrator:
    __test__ = False

    def __init__(
        self,
        registry: IdentityRegistry,
        manager: PrivacyGroupManager,
        proxy: ContractInvocationProxy,
        *,
        run_id: str,
        group_parallelism: int = 4,
        read_parallelism: int = 4,
        read_repeats: int = 2,
    ) -> None:
        self.registry = registry
        self.manager = manager
        self.proxy = proxy
        self.run_id = run_id
        self.group_parallelism = max(1, int(group_parallelism))
        self.read_parallelism = max(1, int(read_parallelism))
        self.read_repeats = max(1, int(read_repeats))
        self._sentinels: Mapping[str, int] = MappingProxyType({})

    def run(self, specs: list[GroupSpec]) -> MatrixResult:
        # Fixed before any worker starts; workers only read it.
        self._sentinels = build_sentinel_table(self.run_id, [spec.name for spec in specs])
        runs: dict[str, GroupRun] = {}
        if specs:
            max_workers = min(self.group_parallelism, len(specs))
            with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="authz-group") as executor:
                futures = {executor.submit(self._run_group, spec): spec.name for spec in specs}
                for future in as_completed(futures):
                    runs[futures[future]] = future.result()
        ordered = [runs[spec.name] for spec in specs]
        return MatrixResult(runs=ordered, sentinels=self._sentinels)

    def rerun(self, previous: MatrixResult) -> MatrixResult:
        """Re-probe the Ready groups of a previous run without creating anything new."""
        self._sentinels = previous.sentinels
        runs: list[GroupRun] = []
        eligible = [run for run in previous.runs if run.group is not None and run.group.eligible]
        if eligible:
            with ThreadPoolExecutor(max_workers=min(self.group_parallelism, len(eligible))) as executor:
                futures = {executor.submit(self._probe_group, run.group, run.writer_name): run.name for run in eligible}
                results = {futures[future]: future.result() for future in as_completed(futures)}
        else:
            results = {}
        for run in previous.runs:
            if run.name in results:
                runs.append(results[run.name])
            else:
                runs.append(GroupRun(name=run.name, group=run.group, excluded_reason=run.excluded_reason))
        return MatrixResult(runs=runs, sentinels=self._sentinels)

    def sentinel_for(self, group_name: str) -> int:
        return self._sentinels[group_name]

    def probe_value(self, group_name: str, identity_name: str) -> int:
        """Throwaway write value; never equal to any group's sentinel."""
        value = _derive(f"{self.run_id}:probe:{group_name}:{identity_name}")
        taken = set(self._sentinels.values())
        while value in taken:
            value += 1
        return value

    def _run_group(self, spec: GroupSpec) -> GroupRun:
        try:
            members = [self.registry.get(name) for name in spec.members]
            group = self.manager.create(spec.name, members)
        except TopologyError as exc:
            logger.warning("group excluded group=%s reason=%s", spec.name, exc)
            return GroupRun(name=spec.name, group=None, excluded_reason=str(exc))
        if group.status == GroupStatus.FAILED:
            return GroupRun(name=spec.name, group=group, excluded_reason=group.failure_reason)
        try:
            self.manager.await_ready(group)
        except (ConfirmationTimeoutError, ProbeDeploymentError) as exc:
            logger.warning("group failed, no cases generated group=%s reason=%s", spec.name, exc)
            return GroupRun(name=spec.name, group=group, excluded_reason=str(exc))
        return self._probe_group(group, writer_name=spec.members[0])

    def _probe_group(self, group: PrivacyGroup, writer_name: str | None = None) -> GroupRun:
        universe = self.registry.universe()
        writer = self.registry.get(writer_name or sorted(group.members)[0])
        sentinel = self._sentinels[group.name]
        run = GroupRun(name=group.name, group=group, writer_name=writer.name)

        # Phase 1: sentinel write from a member; the proxy holds until its receipt confirms.
        outcome = self.proxy.write(group, writer, sentinel)
        run.cases.append(self._case(group, writer, Operation.WRITE, (outcome,)))
        run.sentinel_committed = outcome.is_success
        if not outcome.is_success:
            logger.warning(
                "sentinel write not committed group=%s writer=%s outcome=%s",
                group.name,
                writer.name,
                outcome.as_dict(),
            )

        # Phase 2: every identity reads; observations only, so they fan out.
        run.cases.extend(self._read_all(group, universe))

        # Phase 3: write probes from everyone else, after reads so they cannot disturb them.
        for identity in universe:
            if identity.name == writer.name:
                continue
            probe = self.proxy.write(group, identity, self.probe_value(group.name, identity.name))
            run.cases.append(self._case(group, identity, Operation.WRITE, (probe,)))
        logger.info("group probed group=%s cases=%s", group.name, len(run.cases))
        return run

    def _read_all(self, group: PrivacyGroup, universe: list[Identity]) -> list[TestCase]:
        if not universe:
            return []
        with ThreadPoolExecutor(max_workers=min(self.read_parallelism, len(universe))) as executor:
            futures = [executor.submit(self._observe_read, group, identity) for identity in universe]
            observations = [future.result() for future in futures]
        return [
            self._case(group, identity, Operation.READ, observed)
            for identity, observed in zip(universe, observations)
        ]

    def _observe_read(self, group: PrivacyGroup, identity: Identity) -> tuple[ActualOutcome, ...]:
        return tuple(self.proxy.read(group, identity) for _ in range(self.read_repeats))

    def _case(
        self,
        group: PrivacyGroup,
        identity: Identity,
        operation: Operation,
        observations: tuple[ActualOutcome, ...],
    ) -> TestCase:
        return TestCase(
            group_name=group.name,
            group_id=group.id,
            identity_name=identity.name,
            operation=operation,
            expected=expect(group, identity, operation),
            actual=observations[0],
            observations=observations,
        )
