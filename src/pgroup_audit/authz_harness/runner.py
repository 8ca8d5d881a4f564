"""Harness assembly: wires topology, registry, groups, proxy and reporter for one run."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Any, Callable

import requests

from pgroup_audit.platform_runtime import append_session_event, run_root

from .config import HarnessProfile, ProbeArtifact, load_probe_artifact
from .gateway import RpcGateway
from .groups import PrivacyGroupManager
from .identity import IdentityRegistry
from .orchestrator import MatrixResult, TestOrchestrator
from .proxy import ContractInvocationProxy
from .reporter import BreachReporter, exit_code_for
from .schemas import HarnessSchemaRegistry
from .topology import NodeTopology


logger = logging.getLogger("pgroup_audit.authz_harness.runner")


@dataclass(frozen=True)
class HarnessRunResult:
    report: dict[str, Any]
    report_path: Path
    exit_code: int
    matrix: MatrixResult


class AuthzHarness:
    def __init__(
        self,
        profile: HarnessProfile,
        *,
        run_id: str,
        topology: NodeTopology,
        gateway: RpcGateway,
        registry: IdentityRegistry,
        manager: PrivacyGroupManager,
        orchestrator: TestOrchestrator,
        reporter: BreachReporter,
    ) -> None:
        self.profile = profile
        self.run_id = run_id
        self.topology = topology
        self.gateway = gateway
        self.registry = registry
        self.manager = manager
        self.orchestrator = orchestrator
        self.reporter = reporter

    @classmethod
    def build(
        cls,
        profile: HarnessProfile,
        *,
        run_id: str,
        artifact: ProbeArtifact | None = None,
        session_factory: Callable[[], Any] | None = None,
    ) -> "AuthzHarness":
        wiring = profile.wiring
        platform = profile.platform
        probe = artifact or load_probe_artifact(platform.probe_artifact_ref)
        topology = NodeTopology(
            profile.nodes,
            connect_timeout_seconds=wiring.connect_timeout_seconds,
            request_timeout_seconds=wiring.request_timeout_seconds,
            probe_method=wiring.probe_method,
            session_factory=session_factory or requests.Session,
        )
        gateway = RpcGateway(
            topology,
            denial_error_codes=wiring.denial_error_codes,
            denial_phrases=wiring.denial_phrases,
            retry_attempts=wiring.transport_retry_attempts,
            retry_base_delay_seconds=wiring.transport_retry_base_delay_seconds,
        )
        registry = IdentityRegistry(
            gateway,
            topology,
            verifier_algorithm=platform.verifier_algorithm,
            verifier_type=platform.verifier_type,
        )
        manager = PrivacyGroupManager(
            gateway,
            topology,
            probe,
            domain=platform.domain,
            group_configuration=platform.group_configuration,
            member_ref=platform.member_ref,
            ready_timeout_seconds=wiring.ready_timeout_seconds,
            ready_poll_seconds=wiring.ready_poll_seconds,
            receipt_timeout_seconds=wiring.receipt_timeout_seconds,
            receipt_poll_seconds=wiring.receipt_poll_seconds,
        )
        proxy = ContractInvocationProxy(
            gateway,
            probe,
            domain=platform.domain,
            store_function=platform.store_function,
            retrieve_function=platform.retrieve_function,
            receipt_timeout_seconds=wiring.receipt_timeout_seconds,
            receipt_poll_seconds=wiring.receipt_poll_seconds,
        )
        orchestrator = TestOrchestrator(
            registry,
            manager,
            proxy,
            run_id=run_id,
            group_parallelism=wiring.group_parallelism,
            read_parallelism=wiring.read_parallelism,
            read_repeats=wiring.read_repeats,
        )
        schema_root = profile.report.schema_root
        reporter = BreachReporter(HarnessSchemaRegistry(Path(schema_root) if schema_root else None))
        return cls(
            profile,
            run_id=run_id,
            topology=topology,
            gateway=gateway,
            registry=registry,
            manager=manager,
            orchestrator=orchestrator,
            reporter=reporter,
        )

    def run(self, *, output_path: Path | None = None) -> HarnessRunResult:
        """Run the full matrix. ``ResolutionError`` and ``HarnessSchemaError`` propagate and abort the run."""
        # Fail before touching the platform if the report could never be written.
        self.reporter.preflight()
        try:
            return self._run(output_path)
        finally:
            self.topology.close()

    def _run(self, output_path: Path | None) -> HarnessRunResult:
        nodes = self.topology.discover()
        logger.info(
            "topology discovered reachable=%s unreachable=%s",
            sorted(node_id for node_id, node in nodes.items() if node.reachable),
            sorted(node_id for node_id, node in nodes.items() if not node.reachable),
        )
        self.registry.resolve_all(self.profile.identities)
        matrix = self.orchestrator.run(self.profile.groups)
        report = self.reporter.build_report(
            matrix,
            run_id=self.run_id,
            profile_id=self.profile.profile_id,
            identities=self.registry.identities(),
            excluded_identities=self.registry.excluded(),
        )
        path = (output_path or self._default_report_path()).resolve()
        self.reporter.write_report(report, path)
        append_session_event(
            self.run_id,
            "authz_harness",
            "RUN_REPORT_WRITTEN",
            {"report_path": str(path), "verdict": report["verdict"], "summary": report["summary"]},
        )
        logger.info("run complete verdict=%s summary=%s report=%s", report["verdict"], report["summary"], path)
        return HarnessRunResult(report=report, report_path=path, exit_code=exit_code_for(report), matrix=matrix)

    def _default_report_path(self) -> Path:
        if self.profile.report.output_path:
            return Path(self.profile.report.output_path)
        return run_root(self.run_id) / "authz" / "report.json"
