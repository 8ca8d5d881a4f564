"""Privacy group lifecycle: create, await readiness, deploy the probe contract."""

from __future__ import annotations

import logging
import time
from typing import Any

from .config import ProbeArtifact
from .errors import (
    ConfirmationTimeoutError,
    GatewayError,
    HarnessError,
    ProbeDeploymentError,
    RejectedError,
    TransportError,
)
from .gateway import RpcGateway
from .models import Identity, PrivacyGroup
from .receipts import await_receipt, failure_message, receipt_failed
from .topology import NodeTopology


logger = logging.getLogger("pgroup_audit.authz_harness.groups")


class PrivacyGroupManager:
    def __init__(
        self,
        gateway: RpcGateway,
        topology: NodeTopology,
        artifact: ProbeArtifact,
        *,
        domain: str = "pente",
        group_configuration: dict[str, Any] | None = None,
        member_ref: str = "address",
        ready_timeout_seconds: float = 60.0,
        ready_poll_seconds: float = 2.0,
        receipt_timeout_seconds: float = 30.0,
        receipt_poll_seconds: float = 1.0,
    ) -> None:
        self.gateway = gateway
        self.topology = topology
        self.artifact = artifact
        self.domain = domain
        self.group_configuration = dict(group_configuration or {})
        self.member_ref = member_ref
        self.ready_timeout_seconds = ready_timeout_seconds
        self.ready_poll_seconds = ready_poll_seconds
        self.receipt_timeout_seconds = receipt_timeout_seconds
        self.receipt_poll_seconds = receipt_poll_seconds
        self._members: dict[str, tuple[Identity, ...]] = {}

    def create(self, name: str, members: list[Identity]) -> PrivacyGroup:
        """Submit a creation request naming every member. Membership is fixed from here on."""
        if not members:
            raise ValueError(f"group {name} requires at least one member")
        self.topology.require_reachable([member.home_node_id for member in members], context=name)
        creator = members[0]
        request = {
            "domain": self.domain,
            "name": name,
            "members": [self._member_ref(member) for member in members],
            "configuration": dict(self.group_configuration),
        }
        group = PrivacyGroup(name=name, members=frozenset(member.name for member in members))
        self._members[name] = tuple(members)
        try:
            result = self.gateway.invoke(creator.home_node_id, "pgroup_createGroup", [request])
        except GatewayError as exc:
            group.mark_failed(f"CREATE_FAILED:{exc}")
            logger.warning("group create failed group=%s reason=%s", name, exc)
            return group
        group_id = result.get("id") if isinstance(result, dict) else result
        if not group_id:
            group.mark_failed("CREATE_FAILED:GROUP_ID_MISSING")
            logger.warning("group create returned no id group=%s", name)
            return group
        group.id = str(group_id)
        logger.info("group creating group=%s id=%s members=%s", name, group.id, sorted(group.members))
        return group

    def await_ready(self, group: PrivacyGroup, timeout: float | None = None) -> PrivacyGroup:
        """Poll until the group is confirmed, then deploy its probe.

        Raises ``ConfirmationTimeoutError`` or ``ProbeDeploymentError``; the group
        is marked Failed in both cases.
        """
        if group.eligible:
            return group
        if group.id is None:
            raise ProbeDeploymentError("GROUP_NOT_CREATED", group.failure_reason or group.name)
        members = self._members[group.name]
        creator = members[0]
        wait = self.ready_timeout_seconds if timeout is None else timeout
        deadline = time.monotonic() + max(0.0, wait)
        while not self._confirmed(group, creator):
            if time.monotonic() >= deadline:
                group.mark_failed("CONFIRMATION_TIMEOUT")
                logger.warning("group confirmation timed out group=%s id=%s wait=%.1fs", group.name, group.id, wait)
                raise ConfirmationTimeoutError("GROUP_CONFIRMATION_TIMEOUT", f"{group.name}:{group.id}")
            time.sleep(self.ready_poll_seconds)
        try:
            address = self.deploy_probe(group, creator)
        except HarnessError as exc:
            group.mark_failed(f"PROBE_DEPLOY_FAILED:{exc}")
            logger.warning("probe deployment failed group=%s reason=%s", group.name, exc)
            if isinstance(exc, ProbeDeploymentError):
                raise
            raise ProbeDeploymentError("PROBE_DEPLOY_FAILED", str(exc)) from exc
        group.bind_contract(address)
        group.mark_ready()
        logger.info("group ready group=%s id=%s contract=%s", group.name, group.id, address)
        return group

    def deploy_probe(self, group: PrivacyGroup, deployer: Identity) -> str:
        if deployer.name not in group.members:
            raise ProbeDeploymentError("DEPLOYER_NOT_MEMBER", f"{deployer.name}:{group.name}")
        transaction = {
            "domain": self.domain,
            "group": group.id,
            "from": deployer.signing_handle,
            "bytecode": self.artifact.bytecode,
            "function": self.artifact.constructor(),
            "input": {},
        }
        try:
            tx_id = self.gateway.invoke(deployer.home_node_id, "pgroup_sendTransaction", [transaction])
        except GatewayError as exc:
            raise ProbeDeploymentError("DEPLOY_SUBMIT_FAILED", str(exc)) from exc
        if not tx_id:
            raise ProbeDeploymentError("DEPLOY_TX_ID_MISSING", group.name)
        receipt = await_receipt(
            self.gateway,
            deployer.home_node_id,
            str(tx_id),
            timeout_seconds=self.receipt_timeout_seconds,
            poll_seconds=self.receipt_poll_seconds,
        )
        if receipt_failed(receipt):
            raise ProbeDeploymentError("DEPLOY_FAILED", failure_message(receipt))
        address = receipt.get("contractAddress") or self._domain_receipt_address(deployer, str(tx_id))
        if not address:
            raise ProbeDeploymentError("CONTRACT_ADDRESS_MISSING", str(tx_id))
        return str(address)

    def _confirmed(self, group: PrivacyGroup, creator: Identity) -> bool:
        try:
            record = self.gateway.invoke(creator.home_node_id, "pgroup_getGroupById", [self.domain, group.id])
        except (TransportError, RejectedError) as exc:
            # Not yet indexed on the creator's node; keep polling until the deadline.
            logger.debug("group not yet visible group=%s reason=%s", group.name, exc)
            return False
        return isinstance(record, dict) and bool(record.get("contractAddress"))

    def _domain_receipt_address(self, deployer: Identity, tx_id: str) -> str | None:
        try:
            receipt = self.gateway.invoke(deployer.home_node_id, "ptx_getDomainReceipt", [self.domain, tx_id])
        except GatewayError as exc:
            logger.warning("domain receipt lookup failed tx=%s reason=%s", tx_id, exc)
            return None
        if not isinstance(receipt, dict):
            return None
        inner = receipt.get("receipt") if isinstance(receipt.get("receipt"), dict) else receipt
        return inner.get("contractAddress")

    def _member_ref(self, member: Identity) -> str:
        if self.member_ref == "lookup":
            return str(member.signing_handle)
        return str(member.address)
