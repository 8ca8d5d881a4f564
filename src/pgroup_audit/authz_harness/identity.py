"""Identity registry: symbolic names resolved to node affiliation and address."""

from __future__ import annotations

import logging
from typing import Iterable

from .config import IdentitySpec
from .errors import GatewayError, ResolutionError
from .gateway import RpcGateway
from .models import Identity
from .topology import NodeTopology


logger = logging.getLogger("pgroup_audit.authz_harness.identity")


class IdentityRegistry:
    def __init__(
        self,
        gateway: RpcGateway,
        topology: NodeTopology,
        *,
        verifier_algorithm: str = "ecdsa:secp256k1",
        verifier_type: str = "eth_address",
    ) -> None:
        self.gateway = gateway
        self.topology = topology
        self.verifier_algorithm = verifier_algorithm
        self.verifier_type = verifier_type
        self._identities: dict[str, Identity] = {}

    def resolve(self, name: str, node_id: str, *, labels: dict[str, str] | None = None) -> Identity:
        """Resolve ``name`` on its home node. Any failure is fatal to the run."""
        if name in self._identities:
            return self._identities[name]
        node = self.topology.node(node_id)
        if not node.reachable:
            # Left unresolved; groups naming it fail with TopologyError.
            identity = Identity(name=name, home_node_id=node_id, address=None, signing_handle=None, labels=dict(labels or {}))
            logger.warning("identity excluded name=%s node=%s reason=NODE_UNREACHABLE", name, node_id)
            self._identities[name] = identity
            return identity
        try:
            address = self.gateway.invoke(
                node_id,
                "ptx_resolveVerifier",
                [name, self.verifier_algorithm, self.verifier_type],
            )
        except GatewayError as exc:
            raise ResolutionError("RESOLVE_FAILED", f"{name}@{node_id}:{exc}") from exc
        if not isinstance(address, str) or not address.strip():
            raise ResolutionError("RESOLVE_EMPTY", f"{name}@{node_id}")
        identity = Identity(
            name=name,
            home_node_id=node_id,
            address=address.strip(),
            signing_handle=name,
            labels=dict(labels or {}),
        )
        self._identities[name] = identity
        logger.info("identity resolved name=%s node=%s address=%s", name, node_id, identity.address)
        return identity

    def resolve_all(self, specs: Iterable[IdentitySpec]) -> dict[str, Identity]:
        for spec in specs:
            self.resolve(spec.name, spec.node, labels=spec.labels)
        return dict(self._identities)

    def get(self, name: str) -> Identity:
        try:
            return self._identities[name]
        except KeyError as exc:
            raise ResolutionError("IDENTITY_UNKNOWN", name) from exc

    def identities(self) -> list[Identity]:
        return sorted(self._identities.values(), key=lambda item: item.name)

    def universe(self) -> list[Identity]:
        """Resolved identities, the population every group is probed with."""
        return sorted((item for item in self._identities.values() if item.resolved), key=lambda item: item.name)

    def excluded(self) -> list[Identity]:
        return sorted((item for item in self._identities.values() if not item.resolved), key=lambda item: item.name)
