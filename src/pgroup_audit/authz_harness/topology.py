"""Node topology: reachable execution endpoints and their connection handles."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Callable, Iterable

import requests

from .config import NodeSpec
from .errors import TopologyError, UnreachableError
from .models import Node


logger = logging.getLogger("pgroup_audit.authz_harness.topology")

DEFAULT_CONNECT_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class ConnectionHandle:
    """Shared per-node connection. Test logic never mutates it."""

    node: Node
    session: Any
    request_timeout_seconds: float


class NodeTopology:
    def __init__(
        self,
        specs: Iterable[NodeSpec],
        *,
        connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        request_timeout_seconds: float = 30.0,
        probe_method: str = "transport_nodeName",
        session_factory: Callable[[], Any] = requests.Session,
    ) -> None:
        self._specs = {spec.id: spec for spec in specs}
        self.connect_timeout_seconds = connect_timeout_seconds
        self.request_timeout_seconds = request_timeout_seconds
        self.probe_method = probe_method
        self._session_factory = session_factory
        self._nodes: dict[str, Node] = {}
        self._handles: dict[str, ConnectionHandle] = {}

    def discover(self) -> dict[str, Node]:
        """Probe every declared node once. Reachability is fixed for the rest of the run."""
        for node_id, spec in self._specs.items():
            candidate = Node(id=node_id, endpoint=spec.endpoint, reachable=True)
            try:
                handle = self.connect(candidate)
            except UnreachableError as exc:
                logger.warning("node unreachable node=%s endpoint=%s reason=%s", node_id, spec.endpoint, exc)
                self._nodes[node_id] = Node(id=node_id, endpoint=spec.endpoint, reachable=False)
                continue
            self._nodes[node_id] = candidate
            self._handles[node_id] = handle
        return dict(self._nodes)

    def connect(self, node: Node) -> ConnectionHandle:
        session = self._session_factory()
        body = {"jsonrpc": "2.0", "id": 0, "method": self.probe_method, "params": []}
        try:
            session.post(node.endpoint, json=body, timeout=self.connect_timeout_seconds)
        except requests.Timeout as exc:
            session.close()
            raise UnreachableError("CONNECT_TIMEOUT", node.id) from exc
        except requests.RequestException as exc:
            session.close()
            raise UnreachableError("CONNECT_REFUSED", f"{node.id}:{str(exc)[:128]}") from exc
        return ConnectionHandle(node=node, session=session, request_timeout_seconds=self.request_timeout_seconds)

    def close(self) -> None:
        """Release every node session. Handles must not be used afterwards."""
        handles, self._handles = self._handles, {}
        for handle in handles.values():
            handle.session.close()

    @property
    def nodes(self) -> dict[str, Node]:
        return dict(self._nodes)

    def node(self, node_id: str) -> Node:
        try:
            return self._nodes[node_id]
        except KeyError as exc:
            raise TopologyError("NODE_UNKNOWN", node_id) from exc

    def is_reachable(self, node_id: str) -> bool:
        node = self._nodes.get(node_id)
        return bool(node and node.reachable)

    def handle_for(self, node_id: str) -> ConnectionHandle:
        handle = self._handles.get(node_id)
        if handle is None:
            raise UnreachableError("NODE_UNREACHABLE", node_id)
        return handle

    def require_reachable(self, node_ids: Iterable[str], *, context: str) -> None:
        blocked = sorted({node_id for node_id in node_ids if not self.is_reachable(node_id)})
        if blocked:
            raise TopologyError("MEMBER_NODE_UNREACHABLE", f"{context}:{','.join(blocked)}")
