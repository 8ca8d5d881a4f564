from __future__ import annotations

import hashlib
import itertools
import json
import threading
from typing import Any

import pytest
import requests

from pgroup_audit.authz_harness.config import HarnessProfile, ProbeArtifact

STORAGE_ABI: list[dict[str, Any]] = [
    {"type": "constructor", "inputs": [], "stateMutability": "nonpayable"},
    {
        "type": "function",
        "name": "store",
        "inputs": [{"name": "value", "type": "uint256"}],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "retrieve",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
    },
]


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str | None = None) -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload)

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no json body")
        return self._payload


class FakePlatform:
    """In-memory privacy-group platform speaking the harness's JSON-RPC dialect.

    Membership is enforced by identity name; `leaky_readers` / `leaky_writers`
    and `node_level_access` let tests model a platform that gets it wrong.
    """

    def __init__(self, endpoints: dict[str, str]) -> None:
        self.node_by_endpoint = {endpoint: node_id for node_id, endpoint in endpoints.items()}
        self.unreachable: set[str] = set()
        self.unknown_keys: set[str] = set()
        self.never_ready: set[str] = set()
        self.ready_after_polls = 1
        self.receipt_after_polls = 1
        self.leaky_readers: set[str] = set()
        self.leaky_writers: set[str] = set()
        self.node_level_access = False
        self.flaky_readers: set[tuple[str, str]] = set()
        self.identity_nodes: dict[str, str] = {}
        self.groups: dict[str, dict[str, Any]] = {}
        self.receipts: dict[str, dict[str, Any]] = {}
        self.receipt_polls: dict[str, int] = {}
        self.calls: list[tuple[str, str, Any]] = []
        self.sessions_opened = 0
        self.sessions_closed = 0
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def session_factory(self) -> "FakeSession":
        with self._lock:
            self.sessions_opened += 1
        return FakeSession(self)

    def address_of(self, name: str) -> str:
        return "0x" + hashlib.sha1(name.encode("utf-8")).hexdigest()

    def handle(self, endpoint: str, body: dict[str, Any]) -> FakeResponse:
        node_id = self.node_by_endpoint[endpoint]
        if node_id in self.unreachable:
            raise requests.ConnectionError(f"connection refused: {endpoint}")
        method = body["method"]
        params = body["params"]
        with self._lock:
            self.calls.append((node_id, method, params))
            try:
                result = getattr(self, "_" + method)(node_id, *params)
            except _RpcError as exc:
                return FakeResponse(200, {"jsonrpc": "2.0", "id": body["id"], "error": {"code": exc.code, "message": exc.message}})
        return FakeResponse(200, {"jsonrpc": "2.0", "id": body["id"], "result": result})

    def methods(self) -> list[str]:
        return [method for _, method, _ in self.calls]

    # JSON-RPC methods

    def _transport_nodeName(self, node_id: str) -> str:
        return node_id

    def _ptx_resolveVerifier(self, node_id: str, name: str, algorithm: str, verifier_type: str) -> str:
        if name in self.unknown_keys:
            raise _RpcError(-32603, f"PD020: key not found for {name}")
        self.identity_nodes[name] = node_id
        return self.address_of(name)

    def _pgroup_createGroup(self, node_id: str, spec: dict[str, Any]) -> dict[str, Any]:
        group_id = f"0xgroup{next(self._ids):04d}"
        refs = set(spec["members"])
        members = {name for name in self.identity_nodes if name in refs or self.address_of(name) in refs}
        self.groups[group_id] = {
            "name": spec["name"],
            "members": members,
            "configuration": spec.get("configuration"),
            "polls": 0,
            "contract": None,
            "value": None,
        }
        return {"id": group_id, "name": spec["name"]}

    def _pgroup_getGroupById(self, node_id: str, domain: str, group_id: str) -> dict[str, Any]:
        group = self.groups[group_id]
        group["polls"] += 1
        if group["name"] in self.never_ready or group["polls"] < self.ready_after_polls:
            return {"id": group_id, "contractAddress": None}
        return {"id": group_id, "contractAddress": "0xgenesis" + group_id[2:]}

    def _pgroup_sendTransaction(self, node_id: str, tx: dict[str, Any]) -> str:
        group = self.groups.get(tx["group"])
        if group is None:
            raise _RpcError(-32603, "PD012: Privacy group not found")
        sender = tx["from"]
        tx_id = f"tx-{next(self._ids):04d}"
        if "bytecode" in tx:
            group["contract"] = "0xcontract" + tx["group"][2:]
            self._queue_receipt(tx_id, {"id": tx_id, "success": True, "contractAddress": group["contract"]})
            return tx_id
        if not self._allowed(group, sender, self.leaky_writers):
            raise _RpcError(-32603, f"PD012: sender {sender} is not a member of the privacy group")
        group["value"] = int(next(iter(tx["input"].values())))
        self._queue_receipt(tx_id, {"id": tx_id, "success": True, "transactionHash": "0x" + tx_id})
        return tx_id

    def _ptx_getTransactionReceipt(self, node_id: str, tx_id: str) -> dict[str, Any] | None:
        remaining = self.receipt_polls.get(tx_id, 0)
        if remaining > 0:
            self.receipt_polls[tx_id] = remaining - 1
            return None
        return self.receipts.get(tx_id)

    def _pgroup_call(self, node_id: str, call: dict[str, Any]) -> dict[str, Any]:
        group = self.groups[call["group"]]
        sender = call["from"]
        if (group["name"], sender) in self.flaky_readers:
            self.flaky_readers.discard((group["name"], sender))
            raise _RpcError(-32603, "PD011: access denied")
        if not self._allowed(group, sender, self.leaky_readers):
            raise _RpcError(-32603, f"access denied: {sender} is not a member")
        value = group["value"] if group["value"] is not None else 0
        return {"value": str(value)}

    def _allowed(self, group: dict[str, Any], sender: str, leaks: set[str]) -> bool:
        if sender in group["members"] or sender in leaks:
            return True
        if self.node_level_access:
            member_nodes = {self.identity_nodes.get(name) for name in group["members"]}
            return self.identity_nodes.get(sender) in member_nodes
        return False

    def _queue_receipt(self, tx_id: str, receipt: dict[str, Any]) -> None:
        self.receipts[tx_id] = receipt
        self.receipt_polls[tx_id] = max(0, self.receipt_after_polls - 1)


class _RpcError(Exception):
    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class FakeSession:
    def __init__(self, platform: FakePlatform) -> None:
        self.platform = platform

    def post(self, url: str, json: dict[str, Any], timeout: float) -> FakeResponse:
        return self.platform.handle(url, json)

    def close(self) -> None:
        with self.platform._lock:
            self.platform.sessions_closed += 1


ENDPOINTS = {
    "node1": "http://node1.test:31548",
    "node2": "http://node2.test:31648",
    "node3": "http://node3.test:31748",
}


def profile_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "profile_id": "test",
        "nodes": [{"id": node_id, "endpoint": endpoint} for node_id, endpoint in ENDPOINTS.items()],
        "identities": [
            {"name": "x@node1", "node": "node1", "labels": {"role": "lender"}},
            {"name": "z@node1", "node": "node1"},
            {"name": "y@node2", "node": "node2", "labels": {"role": "borrower"}},
            {"name": "w@node3", "node": "node3"},
        ],
        "groups": [
            {"name": "deal-a", "members": ["x@node1", "y@node2"]},
            {"name": "deal-b", "members": ["z@node1", "w@node3"]},
        ],
        "platform": {"domain": "pente"},
        "wiring": {
            "transport_retry_attempts": 2,
            "transport_retry_base_delay_seconds": 0.0,
            "ready_timeout_seconds": 5,
            "ready_poll_seconds": 0,
            "receipt_timeout_seconds": 5,
            "receipt_poll_seconds": 0,
            "group_parallelism": 2,
            "read_parallelism": 2,
            "read_repeats": 2,
        },
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform(ENDPOINTS)


@pytest.fixture
def artifact() -> ProbeArtifact:
    return ProbeArtifact(abi=STORAGE_ABI, bytecode="0x6080")


@pytest.fixture
def profile() -> HarnessProfile:
    return HarnessProfile(**profile_payload())


@pytest.fixture
def profile_factory():
    def _build(**overrides: Any) -> HarnessProfile:
        return HarnessProfile(**profile_payload(**overrides))

    return _build


@pytest.fixture
def profile_data():
    return profile_payload
