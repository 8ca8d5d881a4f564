"""Contract invocation proxy: group-scoped store/retrieve calls from a given identity."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from .config import ProbeArtifact
from .errors import ConfirmationTimeoutError, RejectedError, TransportError
from .gateway import RpcGateway
from .models import ActualOutcome, Identity, PrivacyGroup
from .receipts import await_receipt, failure_message, receipt_failed


logger = logging.getLogger("pgroup_audit.authz_harness.proxy")


@dataclass(frozen=True)
class ContractRef:
    group_name: str
    group_id: str
    contract_address: str

    @classmethod
    def of(cls, group: PrivacyGroup) -> "ContractRef":
        if not group.eligible or group.id is None or group.contract_address is None:
            raise ValueError(f"group {group.name} is not ready for probing (status={group.status.value})")
        return cls(group_name=group.name, group_id=group.id, contract_address=group.contract_address)


class ContractInvocationProxy:
    def __init__(
        self,
        gateway: RpcGateway,
        artifact: ProbeArtifact,
        *,
        domain: str = "pente",
        store_function: str = "store",
        retrieve_function: str = "retrieve",
        receipt_timeout_seconds: float = 30.0,
        receipt_poll_seconds: float = 1.0,
    ) -> None:
        self.gateway = gateway
        self.domain = domain
        self.store_abi = artifact.function(store_function)
        self.retrieve_abi = artifact.function(retrieve_function)
        self.receipt_timeout_seconds = receipt_timeout_seconds
        self.receipt_poll_seconds = receipt_poll_seconds

    def write(self, group: PrivacyGroup, identity: Identity, value: int) -> ActualOutcome:
        """Submit ``store(value)`` and hold until its receipt confirms (the commit barrier)."""
        ref = ContractRef.of(group)
        transaction = {
            "domain": self.domain,
            "group": ref.group_id,
            "from": identity.signing_handle,
            "to": ref.contract_address,
            "function": self.store_abi,
            "input": self._store_input(value),
        }
        try:
            tx_id = self.gateway.invoke(identity.home_node_id, "pgroup_sendTransaction", [transaction])
        except RejectedError as exc:
            return ActualOutcome.denied(str(exc))
        except TransportError as exc:
            return ActualOutcome.transport_error(str(exc), ambiguous=exc.ambiguous)
        if not tx_id:
            return ActualOutcome.transport_error("TX_ID_MISSING", ambiguous=True)
        return self.commit_barrier(identity, str(tx_id))

    def commit_barrier(self, identity: Identity, tx_id: str) -> ActualOutcome:
        try:
            receipt = await_receipt(
                self.gateway,
                identity.home_node_id,
                tx_id,
                timeout_seconds=self.receipt_timeout_seconds,
                poll_seconds=self.receipt_poll_seconds,
            )
        except RejectedError as exc:
            return ActualOutcome.denied(str(exc))
        except ConfirmationTimeoutError as exc:
            logger.warning("commit barrier timed out identity=%s tx=%s", identity.name, tx_id)
            return ActualOutcome.transport_error(str(exc))
        if receipt_failed(receipt):
            error = self.gateway.classify_message(failure_message(receipt))
            if isinstance(error, RejectedError):
                return ActualOutcome.denied(str(error))
            return ActualOutcome.transport_error(str(error), ambiguous=True)
        return ActualOutcome.success()

    def read(self, group: PrivacyGroup, identity: Identity) -> ActualOutcome:
        ref = ContractRef.of(group)
        call = {
            "domain": self.domain,
            "group": ref.group_id,
            "from": identity.signing_handle,
            "to": ref.contract_address,
            "function": self.retrieve_abi,
            "input": {},
        }
        try:
            result = self.gateway.invoke(identity.home_node_id, "pgroup_call", [call])
        except RejectedError as exc:
            return ActualOutcome.denied(str(exc))
        except TransportError as exc:
            return ActualOutcome.transport_error(str(exc), ambiguous=exc.ambiguous)
        try:
            return ActualOutcome.success(decode_value(result))
        except ValueError as exc:
            return ActualOutcome.transport_error(f"UNDECODABLE_RESULT:{exc}", ambiguous=True)

    def _store_input(self, value: int) -> dict[str, Any] | list[Any]:
        inputs = self.store_abi.get("inputs") or []
        name = inputs[0].get("name") if inputs else None
        if name:
            return {name: str(value)}
        return [str(value)]


def decode_value(result: Any) -> Any:
    """Extract the single retrieved value from a call result; integers are normalized."""
    raw = result
    if isinstance(raw, dict):
        if "value" in raw:
            raw = raw["value"]
        elif "0" in raw:
            raw = raw["0"]
        elif len(raw) == 1:
            raw = next(iter(raw.values()))
        else:
            raise ValueError(f"ambiguous result fields {sorted(raw)}")
    elif isinstance(raw, (list, tuple)):
        if len(raw) != 1:
            raise ValueError(f"expected one output, got {len(raw)}")
        raw = raw[0]
    if raw is None:
        raise ValueError("empty result")
    if isinstance(raw, bool):
        raise ValueError("boolean result")
    if isinstance(raw, int):
        return raw
    text = str(raw).strip()
    try:
        if text.lower().startswith("0x"):
            return int(text, 16)
        return int(text)
    except ValueError:
        return text
