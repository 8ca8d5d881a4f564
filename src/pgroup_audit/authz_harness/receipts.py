"""Bounded receipt polling shared by probe deployment and the write commit barrier."""

from __future__ import annotations

import logging
import time
from typing import Any

from .errors import ConfirmationTimeoutError, RejectedError, TransportError
from .gateway import RpcGateway


logger = logging.getLogger("pgroup_audit.authz_harness.receipts")


def await_receipt(
    gateway: RpcGateway,
    node_id: str,
    tx_id: str,
    *,
    timeout_seconds: float,
    poll_seconds: float,
) -> dict[str, Any]:
    """Poll for ``tx_id``'s receipt on ``node_id`` until it exists or the deadline passes.

    Transport faults while polling are tolerated until the deadline; a rejection
    is authoritative and propagates immediately.
    """
    deadline = time.monotonic() + max(0.0, timeout_seconds)
    last_error: str | None = None
    while True:
        try:
            receipt = gateway.invoke(node_id, "ptx_getTransactionReceipt", [tx_id])
        except RejectedError:
            raise
        except TransportError as exc:
            last_error = str(exc)
            receipt = None
        if isinstance(receipt, dict) and receipt:
            return receipt
        if time.monotonic() >= deadline:
            detail = f"{tx_id}:{last_error}" if last_error else tx_id
            raise ConfirmationTimeoutError("RECEIPT_TIMEOUT", detail)
        logger.debug("receipt pending node=%s tx=%s", node_id, tx_id)
        time.sleep(poll_seconds)


def receipt_failed(receipt: dict[str, Any]) -> bool:
    return receipt.get("success") is False


def failure_message(receipt: dict[str, Any]) -> str:
    return str(receipt.get("failureMessage") or receipt.get("failure_message") or "receipt reported failure")
