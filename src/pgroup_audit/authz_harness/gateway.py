"""JSON-RPC gateway to execution nodes.

Every call resolves to a value or a typed ``GatewayError``:

- ``TransportError``: the request never got an answer we can interpret
  (refused, timed out, HTTP 408/429/5xx, unparseable body), or the node
  answered with an error the gateway cannot classify (``ambiguous=True``).
- ``RejectedError``: the node understood the request and refused it.

Only genuine transport faults are retried. Rejections and unclassified
remote errors are surfaced immediately: a retry could turn an intermittent
breach into a false pass.
"""

from __future__ import annotations

import itertools
import logging
from typing import Any, Iterable

import requests

from .errors import GatewayError, RejectedError, TransportError, UnreachableError
from .retry import with_retry
from .topology import ConnectionHandle, NodeTopology


logger = logging.getLogger("pgroup_audit.authz_harness.gateway")

# Compatibility shim: the platform reports membership failures as free text
# only. Matching is case-insensitive substring against this fixed table until
# a structured error-code channel exists; configure `denial_error_codes` for
# platforms that already emit one.
DENIAL_PHRASES: tuple[str, ...] = (
    "not a member",
    "not authorized",
    "unauthorized",
    "access denied",
    "permission denied",
    "privacy group not found",
)

_RETRYABLE_STATUS = {408, 429}


class TransientTransportError(TransportError):
    """Transport fault eligible for the gateway's bounded retry."""


class RpcGateway:
    def __init__(
        self,
        topology: NodeTopology,
        *,
        denial_error_codes: Iterable[int] = (),
        denial_phrases: Iterable[str] | None = None,
        retry_attempts: int = 2,
        retry_base_delay_seconds: float = 0.5,
    ) -> None:
        self.topology = topology
        self.denial_error_codes = frozenset(int(code) for code in denial_error_codes)
        phrases = DENIAL_PHRASES if denial_phrases is None else tuple(denial_phrases)
        self.denial_phrases = tuple(phrase.strip().lower() for phrase in phrases if phrase.strip())
        self.retry_attempts = max(1, int(retry_attempts))
        self.retry_base_delay_seconds = max(0.0, float(retry_base_delay_seconds))
        self._ids = itertools.count(1)

    def invoke(self, node_id: str, method: str, params: list[Any]) -> Any:
        try:
            handle = self.topology.handle_for(node_id)
        except UnreachableError as exc:
            raise TransportError("NODE_UNREACHABLE", node_id) from exc

        def _on_retry(attempt: int, delay: float, exc: Exception) -> None:
            logger.warning(
                "gateway retry node=%s method=%s attempt=%s/%s delay=%.3fs reason=%s",
                node_id,
                method,
                attempt,
                self.retry_attempts,
                delay,
                exc,
            )

        return with_retry(
            lambda: self._invoke_once(handle, method, params),
            attempts=self.retry_attempts,
            base_delay_seconds=self.retry_base_delay_seconds,
            retry_on=(TransientTransportError,),
            on_retry=_on_retry,
        )

    def classify_error(self, error: Any) -> GatewayError:
        if not isinstance(error, dict):
            return self.classify_message(str(error))
        code = error.get("code")
        message = str(error.get("message") or "")
        if isinstance(code, int) and code in self.denial_error_codes:
            return RejectedError("DENIED_CODE", f"{code}:{message[:256]}")
        return self.classify_message(message)

    def classify_message(self, message: str) -> GatewayError:
        """Map free text to Rejected when it carries a known denial phrase, else ambiguous Transport."""
        lowered = (message or "").lower()
        for phrase in self.denial_phrases:
            if phrase in lowered:
                return RejectedError("DENIED_PHRASE", message[:256])
        return TransportError("UNCLASSIFIED_REMOTE_ERROR", message[:256] or None, ambiguous=True)

    def _invoke_once(self, handle: ConnectionHandle, method: str, params: list[Any]) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = handle.session.post(
                handle.node.endpoint,
                json=body,
                timeout=handle.request_timeout_seconds,
            )
        except requests.Timeout as exc:
            raise TransientTransportError("TIMEOUT", f"{handle.node.id}:{method}") from exc
        except requests.RequestException as exc:
            raise TransientTransportError("CONNECTION_FAILED", str(exc)[:256]) from exc

        status = int(response.status_code)
        if status in _RETRYABLE_STATUS or status >= 500:
            raise TransientTransportError(f"HTTP_{status}", method)
        try:
            payload = response.json()
        except ValueError as exc:
            if status >= 400:
                raise TransportError(f"HTTP_{status}", (response.text or "")[:256], ambiguous=True) from exc
            raise TransientTransportError("MALFORMED_RESPONSE", method) from exc
        if not isinstance(payload, dict):
            raise TransientTransportError("MALFORMED_RESPONSE", method)
        if payload.get("error") is not None:
            raise self.classify_error(payload["error"])
        if status >= 400:
            raise TransportError(f"HTTP_{status}", method, ambiguous=True)
        if "result" not in payload:
            raise TransientTransportError("MALFORMED_RESPONSE", method)
        return payload["result"]
