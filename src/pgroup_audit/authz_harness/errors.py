"""Harness error taxonomy and helpers."""

from __future__ import annotations


class HarnessError(RuntimeError):
    """Stable error surfaced as a reason code."""

    def __init__(self, code: str, detail: str | None = None) -> None:
        self.code = code
        self.detail = detail
        message = f"{code}:{detail}" if detail else code
        super().__init__(message)


class ConfigError(HarnessError):
    """Harness profile is missing or invalid. Fatal to the run."""


class ResolutionError(HarnessError):
    """A node could not produce a signing handle for an identity. Fatal to the run."""


class UnreachableError(HarnessError):
    """Connection to a node was refused or timed out."""


class TopologyError(HarnessError):
    """A group names an identity homed on an unreachable node. Fatal for that group only."""


class ConfirmationTimeoutError(HarnessError):
    """A group did not reach Ready within the bounded wait."""


class ProbeDeploymentError(HarnessError):
    """The probe contract could not be deployed into a group."""


class GatewayError(HarnessError):
    kind = "GATEWAY"


class TransportError(GatewayError):
    """Connection, timeout, malformed response, or an unclassifiable remote error."""

    kind = "TRANSPORT"

    def __init__(self, code: str, detail: str | None = None, *, ambiguous: bool = False) -> None:
        super().__init__(code, detail)
        self.ambiguous = ambiguous


class RejectedError(GatewayError):
    """The endpoint understood the request and explicitly refused it."""

    kind = "REJECTED"


def reason_code(exc: Exception) -> str:
    if isinstance(exc, HarnessError):
        return exc.code
    text = str(exc or "").strip()
    if text.isupper():
        return text
    if ":" in text:
        head = text.split(":", 1)[0].strip()
        if head.isupper():
            return head
    return "INTERNAL_ERROR"
