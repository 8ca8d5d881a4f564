"""Authorization oracle: the declared-membership ground truth.

Decisions come from the group's declared member set alone. The oracle never
asks the platform anything; otherwise the system under test would grade
itself.
"""

from __future__ import annotations

from .models import Decision, Identity, Operation, PrivacyGroup


def expect(group: PrivacyGroup, identity: Identity, operation: Operation) -> Decision:
    """Allow iff ``identity`` is a declared member, uniformly for reads and writes."""
    if not isinstance(operation, Operation):
        raise TypeError(f"unsupported operation: {operation!r}")
    return Decision.ALLOW if identity.name in group.members else Decision.DENY


def expectations(group: PrivacyGroup, identities: list[Identity]) -> dict[tuple[str, Operation], Decision]:
    return {
        (identity.name, operation): expect(group, identity, operation)
        for identity in identities
        for operation in Operation
    }
