"""Privacy group authorization verification harness."""

from .config import HarnessProfile, load_profile
from .models import ActualOutcome, Classification, Decision, Identity, Operation, PrivacyGroup, TestCase
from .oracle import expect
from .runner import AuthzHarness, HarnessRunResult

__all__ = [
    "ActualOutcome",
    "AuthzHarness",
    "Classification",
    "Decision",
    "HarnessProfile",
    "HarnessRunResult",
    "Identity",
    "Operation",
    "PrivacyGroup",
    "TestCase",
    "expect",
    "load_profile",
]
