"""
Top-level package for the pgroup-audit project.

The authorization verification harness lives under
`pgroup_audit.authz_harness`; run scoping helpers shared by every component
live in `pgroup_audit.platform_runtime`.
"""

__all__: list[str] = []
