"""Authorization harness CLI."""

from __future__ import annotations

import argparse
import json
import logging
import os
from pathlib import Path

from pgroup_audit.platform_runtime import resolve_run_id, run_log_paths

from .config import load_profile
from .errors import HarnessError, reason_code
from .logging_utils import configure_logging
from .runner import AuthzHarness

# 0 clean, 1 breach or inconclusive, 3 nothing probed (see reporter).
EXIT_FATAL = 2


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Privacy group authorization verification harness")
    parser.add_argument(
        "--profile",
        default=os.getenv("AUTHZ_HARNESS_PROFILE", "config/harness/local_parity.yaml"),
        help="Path to harness profile YAML",
    )
    parser.add_argument("--run-id", default=None, help="Explicit run id (else PLATFORM_RUN_ID / ACTIVE_RUN_ID)")
    parser.add_argument("--output-path", default=None, help="Report path override")
    parser.add_argument("--log-level", default=os.getenv("AUTHZ_HARNESS_LOG_LEVEL", "INFO"))
    args = parser.parse_args(argv)

    run_id = args.run_id or resolve_run_id(create_if_missing=True)
    configure_logging(getattr(logging, str(args.log_level).upper(), logging.INFO), run_log_paths(run_id))
    logger = logging.getLogger("pgroup_audit.authz_harness.cli")
    try:
        profile = load_profile(Path(args.profile))
        harness = AuthzHarness.build(profile, run_id=str(run_id))
        result = harness.run(output_path=Path(args.output_path) if args.output_path else None)
    except HarnessError as exc:
        logger.error("run aborted reason=%s", exc)
        print(json.dumps({"run_id": run_id, "verdict": "ABORTED", "reason": reason_code(exc), "detail": str(exc)}, sort_keys=True))
        return EXIT_FATAL
    print(
        json.dumps(
            {
                "run_id": run_id,
                "verdict": result.report["verdict"],
                "summary": result.report["summary"],
                "report_path": str(result.report_path),
            },
            sort_keys=True,
        )
    )
    return result.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
