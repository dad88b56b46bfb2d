#!/usr/bin/env python3
"""
Inspection Maintenance — run the consistency jobs by hand against DATABASE_URL.

Usage:
    python scripts/inspection_maintenance.py dedup               # Merge duplicate entries
    python scripts/inspection_maintenance.py dedup --dry-run     # Print the merge plan only
    python scripts/inspection_maintenance.py audit               # Template drift report (JSON)
    python scripts/inspection_maintenance.py audit --strict      # Exit 1 when drift is found

Exit status is 1 when any dedup group failed (or drift was found with --strict).
"""

import asyncio
import json
import logging
import os
import sys
import warnings

_BACKEND_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "backend")
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)

from dotenv import load_dotenv  # noqa: E402

load_dotenv()

from app.services.logging_config import setup_logging  # noqa: E402

# ANSI colors
RED = "\033[91m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
CYAN = "\033[96m"
BOLD = "\033[1m"
RESET = "\033[0m"

USAGE = "usage: inspection_maintenance.py {dedup [--dry-run] | audit [--strict]}"


async def run_dedup(dry_run: bool) -> int:
    from app.db import batch_session_factory
    from app.services.entry_dedup import OUTCOME_FAILED, deduplicate_with_active_rules

    async with batch_session_factory() as session_factory:
        report = await deduplicate_with_active_rules(session_factory, dry_run=dry_run)

    label = "Dedup plan" if dry_run else "Dedup pass"
    print(f"{CYAN}{BOLD}{label}{RESET}: scanned {report.scanned}, normalized {report.normalized}")
    for group in report.groups:
        color = RED if group.status == OUTCOME_FAILED else GREEN
        print(
            f"  {color}{group.status:<8}{RESET} keeper {group.keeper_id} <- {group.source_ids} "
            f"types={group.final_types}"
            + (f" {RED}{group.error}{RESET}" if group.error else "")
        )
    if report.normalize_error:
        print(f"{YELLOW}Normalization pass failed: {report.normalize_error}{RESET}")

    failed = report.count(OUTCOME_FAILED)
    if failed:
        print(f"\n{RED}{BOLD}[FAIL] {failed} group(s) failed{RESET}\n")
        return 1
    print(f"\n{GREEN}{BOLD}[OK] {report.counters()}{RESET}\n")
    return 0


async def run_audit(strict: bool) -> int:
    from app.db import batch_session_factory
    from app.services.progress_dictionary import get_dictionary
    from app.services.template_auditor import run_template_audit

    async with batch_session_factory() as session_factory:
        async with session_factory() as session:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                report = await run_template_audit(session, get_dictionary())

    print(json.dumps(report.to_dict(), ensure_ascii=False, indent=2, default=str))
    if report.has_drift:
        print(f"\n{YELLOW}{BOLD}[DRIFT] {len(report.violations)} violation(s){RESET}\n", file=sys.stderr)
        return 1 if strict else 0
    print(f"\n{GREEN}{BOLD}[OK] No template drift{RESET}\n", file=sys.stderr)
    return 0


def main():
    setup_logging(level=os.getenv("LOG_LEVEL", "WARNING"), json_output=False)
    logging.getLogger("progress-api.perf").setLevel(logging.WARNING)

    if len(sys.argv) < 2 or sys.argv[1] not in ("dedup", "audit"):
        print(USAGE, file=sys.stderr)
        sys.exit(2)

    if sys.argv[1] == "dedup":
        code = asyncio.run(run_dedup(dry_run="--dry-run" in sys.argv))
    else:
        code = asyncio.run(run_audit(strict="--strict" in sys.argv))
    sys.exit(code)


if __name__ == "__main__":
    main()
