"""
Inspection maintenance routes.
On-demand triggers for the nightly consistency jobs: the duplicate-entry
merge pass and the read-only template drift audit.
"""
import logging
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from app.db import get_db, get_session_factory
from app.api.deps import get_progress_dictionary
from app.services.entry_dedup import deduplicate_with_active_rules
from app.services.perf_monitor import tracker
from app.services.progress_dictionary import ProgressDictionary
from app.services.template_auditor import run_template_audit

router = APIRouter(prefix="/api/v1/inspection-maintenance", tags=["Inspection Maintenance"])
logger = logging.getLogger("progress-api")


@router.post("/dedup")
async def run_dedup(
    dry_run: bool = False,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    Merge duplicate inspection entries.

    Each duplicate group is merged in its own transaction; the response lists
    every group as merged / skipped / failed (or planned with ``dry_run``).
    """
    report = await deduplicate_with_active_rules(session_factory, dry_run=dry_run)
    logger.info(f"Dedup triggered via API (dry_run={dry_run}): {report.counters()}")
    return report.to_dict()


@router.get("/template-audit")
async def template_audit(
    dictionary: ProgressDictionary = Depends(get_progress_dictionary),
    db: AsyncSession = Depends(get_db),
):
    """Template drift report. Never modifies data."""
    report = await run_template_audit(db, dictionary)
    return report.to_dict()


@router.get("/metrics")
async def maintenance_metrics():
    """Run counts, durations and outcome totals of the batch jobs in this process."""
    return tracker.get_metrics()
