"""
Celery Tasks — nightly consistency jobs.

- deduplicate_inspection_entries: merge duplicate entries, one transaction per group
- audit_phase_templates: read-only template drift report

Both are re-entrant: a run stopped partway simply leaves fewer groups for the next one.
"""
import logging
import asyncio
import warnings
from app.workers.celery_app import celery_app

logger = logging.getLogger("progress-celery")


def _run_async(coro):
    """Run an async coroutine in a sync Celery task context (new event loop)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@celery_app.task(bind=True, name="tasks.deduplicate_inspection_entries")
def deduplicate_inspection_entries(self, dry_run: bool = False):
    """Merge duplicate inspection entries; returns the per-group report."""
    self.update_state(state="PROGRESS", meta={"step": "Scanning inspection entries"})

    async def _run():
        from app.db import batch_session_factory
        from app.services.entry_dedup import deduplicate_with_active_rules
        async with batch_session_factory() as session_factory:
            return await deduplicate_with_active_rules(session_factory, dry_run=dry_run)

    report = _run_async(_run())
    counters = report.counters()
    if counters["failed"]:
        logger.error(f"Dedup finished with {counters['failed']} failed group(s): {counters}")
    else:
        logger.info(f"Dedup finished: {counters}")
    return report.to_dict()


@celery_app.task(bind=True, name="tasks.audit_phase_templates")
def audit_phase_templates(self):
    """Template drift audit; returns the structured report."""
    self.update_state(state="PROGRESS", meta={"step": "Auditing phase templates"})

    async def _run():
        from app.db import batch_session_factory
        from app.services.progress_dictionary import get_dictionary
        from app.services.template_auditor import run_template_audit
        async with batch_session_factory() as session_factory:
            async with session_factory() as session:
                return await run_template_audit(session, get_dictionary())

    # Drift is reported in the task result; the warning itself is only logged
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        report = _run_async(_run())
    return report.to_dict()
