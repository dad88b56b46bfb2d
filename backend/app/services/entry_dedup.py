"""
Inspection Entry Deduplicator — collapses rows that denote the same physical
work item into one surviving row.

Pipeline:
  1. normalize_entry  — re-canonicalize layer / check and re-clamp types
                        (the dictionary may have grown since the row was written)
  2. plan_merges      — group on EntryKey, keeper = smallest id, fold the
                        sources into the keeper with the named reducers below
  3. run_deduplication — apply each plan in its own transaction; a failing
                        group is reported and never aborts its siblings

Running the pipeline twice with no writes in between is a no-op the second time.
"""
from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime
from typing import Iterable, Optional, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.models.orm_models import InspectionEntry, RoadPhase
from app.services.inspection_errors import MergeTransactionFailure
from app.services.perf_monitor import timed_async, tracker
from app.services.progress_dictionary import ProgressDictionary, get_dictionary, normalize_key
from app.services.type_rules import TypeRuleResolver, load_type_rule_resolver

logger = logging.getLogger("progress-dedup")

OUTCOME_MERGED = "merged"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"
OUTCOME_PLANNED = "planned"


@dataclass(frozen=True)
class EntryKey:
    """Natural key of an inspection entry after canonicalization."""
    road_id: int
    phase_id: int
    side: str
    start_pk: float
    end_pk: float
    layer_key: str
    check_key: str


@dataclass
class EntrySnapshot:
    """The fields of one entry that dedup reads and writes."""
    id: int
    road_id: int
    phase_id: int
    side: str
    start_pk: float
    end_pk: float
    layer_name: str
    check_name: str
    types: list[str] = field(default_factory=list)
    remark: Optional[str] = None
    appointment_date: Optional[datetime] = None
    submission_order: Optional[int] = None
    phase_definition_id: Optional[int] = None

    @classmethod
    def from_row(cls, row: InspectionEntry, phase_definition_id: Optional[int] = None) -> "EntrySnapshot":
        return cls(
            id=row.id,
            road_id=row.road_id,
            phase_id=row.phase_id,
            side=row.side,
            start_pk=row.start_pk,
            end_pk=row.end_pk,
            layer_name=row.layer_name or "",
            check_name=row.check_name or "",
            types=list(row.types or []),
            remark=row.remark,
            appointment_date=row.appointment_date,
            submission_order=row.submission_order,
            phase_definition_id=phase_definition_id,
        )

    def key(self) -> EntryKey:
        return EntryKey(
            road_id=self.road_id,
            phase_id=self.phase_id,
            side=self.side,
            start_pk=self.start_pk,
            end_pk=self.end_pk,
            layer_key=normalize_key(self.layer_name),
            check_key=normalize_key(self.check_name),
        )


@dataclass
class MergePlan:
    key: EntryKey
    keeper_id: int
    source_ids: list[int]
    layer_name: str
    check_name: str
    final_types: list[str]
    merged_remark: Optional[str]
    merged_appointment_date: Optional[datetime]
    merged_submission_order: Optional[int]


@dataclass
class GroupOutcome:
    key: EntryKey
    keeper_id: int
    source_ids: list[int]
    status: str
    final_types: list[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "key": asdict(self.key),
            "keeper_id": self.keeper_id,
            "source_ids": list(self.source_ids),
            "status": self.status,
            "final_types": list(self.final_types),
            "error": self.error,
        }


@dataclass
class DedupReport:
    dry_run: bool = False
    scanned: int = 0
    normalized: int = 0
    normalize_error: Optional[str] = None
    groups: list[GroupOutcome] = field(default_factory=list)
    duration_ms: float = 0.0

    def count(self, status: str) -> int:
        return sum(1 for g in self.groups if g.status == status)

    @property
    def removed(self) -> int:
        return sum(len(g.source_ids) for g in self.groups if g.status == OUTCOME_MERGED)

    def counters(self) -> dict[str, int]:
        return {
            "scanned": self.scanned,
            "normalized": self.normalized,
            OUTCOME_MERGED: self.count(OUTCOME_MERGED),
            OUTCOME_SKIPPED: self.count(OUTCOME_SKIPPED),
            OUTCOME_FAILED: self.count(OUTCOME_FAILED),
            OUTCOME_PLANNED: self.count(OUTCOME_PLANNED),
            "removed": self.removed,
        }

    def to_dict(self) -> dict:
        return {
            "dry_run": self.dry_run,
            "summary": self.counters(),
            "normalize_error": self.normalize_error,
            "duration_ms": self.duration_ms,
            "groups": [g.to_dict() for g in self.groups],
        }


# ── Field reducers ─────────────────────────────────────────────────────────────
# Each takes values ordered keeper first, then sources oldest → newest.

def first_non_empty_remark(remarks: Iterable[Optional[str]]) -> Optional[str]:
    """First remark with visible text, trimmed."""
    for remark in remarks:
        if isinstance(remark, str) and remark.strip():
            return remark.strip()
    return None


def first_valid_date(dates: Iterable[Optional[datetime]]) -> Optional[datetime]:
    for value in dates:
        if isinstance(value, (datetime, date)):
            return value
    return None


def first_submission_order(orders: Iterable[Optional[int]]) -> Optional[int]:
    for value in orders:
        if value is not None:
            return value
    return None


def fold_types(
    resolver: TypeRuleResolver,
    check_name: str,
    keeper_types: Sequence[str],
    source_types: Iterable[Sequence[str]],
    phase_definition_id: Optional[int] = None,
) -> list[str]:
    """
    Keeper types merged with every source in order. When a governing set
    exists it is returned verbatim instead of the folded union.
    """
    governing = resolver.allowed_types(check_name, phase_definition_id)
    if governing is not None:
        return governing
    acc = list(keeper_types)
    for types in source_types:
        acc = resolver.merge_types(check_name, acc, types, phase_definition_id)
    return acc


# ── Planning (pure) ────────────────────────────────────────────────────────────

def normalize_entry(
    entry: EntrySnapshot,
    dictionary: ProgressDictionary,
    resolver: TypeRuleResolver,
) -> EntrySnapshot:
    layer_name = dictionary.canonical_term("layer", entry.layer_name)
    check_name = dictionary.canonical_term("check", entry.check_name)
    types = resolver.clamp_types(check_name, entry.types, entry.phase_definition_id)
    return replace(entry, layer_name=layer_name, check_name=check_name, types=types)


def needs_update(before: EntrySnapshot, after: EntrySnapshot) -> bool:
    return (
        before.layer_name != after.layer_name
        or before.check_name != after.check_name
        or list(before.types) != list(after.types)
    )


def group_entries(entries: Iterable[EntrySnapshot]) -> dict[EntryKey, list[EntrySnapshot]]:
    groups: dict[EntryKey, list[EntrySnapshot]] = {}
    for entry in entries:
        groups.setdefault(entry.key(), []).append(entry)
    return groups


def plan_merges(entries: Iterable[EntrySnapshot], resolver: TypeRuleResolver) -> list[MergePlan]:
    """Merge plans for every group of more than one entry, ordered by keeper id."""
    plans: list[MergePlan] = []
    for key, members in group_entries(entries).items():
        if len(members) < 2:
            continue
        ordered = sorted(members, key=lambda e: e.id)
        keeper, sources = ordered[0], ordered[1:]
        plans.append(
            MergePlan(
                key=key,
                keeper_id=keeper.id,
                source_ids=[s.id for s in sources],
                layer_name=keeper.layer_name,
                check_name=keeper.check_name,
                final_types=fold_types(
                    resolver,
                    keeper.check_name,
                    keeper.types,
                    (s.types for s in sources),
                    keeper.phase_definition_id,
                ),
                merged_remark=first_non_empty_remark(e.remark for e in ordered),
                merged_appointment_date=first_valid_date(e.appointment_date for e in ordered),
                merged_submission_order=first_submission_order(e.submission_order for e in ordered),
            )
        )
    plans.sort(key=lambda p: p.keeper_id)
    return plans


# ── Persistence ────────────────────────────────────────────────────────────────

async def _load_snapshots(session_factory: async_sessionmaker) -> list[EntrySnapshot]:
    async with session_factory() as session:
        result = await session.execute(
            select(InspectionEntry, RoadPhase.phase_definition_id)
            .join(RoadPhase, InspectionEntry.phase_id == RoadPhase.id, isouter=True)
            .order_by(InspectionEntry.id)
        )
        return [EntrySnapshot.from_row(row, definition_id) for row, definition_id in result.all()]


async def _persist_normalized(session_factory: async_sessionmaker, changed: list[EntrySnapshot]) -> None:
    async with session_factory() as session:
        async with session.begin():
            for entry in changed:
                await session.execute(
                    update(InspectionEntry)
                    .where(InspectionEntry.id == entry.id)
                    .values(layer_name=entry.layer_name, check_name=entry.check_name, types=entry.types)
                    .execution_options(synchronize_session=False)
                )


async def apply_merge(session_factory: async_sessionmaker, plan: MergePlan) -> GroupOutcome:
    """
    Update the keeper and delete the sources in one transaction.

    A keeper that no longer exists (a concurrent pass or a user delete got
    there first) leaves the group untouched and reports it as skipped.
    """
    outcome = GroupOutcome(
        key=plan.key,
        keeper_id=plan.keeper_id,
        source_ids=list(plan.source_ids),
        status=OUTCOME_MERGED,
        final_types=list(plan.final_types),
    )
    try:
        async with session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(InspectionEntry)
                    .where(InspectionEntry.id == plan.keeper_id)
                    .values(
                        layer_name=plan.layer_name,
                        check_name=plan.check_name,
                        types=plan.final_types,
                        remark=plan.merged_remark,
                        appointment_date=plan.merged_appointment_date,
                        submission_order=plan.merged_submission_order,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    outcome.status = OUTCOME_SKIPPED
                    return outcome
                # Sources already removed by a concurrent pass delete zero rows
                await session.execute(
                    delete(InspectionEntry)
                    .where(InspectionEntry.id.in_(plan.source_ids))
                    .execution_options(synchronize_session=False)
                )
    except Exception as exc:
        failure = MergeTransactionFailure(plan.keeper_id, plan.source_ids, exc)
        logger.error(
            failure.message,
            extra={"group_key": asdict(plan.key), "keeper_id": plan.keeper_id, "removed_ids": plan.source_ids},
        )
        outcome.status = OUTCOME_FAILED
        outcome.error = failure.message
        return outcome

    logger.info(
        f"Merged {len(plan.source_ids)} duplicate(s) into entry {plan.keeper_id}",
        extra={"group_key": asdict(plan.key), "keeper_id": plan.keeper_id, "removed_ids": plan.source_ids},
    )
    return outcome


@timed_async
async def run_deduplication(
    session_factory: async_sessionmaker,
    dictionary: ProgressDictionary,
    resolver: TypeRuleResolver,
    dry_run: bool = False,
) -> DedupReport:
    """Normalize, group and merge every inspection entry. Never raises for a single group."""
    start = time.perf_counter()
    report = DedupReport(dry_run=dry_run)

    snapshots = await _load_snapshots(session_factory)
    report.scanned = len(snapshots)

    normalized = [normalize_entry(entry, dictionary, resolver) for entry in snapshots]
    changed = [after for before, after in zip(snapshots, normalized) if needs_update(before, after)]
    report.normalized = len(changed)
    if changed and not dry_run:
        try:
            await _persist_normalized(session_factory, changed)
        except Exception as exc:
            # Merges still write canonical names onto their keepers
            logger.error(f"Normalization pass failed for {len(changed)} entries: {exc}")
            report.normalize_error = str(exc)

    for plan in plan_merges(normalized, resolver):
        if dry_run:
            report.groups.append(
                GroupOutcome(
                    key=plan.key,
                    keeper_id=plan.keeper_id,
                    source_ids=list(plan.source_ids),
                    status=OUTCOME_PLANNED,
                    final_types=list(plan.final_types),
                )
            )
            continue
        report.groups.append(await apply_merge(session_factory, plan))

    report.duration_ms = round((time.perf_counter() - start) * 1000, 2)
    tracker.record_run("dedup", report.duration_ms, report.counters())
    logger.info(
        f"Dedup {'plan' if dry_run else 'pass'} complete: {report.counters()}",
        extra={"duration_ms": report.duration_ms},
    )
    return report


async def deduplicate_with_active_rules(session_factory: async_sessionmaker, dry_run: bool = False) -> DedupReport:
    """Batch entry point: process dictionary + rules from the active workflow templates."""
    dictionary = get_dictionary()
    async with session_factory() as session:
        resolver = await load_type_rule_resolver(session, dictionary)
    try:
        return await run_deduplication(session_factory, dictionary, resolver, dry_run=dry_run)
    except Exception:
        tracker.record_error("dedup")
        raise
