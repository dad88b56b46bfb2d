"""
test_entry_dedup.py — Tests for the inspection entry deduplicator.

Tests cover:
  - Field reducers: remark, appointment date, submission order
  - normalize_entry / plan_merges: keeper choice, grouping key, type folding
  - run_deduplication against SQLite: end-to-end merge, idempotence,
    dry run, normalization write-back, per-group failure isolation
  - apply_merge: vanished keeper reported as skipped
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from app.config import FIXED_INSPECTION_TYPES
from app.models.orm_models import InspectionEntry
from app.services import entry_dedup
from app.services.entry_dedup import (
    OUTCOME_FAILED,
    OUTCOME_MERGED,
    OUTCOME_PLANNED,
    OUTCOME_SKIPPED,
    EntrySnapshot,
    apply_merge,
    deduplicate_with_active_rules,
    first_non_empty_remark,
    first_submission_order,
    first_valid_date,
    normalize_entry,
    plan_merges,
    run_deduplication,
)
from app.services.perf_monitor import tracker
from app.services.type_rules import TypeRuleResolver


def _snapshot(entry_id, **fields):
    values = dict(
        id=entry_id, road_id=1, phase_id=1, side="LEFT", start_pk=0.0, end_pk=100.0,
        layer_name="底基层", check_name="压实度验收", types=["现场验收"],
    )
    values.update(fields)
    return EntrySnapshot(**values)


async def _count(session_factory):
    async with session_factory() as s:
        return await s.scalar(select(func.count()).select_from(InspectionEntry))


async def _get(session_factory, entry_id):
    async with session_factory() as s:
        return await s.get(InspectionEntry, entry_id)


# ===========================================================================
# Class 1: Reducers
# ===========================================================================

class TestReducers:

    def test_first_non_empty_remark_trimmed(self):
        assert first_non_empty_remark([None, "", "   ", " ok ", "later"]) == "ok"

    def test_all_blank_remarks(self):
        assert first_non_empty_remark(["", None, "  "]) is None

    def test_first_valid_date_skips_invalid(self):
        when = datetime(2024, 5, 1, tzinfo=timezone.utc)
        assert first_valid_date([None, "2024-01-01", when]) == when

    def test_first_submission_order_keeps_zero(self):
        assert first_submission_order([None, 0, 3]) == 0


# ===========================================================================
# Class 2: Planning
# ===========================================================================

class TestPlanning:

    def test_normalize_entry_canonicalizes(self, dictionary, resolver):
        raw = _snapshot(1, layer_name=" Fondation ", check_name="Proctor", types=["GENIE CIVIL", "geotechnique"])
        normalized = normalize_entry(raw, dictionary, resolver)
        assert normalized.layer_name == "底基层"
        assert normalized.check_name == "压实度验收"
        assert normalized.types == ["现场验收", "试验验收"]

    def test_normalize_entry_clamps_to_override(self, dictionary, resolver):
        raw = _snapshot(1, check_name="Coffrage", types=["现场验收", "测量验收"])
        assert normalize_entry(raw, dictionary, resolver).types == ["现场验收"]

    def test_keeper_is_smallest_id(self, resolver):
        plans = plan_merges([_snapshot(9), _snapshot(4), _snapshot(6)], resolver)
        assert len(plans) == 1
        assert plans[0].keeper_id == 4
        assert plans[0].source_ids == [6, 9]

    def test_singletons_not_planned(self, resolver):
        entries = [_snapshot(1), _snapshot(2, side="RIGHT"), _snapshot(3, end_pk=150.0)]
        assert plan_merges(entries, resolver) == []

    def test_governed_check_takes_governing_set(self, resolver):
        entries = [
            _snapshot(1, check_name="钢筋绑扎验收", types=["现场验收"]),
            _snapshot(2, check_name="钢筋绑扎验收", types=["现场验收"]),
        ]
        assert plan_merges(entries, resolver)[0].final_types == ["现场验收", "测量验收"]

    def test_ungoverned_check_folds_union(self, dictionary):
        rules = TypeRuleResolver(dictionary, overrides={})
        entries = [
            _snapshot(1, check_name="Contrôle libre", types=["A"]),
            _snapshot(2, check_name="Contrôle libre", types=["B", "A"]),
            _snapshot(3, check_name="Contrôle libre", types=["C"]),
        ]
        assert plan_merges(entries, rules)[0].final_types == ["A", "B", "C"]

    def test_merged_fields_prefer_keeper(self, resolver):
        early = datetime(2024, 3, 1, tzinfo=timezone.utc)
        entries = [
            _snapshot(2, remark="", appointment_date=None, submission_order=None),
            _snapshot(1, remark="keeper note", appointment_date=None, submission_order=None),
            _snapshot(3, remark="later", appointment_date=early, submission_order=5),
        ]
        plan = plan_merges(entries, resolver)[0]
        assert plan.merged_remark == "keeper note"
        assert plan.merged_appointment_date == early
        assert plan.merged_submission_order == 5

    def test_plans_sorted_by_keeper(self, resolver):
        entries = [
            _snapshot(10, side="RIGHT"), _snapshot(11, side="RIGHT"),
            _snapshot(3), _snapshot(5),
        ]
        assert [p.keeper_id for p in plan_merges(entries, resolver)] == [3, 10]


# ===========================================================================
# Class 3: Dedup runs against the database
# ===========================================================================

class TestRunDeduplication:

    async def test_end_to_end_merge(self, session_factory, seeded, insert_entry, french_dictionary):
        """Two spellings of one Fondation / Épaisseur entry collapse into one with both types."""
        rules = TypeRuleResolver(french_dictionary, overrides={})
        common = dict(road_id=seeded.road_id, phase_id=seeded.base_course_phase_id, side="LEFT",
                      start_pk=0.0, end_pk=100.0)
        first = await insert_entry(layer_name="Fondation", check_name="Épaisseur", types=["Visuel"],
                                   remark="ok", **common)
        second = await insert_entry(layer_name="fondation ", check_name="Epaisseur", types=["Géométrie"],
                                    remark="", **common)

        report = await run_deduplication(session_factory, french_dictionary, rules)

        assert report.count(OUTCOME_MERGED) == 1
        assert report.removed == 1
        assert await _count(session_factory) == 1
        survivor = await _get(session_factory, first)
        assert survivor is not None
        assert set(survivor.types) == {"Visuel", "Géométrie"}
        assert survivor.remark == "ok"
        assert survivor.layer_name == "Fondation"
        assert await _get(session_factory, second) is None

    async def test_second_run_is_noop(self, session_factory, seeded, insert_entry, dictionary, resolver):
        common = dict(road_id=seeded.road_id, phase_id=seeded.base_course_phase_id)
        await insert_entry(check_name="Proctor", **common)
        await insert_entry(check_name="压实度验收", types=["测量验收"], **common)

        first = await run_deduplication(session_factory, dictionary, resolver)
        second = await run_deduplication(session_factory, dictionary, resolver)

        assert first.count(OUTCOME_MERGED) == 1
        assert second.groups == []
        assert second.normalized == 0
        assert await _count(session_factory) == 1

    async def test_dry_run_writes_nothing(self, session_factory, seeded, insert_entry, dictionary, resolver):
        common = dict(road_id=seeded.road_id, phase_id=seeded.base_course_phase_id)
        keeper = await insert_entry(layer_name="Fondation", **common)
        await insert_entry(**common)

        report = await run_deduplication(session_factory, dictionary, resolver, dry_run=True)

        assert [g.status for g in report.groups] == [OUTCOME_PLANNED]
        assert report.normalized == 1
        assert await _count(session_factory) == 2
        assert (await _get(session_factory, keeper)).layer_name == "Fondation"

    async def test_normalization_written_back(self, session_factory, seeded, insert_entry, dictionary, resolver):
        entry_id = await insert_entry(road_id=seeded.road_id, phase_id=seeded.base_course_phase_id,
                                      layer_name="Fondation", check_name="Coffrage",
                                      types=["GENIE CIVIL", "TOPOGRAPHIQUE"])
        report = await run_deduplication(session_factory, dictionary, resolver)
        row = await _get(session_factory, entry_id)
        assert report.normalized == 1
        assert (row.layer_name, row.check_name, row.types) == ("底基层", "模板安装验收", ["现场验收"])

    async def test_failed_group_does_not_stop_siblings(
        self, session_factory, seeded, insert_entry, dictionary, resolver, monkeypatch,
    ):
        common = dict(road_id=seeded.road_id, phase_id=seeded.base_course_phase_id)
        bad_keeper = await insert_entry(side="LEFT", **common)
        bad_source = await insert_entry(side="LEFT", **common)
        good_keeper = await insert_entry(side="RIGHT", **common)
        await insert_entry(side="RIGHT", **common)

        real_plan_merges = entry_dedup.plan_merges

        def corrupt_first_plan(entries, rules):
            plans = real_plan_merges(entries, rules)
            plans[0].final_types = [object()]  # not JSON serializable
            return plans

        monkeypatch.setattr(entry_dedup, "plan_merges", corrupt_first_plan)
        report = await run_deduplication(session_factory, dictionary, resolver)

        outcomes = {g.keeper_id: g for g in report.groups}
        assert outcomes[bad_keeper].status == OUTCOME_FAILED
        assert outcomes[bad_keeper].error
        assert outcomes[good_keeper].status == OUTCOME_MERGED
        # Failed group rolled back: its source is still there
        assert await _get(session_factory, bad_source) is not None
        assert await _count(session_factory) == 3

    async def test_run_recorded_in_tracker(self, session_factory, seeded, dictionary, resolver):
        tracker.reset()
        await run_deduplication(session_factory, dictionary, resolver)
        metrics = tracker.get_metrics()
        assert metrics["dedup"]["runs"] == 1
        assert metrics["dedup"]["counters"]["merged"] == 0

    async def test_active_rules_entry_point(self, session_factory, seeded, insert_entry):
        common = dict(road_id=seeded.road_id, phase_id=seeded.base_course_phase_id)
        keeper = await insert_entry(check_name="Proctor", types=["GENIE CIVIL"], **common)
        await insert_entry(types=["测量验收"], **common)

        report = await deduplicate_with_active_rules(session_factory)

        assert report.count(OUTCOME_MERGED) == 1
        assert (await _get(session_factory, keeper)).types == list(FIXED_INSPECTION_TYPES)


class TestApplyMerge:

    async def test_vanished_keeper_is_skipped(self, session_factory, seeded, insert_entry, dictionary, resolver):
        common = dict(road_id=seeded.road_id, phase_id=seeded.base_course_phase_id)
        keeper = await insert_entry(**common)
        source = await insert_entry(**common)
        snapshots = [_snapshot(keeper, **common, side="BOTH"), _snapshot(source, **common, side="BOTH")]
        plan = plan_merges(snapshots, resolver)[0]

        async with session_factory() as s:
            await s.delete(await s.get(InspectionEntry, keeper))
            await s.commit()

        outcome = await apply_merge(session_factory, plan)

        assert outcome.status == OUTCOME_SKIPPED
        assert await _get(session_factory, source) is not None

    async def test_outcome_serializes(self, session_factory, seeded, insert_entry, resolver):
        common = dict(road_id=seeded.road_id, phase_id=seeded.base_course_phase_id)
        keeper = await insert_entry(**common)
        source = await insert_entry(**common)
        plan = plan_merges([_snapshot(keeper, **common, side="BOTH"), _snapshot(source, **common, side="BOTH")],
                           resolver)[0]
        data = (await apply_merge(session_factory, plan)).to_dict()
        assert data["status"] == OUTCOME_MERGED
        assert data["keeper_id"] == keeper
        assert data["source_ids"] == [source]
        assert data["key"]["check_key"] == "压实度验收"


@pytest.mark.parametrize("dry_run", [True, False])
async def test_report_dict_shape(session_factory, seeded, dictionary, resolver, dry_run):
    data = (await run_deduplication(session_factory, dictionary, resolver, dry_run=dry_run)).to_dict()
    assert data["dry_run"] is dry_run
    assert set(data["summary"]) >= {"scanned", "merged", "skipped", "failed", "planned", "removed"}
