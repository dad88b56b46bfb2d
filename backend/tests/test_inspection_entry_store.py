"""
test_inspection_entry_store.py — Tests for validated entry writes and listing.

Tests cover:
  - create_entries: canonicalization, default status, actor stamping
  - Rejections: TypeNotAllowed, empty types, bad side / status / PK range,
    unknown submission / actor / phase, batch and stored duplicates
  - POINT phases reported per side
  - update_entry / bulk_edit_entries: re-validation, key conflicts, all-or-nothing
  - delete_entry / delete_entries
  - select_entries / list_entries: filters, status rank sort, has-any types, paging
"""

import pytest

from app.models.inspection_schema import InspectionEntryFilter, InspectionEntryPayload, InspectionEntryUpdate
from app.services import inspection_entry_store as store
from app.services.inspection_errors import DuplicateKeyConflict, EntryNotFound, TypeNotAllowed, ValidationError


def _payload(seeded, **fields):
    values = dict(
        road_id=seeded.road_id,
        phase_id=seeded.base_course_phase_id,
        side="LEFT",
        start_pk=0.0,
        end_pk=100.0,
        layer_name="底基层",
        check_name="压实度验收",
        types=["现场验收"],
    )
    values.update(fields)
    return InspectionEntryPayload(**values)


async def _create(session, seeded, dictionary, resolver, *payloads, actor_id=None):
    return await store.create_entries(session, list(payloads), dictionary, resolver, actor_id)


# ===========================================================================
# Class 1: Create
# ===========================================================================

class TestCreateEntries:

    async def test_create_canonicalizes_vocabulary(self, session, seeded, dictionary, resolver):
        [entry] = await _create(
            session, seeded, dictionary, resolver,
            _payload(seeded, layer_name=" Fondation ", check_name="Proctor", types=["GENIE CIVIL", "geotechnique"]),
            actor_id=seeded.surveyor_id,
        )
        assert entry["layer_name"] == "底基层"
        assert entry["check_name"] == "压实度验收"
        assert entry["types"] == ["现场验收", "试验验收"]
        assert entry["status"] == "PENDING"
        assert entry["created_by"] == {"id": seeded.surveyor_id, "username": "surveyor"}
        assert entry["road_slug"] == "rn1"

    async def test_disallowed_type_rejected_not_dropped(self, session, seeded, dictionary, resolver):
        with pytest.raises(TypeNotAllowed) as exc:
            await _create(session, seeded, dictionary, resolver,
                          _payload(seeded, check_name="Coffrage", types=["GENIE CIVIL", "TOPOGRAPHIQUE"]))
        assert exc.value.disallowed == ["测量验收"]
        assert exc.value.allowed == ["现场验收"]
        assert exc.value.check_name == "模板安装验收"
        listing = await store.list_entries(session, InspectionEntryFilter(), dictionary)
        assert listing["total"] == 0

    async def test_empty_types_rejected(self, session, seeded, dictionary, resolver):
        with pytest.raises(ValidationError):
            await _create(session, seeded, dictionary, resolver, _payload(seeded, types=["  "]))

    @pytest.mark.parametrize("start_pk, end_pk", [(100.0, 50.0), (-10.0, 20.0), (float("inf"), 10.0)])
    async def test_bad_pk_range_rejected(self, session, seeded, dictionary, resolver, start_pk, end_pk):
        with pytest.raises(ValidationError):
            await _create(session, seeded, dictionary, resolver, _payload(seeded, start_pk=start_pk, end_pk=end_pk))

    async def test_point_range_accepted(self, session, seeded, dictionary, resolver):
        [entry] = await _create(session, seeded, dictionary, resolver, _payload(seeded, start_pk=250.0, end_pk=250.0))
        assert entry["start_pk"] == entry["end_pk"] == 250.0

    async def test_unknown_side_rejected(self, session, seeded, dictionary, resolver):
        with pytest.raises(ValidationError):
            await _create(session, seeded, dictionary, resolver, _payload(seeded, side="NORTH"))

    async def test_unknown_status_rejected(self, session, seeded, dictionary, resolver):
        with pytest.raises(ValidationError):
            await _create(session, seeded, dictionary, resolver, _payload(seeded, status="DONE"))

    async def test_explicit_status_kept(self, session, seeded, dictionary, resolver):
        [entry] = await _create(session, seeded, dictionary, resolver, _payload(seeded, status="SCHEDULED"))
        assert entry["status"] == "SCHEDULED"

    async def test_missing_layer_rejected(self, session, seeded, dictionary, resolver):
        with pytest.raises(ValidationError):
            await _create(session, seeded, dictionary, resolver, _payload(seeded, layer_name="   "))

    async def test_unknown_submission_rejected(self, session, seeded, dictionary, resolver):
        with pytest.raises(ValidationError) as exc:
            await _create(session, seeded, dictionary, resolver, _payload(seeded, submission_id=999))
        assert exc.value.details == ["999"]

    async def test_known_submission_linked(self, session, seeded, dictionary, resolver):
        [entry] = await _create(session, seeded, dictionary, resolver,
                                _payload(seeded, submission_id=seeded.submission_id, submission_order=3))
        assert entry["submission_code"] == "SUB-001"
        assert entry["submission_order"] == 3

    async def test_unknown_actor_rejected(self, session, seeded, dictionary, resolver):
        with pytest.raises(ValidationError):
            await _create(session, seeded, dictionary, resolver, _payload(seeded), actor_id=404)

    async def test_phase_on_other_road_rejected(self, session, seeded, dictionary, resolver):
        with pytest.raises(ValidationError):
            await _create(session, seeded, dictionary, resolver,
                          _payload(seeded, phase_id=seeded.other_road_phase_id))

    async def test_empty_batch_rejected(self, session, seeded, dictionary, resolver):
        with pytest.raises(ValidationError):
            await _create(session, seeded, dictionary, resolver)

    async def test_duplicate_within_batch(self, session, seeded, dictionary, resolver):
        with pytest.raises(DuplicateKeyConflict):
            await _create(session, seeded, dictionary, resolver,
                          _payload(seeded), _payload(seeded, layer_name="Fondation", types=["测量验收"]))

    async def test_duplicate_of_stored_entry_reports_existing_id(self, session, seeded, dictionary, resolver):
        [entry] = await _create(session, seeded, dictionary, resolver, _payload(seeded))
        with pytest.raises(DuplicateKeyConflict) as exc:
            await _create(session, seeded, dictionary, resolver, _payload(seeded, check_name="PROCTOR"))
        assert exc.value.existing_id == entry["id"]

    async def test_legacy_spelling_counts_as_duplicate(self, session, seeded, dictionary, resolver, insert_entry):
        legacy_id = await insert_entry(road_id=seeded.road_id, phase_id=seeded.base_course_phase_id,
                                       side="LEFT", layer_name="Fondation", check_name="Proctor")
        with pytest.raises(DuplicateKeyConflict) as exc:
            await _create(session, seeded, dictionary, resolver, _payload(seeded))
        assert exc.value.existing_id == legacy_id

    async def test_other_side_is_not_duplicate(self, session, seeded, dictionary, resolver):
        entries = await _create(session, seeded, dictionary, resolver,
                                _payload(seeded, side="LEFT"), _payload(seeded, side="RIGHT"))
        assert len(entries) == 2


class TestPointPhaseSides:

    def _culvert(self, seeded, **fields):
        return _payload(seeded, phase_id=seeded.culvert_phase_id, layer_name="基坑", check_name="放样与开挖",
                        start_pk=1200.0, end_pk=1200.0, **fields)

    async def test_both_rejected(self, session, seeded, dictionary, resolver):
        with pytest.raises(ValidationError):
            await _create(session, seeded, dictionary, resolver, self._culvert(seeded, side="BOTH"))

    async def test_configured_side_enforced(self, session, seeded, dictionary, resolver):
        with pytest.raises(ValidationError):
            await _create(session, seeded, dictionary, resolver, self._culvert(seeded, side="RIGHT"))

    async def test_configured_side_accepted(self, session, seeded, dictionary, resolver):
        [entry] = await _create(session, seeded, dictionary, resolver, self._culvert(seeded, side="LEFT"))
        assert entry["side"] == "LEFT"

    async def test_unconfigured_point_any_side(self, session, seeded, dictionary, resolver):
        payload = _payload(seeded, phase_id=seeded.culvert_phase_id, layer_name="基坑", check_name="放样与开挖",
                           side="RIGHT", start_pk=500.0, end_pk=500.0)
        [entry] = await _create(session, seeded, dictionary, resolver, payload)
        assert entry["side"] == "RIGHT"


# ===========================================================================
# Class 2: Update / bulk edit
# ===========================================================================

class TestUpdateEntries:

    async def test_update_stamps_actor(self, session, seeded, dictionary, resolver):
        [entry] = await _create(session, seeded, dictionary, resolver, _payload(seeded), actor_id=seeded.surveyor_id)
        updated = await store.update_entry(
            session, entry["id"], InspectionEntryUpdate(status="APPROVED", remark="signed"),
            dictionary, resolver, seeded.inspector_id,
        )
        assert updated["status"] == "APPROVED"
        assert updated["remark"] == "signed"
        assert updated["updated_by"]["username"] == "inspector"
        assert updated["created_by"]["username"] == "surveyor"

    async def test_update_rejects_disallowed_types(self, session, seeded, dictionary, resolver):
        [entry] = await _create(session, seeded, dictionary, resolver,
                                _payload(seeded, check_name="模板安装验收", types=["现场验收"]))
        with pytest.raises(TypeNotAllowed):
            await store.update_entry(session, entry["id"], InspectionEntryUpdate(types=["试验验收"]),
                                     dictionary, resolver)

    async def test_new_check_revalidates_stored_types(self, session, seeded, dictionary, resolver):
        [entry] = await _create(session, seeded, dictionary, resolver,
                                _payload(seeded, types=["现场验收", "测量验收"]))
        with pytest.raises(TypeNotAllowed):
            await store.update_entry(session, entry["id"], InspectionEntryUpdate(check_name="Coffrage"),
                                     dictionary, resolver)

    async def test_update_onto_existing_key(self, session, seeded, dictionary, resolver):
        first, second = await _create(session, seeded, dictionary, resolver,
                                      _payload(seeded), _payload(seeded, check_name="标高验收"))
        with pytest.raises(DuplicateKeyConflict) as exc:
            await store.update_entry(session, second["id"], InspectionEntryUpdate(check_name="Proctor"),
                                     dictionary, resolver)
        assert exc.value.existing_id == first["id"]

    async def test_status_cannot_be_cleared(self, session, seeded, dictionary, resolver):
        [entry] = await _create(session, seeded, dictionary, resolver, _payload(seeded))
        with pytest.raises(ValidationError):
            await store.update_entry(session, entry["id"], InspectionEntryUpdate(status=None),
                                     dictionary, resolver)

    async def test_update_missing_entry(self, session, seeded, dictionary, resolver):
        with pytest.raises(EntryNotFound):
            await store.update_entry(session, 12345, InspectionEntryUpdate(remark="x"), dictionary, resolver)

    async def test_bulk_edit_all_rows(self, session, seeded, dictionary, resolver):
        entries = await _create(session, seeded, dictionary, resolver,
                                _payload(seeded), _payload(seeded, side="RIGHT"))
        ids = [e["id"] for e in entries]
        edited = await store.bulk_edit_entries(session, ids, InspectionEntryUpdate(status="SUBMITTED"),
                                               dictionary, resolver)
        assert [e["status"] for e in edited] == ["SUBMITTED", "SUBMITTED"]

    async def test_bulk_edit_conflict_inside_batch(self, session, seeded, dictionary, resolver):
        entries = await _create(session, seeded, dictionary, resolver,
                                _payload(seeded, start_pk=0.0, end_pk=100.0),
                                _payload(seeded, start_pk=100.0, end_pk=200.0))
        with pytest.raises(DuplicateKeyConflict):
            await store.bulk_edit_entries(session, [e["id"] for e in entries],
                                          InspectionEntryUpdate(start_pk=0.0, end_pk=50.0), dictionary, resolver)

    async def test_bulk_edit_missing_ids(self, session, seeded, dictionary, resolver):
        [entry] = await _create(session, seeded, dictionary, resolver, _payload(seeded))
        with pytest.raises(EntryNotFound) as exc:
            await store.bulk_edit_entries(session, [entry["id"], 999], InspectionEntryUpdate(status="SUBMITTED"),
                                          dictionary, resolver)
        assert exc.value.details == ["999"]

    async def test_bulk_edit_requires_a_field(self, session, seeded, dictionary, resolver):
        [entry] = await _create(session, seeded, dictionary, resolver, _payload(seeded))
        with pytest.raises(ValidationError):
            await store.bulk_edit_entries(session, [entry["id"]], InspectionEntryUpdate(), dictionary, resolver)

    async def test_bulk_edit_requires_ids(self, session, seeded, dictionary, resolver):
        with pytest.raises(ValidationError):
            await store.bulk_edit_entries(session, [], InspectionEntryUpdate(status="SUBMITTED"),
                                          dictionary, resolver)


# ===========================================================================
# Class 3: Delete
# ===========================================================================

class TestDeleteEntries:

    async def test_delete_entry(self, session, seeded, dictionary, resolver):
        [entry] = await _create(session, seeded, dictionary, resolver, _payload(seeded))
        await store.delete_entry(session, entry["id"])
        with pytest.raises(EntryNotFound):
            await store.get_entry(session, entry["id"])

    async def test_delete_missing_entry(self, session, seeded):
        with pytest.raises(EntryNotFound):
            await store.delete_entry(session, 777)

    async def test_delete_entries_reports_missing(self, session, seeded, dictionary, resolver):
        [entry] = await _create(session, seeded, dictionary, resolver, _payload(seeded))
        result = await store.delete_entries(session, [entry["id"], 888, entry["id"]])
        assert result == {"deleted": [entry["id"]], "missing": [888]}


# ===========================================================================
# Class 4: Listing
# ===========================================================================

class TestListEntries:

    @pytest.fixture
    async def listed(self, session, seeded, dictionary, resolver):
        return await _create(
            session, seeded, dictionary, resolver,
            _payload(seeded, start_pk=200.0, end_pk=300.0, status="APPROVED", remark="gravel ok"),
            _payload(seeded, start_pk=0.0, end_pk=100.0, types=["测量验收"]),
            _payload(seeded, start_pk=100.0, end_pk=200.0, status="SUBMITTED", check_name="标高验收"),
        )

    async def test_status_sorted_by_workflow_rank(self, session, dictionary, listed):
        flt = InspectionEntryFilter(sort=[{"field": "status", "order": "asc"}])
        result = await store.list_entries(session, flt, dictionary)
        assert [e["status"] for e in result["items"]] == ["PENDING", "SUBMITTED", "APPROVED"]

    async def test_range_sort_and_paging(self, session, dictionary, listed):
        flt = InspectionEntryFilter(sort=[{"field": "range", "order": "asc"}], page=2, page_size=2)
        result = await store.list_entries(session, flt, dictionary)
        assert result["total"] == 3
        assert result["page"] == 2
        assert [e["start_pk"] for e in result["items"]] == [200.0]

    async def test_types_has_any(self, session, dictionary, listed):
        result = await store.list_entries(session, InspectionEntryFilter(types=["TOPOGRAPHIQUE"]), dictionary)
        assert result["total"] == 1
        assert result["items"][0]["types"] == ["测量验收"]

    async def test_remark_keyword(self, session, dictionary, listed):
        result = await store.list_entries(session, InspectionEntryFilter(keyword="remark: gravel"), dictionary)
        assert [e["remark"] for e in result["items"]] == ["gravel ok"]

    async def test_filters_by_road_and_status(self, session, dictionary, listed):
        flt = InspectionEntryFilter(road_slug="rn1", status=["SUBMITTED", "APPROVED"])
        assert (await store.list_entries(session, flt, dictionary))["total"] == 2
        assert (await store.list_entries(session, InspectionEntryFilter(road_slug="rn2"), dictionary))["total"] == 0

    async def test_check_name_substring(self, session, dictionary, listed):
        result = await store.list_entries(session, InspectionEntryFilter(check_name="标高"), dictionary)
        assert [e["check_name"] for e in result["items"]] == ["标高验收"]

    @pytest.mark.parametrize("flt", [
        InspectionEntryFilter(keyword="remark:%"),
        InspectionEntryFilter(keyword="remark:grav_l"),
        InspectionEntryFilter(keyword="grav%ok"),
        InspectionEntryFilter(check_name="标_"),
    ])
    async def test_like_wildcards_match_literally(self, session, dictionary, listed, flt):
        assert (await store.list_entries(session, flt, dictionary))["total"] == 0

    async def test_literal_percent_found(self, session, seeded, dictionary, resolver, listed):
        await _create(session, seeded, dictionary, resolver,
                      _payload(seeded, start_pk=300.0, end_pk=400.0, remark="compaction 98% ok"))
        result = await store.list_entries(session, InspectionEntryFilter(keyword="remark:98%"), dictionary)
        assert [e["remark"] for e in result["items"]] == ["compaction 98% ok"]

    async def test_pk_window(self, session, dictionary, listed):
        flt = InspectionEntryFilter(start_pk_from=100.0, start_pk_to=300.0)
        assert (await store.list_entries(session, flt, dictionary))["total"] == 2

    async def test_page_size_capped(self, session, dictionary, listed):
        result = await store.list_entries(session, InspectionEntryFilter(page_size=50_000), dictionary)
        assert result["page_size"] == 1000
