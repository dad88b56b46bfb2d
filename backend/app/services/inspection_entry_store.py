"""
Inspection entry persistence — validated create / update / bulk-edit /
delete and filtered listing.

Every write canonicalizes layer, check and type names through the injected
ProgressDictionary and checks requested types against the TypeRuleResolver.
Nothing here auto-corrects input: a malformed request raises one of the
engine errors and the caller's transaction is rolled back by ``get_db``.

Functions flush but never commit; the route owns the transaction.
"""
from __future__ import annotations

import logging
import math
from typing import Any, Iterable, Optional

from sqlalchemy import case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased, selectinload

from app.config import (
    DEFAULT_PAGE_SIZE,
    INITIAL_STATUS,
    LIST_MAX_PAGE_SIZE,
    REMARK_KEYWORD_PREFIX,
    SIDES,
    STATUS_ORDER,
)
from app.models.inspection_schema import (
    InspectionEntryFilter,
    InspectionEntryPayload,
    InspectionEntryUpdate,
    SortSpec,
)
from app.models.orm_models import (
    InspectionEntry,
    RoadPhase,
    RoadSection,
    Submission,
    User,
)
from app.services.entry_dedup import EntryKey
from app.services.inspection_errors import (
    DuplicateKeyConflict,
    EntryNotFound,
    TypeNotAllowed,
    ValidationError,
)
from app.services.progress_dictionary import ProgressDictionary, normalize_key
from app.services.type_rules import TypeRuleResolver

logger = logging.getLogger("progress-entries")

_ENTRY_RELATIONS = (
    selectinload(InspectionEntry.road),
    selectinload(InspectionEntry.phase),
    selectinload(InspectionEntry.submission),
    selectinload(InspectionEntry.submitter),
    selectinload(InspectionEntry.creator),
    selectinload(InspectionEntry.updater),
)

# Fields whose change can move an entry onto another natural key
_KEY_FIELDS = ("side", "start_pk", "end_pk", "layer_name", "check_name")


# ── DTO mapping ───────────────────────────────────────────────────────────────

def _user_ref(user: Optional[User]) -> Optional[dict]:
    return {"id": user.id, "username": user.username} if user else None


def entry_to_dto(row: InspectionEntry) -> dict[str, Any]:
    """Plain record for one entry; relations must already be loaded."""
    return {
        "id": row.id,
        "submission_id": row.submission_id,
        "submission_code": row.submission.code if row.submission else None,
        "road_id": row.road_id,
        "road_name": row.road.name if row.road else None,
        "road_slug": row.road.slug if row.road else None,
        "phase_id": row.phase_id,
        "phase_name": row.phase.name if row.phase else None,
        "side": row.side,
        "start_pk": row.start_pk,
        "end_pk": row.end_pk,
        "layer_id": row.layer_id,
        "layer_name": row.layer_name,
        "check_id": row.check_id,
        "check_name": row.check_name,
        "types": list(row.types or []),
        "status": row.status,
        "appointment_date": row.appointment_date,
        "remark": row.remark,
        "submission_order": row.submission_order,
        "submitted_at": row.submitted_at,
        "submitted_by": _user_ref(row.submitter),
        "created_by": _user_ref(row.creator),
        "created_at": row.created_at,
        "updated_at": row.updated_at,
        "updated_by": _user_ref(row.updater),
    }


async def _load_entries(session: AsyncSession, ids: Iterable[int]) -> list[InspectionEntry]:
    ids = list(ids)
    if not ids:
        return []
    result = await session.execute(
        select(InspectionEntry)
        .where(InspectionEntry.id.in_(ids))
        .options(*_ENTRY_RELATIONS)
        .execution_options(populate_existing=True)
    )
    by_id = {row.id: row for row in result.scalars().all()}
    return [by_id[i] for i in ids if i in by_id]


async def get_entry(session: AsyncSession, entry_id: int) -> dict[str, Any]:
    rows = await _load_entries(session, [entry_id])
    if not rows:
        raise EntryNotFound(f"Inspection entry {entry_id} not found")
    return entry_to_dto(rows[0])


# ── Validation ────────────────────────────────────────────────────────────────

def _validate_range(start_pk: Any, end_pk: Any) -> tuple[float, float]:
    try:
        start, end = float(start_pk), float(end_pk)
    except (TypeError, ValueError):
        raise ValidationError("PK range must be numeric", [str(start_pk), str(end_pk)])
    if not (math.isfinite(start) and math.isfinite(end)):
        raise ValidationError("PK range must be finite", [str(start_pk), str(end_pk)])
    if start < 0 or end < 0:
        raise ValidationError("PK values cannot be negative", [str(start), str(end)])
    if end < start:
        raise ValidationError(f"PK range is reversed: end {end} < start {start}", [str(start), str(end)])
    return start, end


def _validate_side(side: Optional[str]) -> str:
    if side not in SIDES:
        raise ValidationError(f"Unknown side '{side}'", list(SIDES))
    return side


def _validate_status(status: Optional[str]) -> str:
    if status is None:
        return INITIAL_STATUS
    if status not in STATUS_ORDER:
        raise ValidationError(f"Unknown status '{status}'", list(STATUS_ORDER))
    return status


def _canonical_required(dictionary: ProgressDictionary, kind: str, value: Optional[str], label: str) -> str:
    canonical = dictionary.canonical_term(kind, value or "")
    if not canonical:
        raise ValidationError(f"{label} is required")
    return canonical


def _validate_types(
    resolver: TypeRuleResolver,
    check_name: str,
    types: Optional[Iterable[str]],
    phase_definition_id: Optional[int],
) -> list[str]:
    canonical = resolver.dictionary.canonicalize("type", types or [])
    if not canonical:
        raise ValidationError("At least one acceptance type is required")
    disallowed = resolver.disallowed_types(check_name, canonical, phase_definition_id)
    if disallowed:
        raise TypeNotAllowed(
            check_name, disallowed, resolver.allowed_types(check_name, phase_definition_id) or []
        )
    return canonical


def _overlaps(start_a: float, end_a: float, start_b: float, end_b: float) -> bool:
    return max(start_a, start_b) <= min(end_a, end_b)


def _assert_point_side_allowed(phase: RoadPhase, side: str, start_pk: float, end_pk: float) -> None:
    """POINT phases reported per side: no BOTH, and a one-sided point keeps its side."""
    definition = phase.phase_definition
    if definition is None or definition.measure != "POINT" or not definition.point_has_sides:
        return
    if side == "BOTH":
        raise ValidationError(f"Phase '{phase.name}' is reported per side; BOTH is not allowed")
    sides = {
        interval.side
        for interval in phase.intervals
        if interval.side != "BOTH" and _overlaps(interval.start_pk, interval.end_pk, start_pk, end_pk)
    }
    if len(sides) == 1 and side not in sides:
        expected = next(iter(sides))
        raise ValidationError(f"Point at PK {start_pk}-{end_pk} is configured on the {expected} side")


def _entry_key(road_id: int, phase_id: int, side: str, start_pk: float, end_pk: float,
               layer_name: str, check_name: str) -> EntryKey:
    return EntryKey(road_id, phase_id, side, start_pk, end_pk, normalize_key(layer_name), normalize_key(check_name))


async def _find_conflict(
    session: AsyncSession,
    dictionary: ProgressDictionary,
    key: EntryKey,
    exclude_ids: Iterable[int] = (),
) -> Optional[int]:
    """Id of an existing entry sharing ``key`` after canonicalization, if any."""
    stmt = select(InspectionEntry.id, InspectionEntry.layer_name, InspectionEntry.check_name).where(
        InspectionEntry.road_id == key.road_id,
        InspectionEntry.phase_id == key.phase_id,
        InspectionEntry.side == key.side,
        InspectionEntry.start_pk == key.start_pk,
        InspectionEntry.end_pk == key.end_pk,
    )
    excluded = list(exclude_ids)
    if excluded:
        stmt = stmt.where(InspectionEntry.id.notin_(excluded))
    for entry_id, layer_name, check_name in (await session.execute(stmt.order_by(InspectionEntry.id))).all():
        if (
            normalize_key(dictionary.canonical_term("layer", layer_name or "")) == key.layer_key
            and normalize_key(dictionary.canonical_term("check", check_name or "")) == key.check_key
        ):
            return entry_id
    return None


async def _assert_submissions_exist(session: AsyncSession, submission_ids: Iterable[Optional[int]]) -> None:
    wanted = {i for i in submission_ids if i is not None}
    if not wanted:
        return
    found = set((await session.execute(select(Submission.id).where(Submission.id.in_(wanted)))).scalars().all())
    missing = sorted(wanted - found)
    if missing:
        raise ValidationError("Submission not found", [str(i) for i in missing])


async def _assert_actor_exists(session: AsyncSession, actor_id: Optional[int]) -> None:
    if actor_id is not None and await session.get(User, actor_id) is None:
        raise ValidationError(f"Unknown actor {actor_id}")


async def _load_phases(session: AsyncSession, phase_ids: Iterable[int]) -> dict[int, RoadPhase]:
    result = await session.execute(
        select(RoadPhase)
        .where(RoadPhase.id.in_(set(phase_ids)))
        .options(selectinload(RoadPhase.phase_definition), selectinload(RoadPhase.intervals))
        .execution_options(populate_existing=True)
    )
    return {phase.id: phase for phase in result.scalars().all()}


# ── Writes ────────────────────────────────────────────────────────────────────

async def create_entries(
    session: AsyncSession,
    payloads: list[InspectionEntryPayload],
    dictionary: ProgressDictionary,
    resolver: TypeRuleResolver,
    actor_id: Optional[int] = None,
) -> list[dict[str, Any]]:
    """
    Validate and insert a batch of entries.

    The whole batch is rejected when any entry is malformed, requests a
    disallowed type, repeats another entry of the batch, or collides with a
    stored entry. Colliding requests are never merged implicitly.
    """
    if not payloads:
        raise ValidationError("At least one inspection entry is required")

    await _assert_actor_exists(session, actor_id)
    await _assert_submissions_exist(session, (p.submission_id for p in payloads))

    road_ids = {p.road_id for p in payloads}
    found_roads = set((await session.execute(select(RoadSection.id).where(RoadSection.id.in_(road_ids)))).scalars())
    missing_roads = sorted(road_ids - found_roads)
    if missing_roads:
        raise ValidationError("Road section not found", [str(i) for i in missing_roads])

    phases = await _load_phases(session, (p.phase_id for p in payloads))
    missing_phases = sorted({p.phase_id for p in payloads} - set(phases))
    if missing_phases:
        raise ValidationError("Phase not found", [str(i) for i in missing_phases])

    rows: list[InspectionEntry] = []
    batch_keys: dict[EntryKey, int] = {}
    for index, payload in enumerate(payloads):
        phase = phases[payload.phase_id]
        if phase.road_id != payload.road_id:
            raise ValidationError(f"Phase {phase.id} does not belong to road {payload.road_id}")
        side = _validate_side(payload.side)
        start_pk, end_pk = _validate_range(payload.start_pk, payload.end_pk)
        layer_name = _canonical_required(dictionary, "layer", payload.layer_name, "Layer")
        check_name = _canonical_required(dictionary, "check", payload.check_name, "Check")
        types = _validate_types(resolver, check_name, payload.types, phase.phase_definition_id)
        status = _validate_status(payload.status)
        _assert_point_side_allowed(phase, side, start_pk, end_pk)

        key = _entry_key(payload.road_id, payload.phase_id, side, start_pk, end_pk, layer_name, check_name)
        if key in batch_keys:
            raise DuplicateKeyConflict(
                f"Entries #{batch_keys[key] + 1} and #{index + 1} describe the same "
                f"{layer_name} / {check_name} at PK {start_pk}-{end_pk} ({side})"
            )
        batch_keys[key] = index
        existing_id = await _find_conflict(session, dictionary, key)
        if existing_id is not None:
            raise DuplicateKeyConflict(
                f"Entry {existing_id} already records {layer_name} / {check_name} "
                f"at PK {start_pk}-{end_pk} ({side})",
                existing_id=existing_id,
            )

        row = InspectionEntry(
            road_id=payload.road_id,
            phase_id=payload.phase_id,
            side=side,
            start_pk=start_pk,
            end_pk=end_pk,
            layer_id=payload.layer_id,
            layer_name=layer_name,
            check_id=payload.check_id,
            check_name=check_name,
            types=types,
            status=status,
            remark=payload.remark,
            appointment_date=payload.appointment_date,
            submission_id=payload.submission_id,
            submission_order=payload.submission_order,
            submitted_by=actor_id,
            created_by=actor_id,
            updated_by=actor_id,
        )
        if payload.submitted_at is not None:
            row.submitted_at = payload.submitted_at
        rows.append(row)

    session.add_all(rows)
    await session.flush()
    logger.info(f"Created {len(rows)} inspection entries", extra={"entry_ids": [r.id for r in rows]})
    return [entry_to_dto(row) for row in await _load_entries(session, [r.id for r in rows])]


def _patched_state(
    row: InspectionEntry,
    fields: dict[str, Any],
    phase: RoadPhase,
    dictionary: ProgressDictionary,
    resolver: TypeRuleResolver,
) -> dict[str, Any]:
    """Validated column values for ``row`` after applying ``fields``."""
    side = _validate_side(fields.get("side", row.side))
    start_pk, end_pk = _validate_range(fields.get("start_pk", row.start_pk), fields.get("end_pk", row.end_pk))
    layer_name = _canonical_required(dictionary, "layer", fields.get("layer_name", row.layer_name), "Layer")
    check_name = _canonical_required(dictionary, "check", fields.get("check_name", row.check_name), "Check")
    state: dict[str, Any] = {
        "side": side,
        "start_pk": start_pk,
        "end_pk": end_pk,
        "layer_name": layer_name,
        "check_name": check_name,
    }
    if "types" in fields or "check_name" in fields:
        # A new check re-validates the stored types against its own rule
        state["types"] = _validate_types(
            resolver, check_name, fields.get("types", row.types), phase.phase_definition_id
        )
    if "status" in fields:
        if fields["status"] is None:
            raise ValidationError("Status cannot be cleared")
        state["status"] = _validate_status(fields["status"])
    for name in ("layer_id", "check_id", "remark", "appointment_date", "submission_id", "submission_order"):
        if name in fields:
            state[name] = fields[name]
    if fields.get("submitted_at") is not None:
        state["submitted_at"] = fields["submitted_at"]
    _assert_point_side_allowed(phase, side, start_pk, end_pk)
    return state


async def _apply_patch(
    session: AsyncSession,
    rows: list[InspectionEntry],
    fields: dict[str, Any],
    dictionary: ProgressDictionary,
    resolver: TypeRuleResolver,
    actor_id: Optional[int],
) -> None:
    await _assert_actor_exists(session, actor_id)
    if "submission_id" in fields:
        await _assert_submissions_exist(session, [fields["submission_id"]])
    phases = await _load_phases(session, (row.phase_id for row in rows))
    row_ids = [row.id for row in rows]
    batch_keys: dict[EntryKey, int] = {}
    states: list[dict[str, Any]] = []
    for row in rows:
        state = _patched_state(row, fields, phases[row.phase_id], dictionary, resolver)
        key = _entry_key(
            row.road_id, row.phase_id, state["side"], state["start_pk"], state["end_pk"],
            state["layer_name"], state["check_name"],
        )
        if key in batch_keys:
            raise DuplicateKeyConflict(
                f"Entries {batch_keys[key]} and {row.id} would share the same natural key",
                existing_id=batch_keys[key],
            )
        batch_keys[key] = row.id
        if any(getattr(row, name) != state[name] for name in _KEY_FIELDS):
            existing_id = await _find_conflict(session, dictionary, key, exclude_ids=row_ids)
            if existing_id is not None:
                raise DuplicateKeyConflict(
                    f"Entry {existing_id} already records {state['layer_name']} / {state['check_name']} "
                    f"at PK {state['start_pk']}-{state['end_pk']} ({state['side']})",
                    existing_id=existing_id,
                )
        states.append(state)

    for row, state in zip(rows, states):
        for name, value in state.items():
            setattr(row, name, value)
        row.updated_by = actor_id
    await session.flush()


async def update_entry(
    session: AsyncSession,
    entry_id: int,
    patch: InspectionEntryUpdate,
    dictionary: ProgressDictionary,
    resolver: TypeRuleResolver,
    actor_id: Optional[int] = None,
) -> dict[str, Any]:
    rows = await _load_entries(session, [entry_id])
    if not rows:
        raise EntryNotFound(f"Inspection entry {entry_id} not found")
    await _apply_patch(session, rows, patch.model_dump(exclude_unset=True), dictionary, resolver, actor_id)
    logger.info(f"Updated inspection entry {entry_id}", extra={"entry_ids": [entry_id]})
    return entry_to_dto((await _load_entries(session, [entry_id]))[0])


async def bulk_edit_entries(
    session: AsyncSession,
    ids: list[int],
    patch: InspectionEntryUpdate,
    dictionary: ProgressDictionary,
    resolver: TypeRuleResolver,
    actor_id: Optional[int] = None,
) -> list[dict[str, Any]]:
    """Apply one patch to many entries; all succeed or none do."""
    unique_ids = list(dict.fromkeys(i for i in ids if i and i > 0))
    if not unique_ids:
        raise ValidationError("Select at least one inspection entry to edit")
    fields = patch.model_dump(exclude_unset=True)
    if not any(value is not None and value != "" for value in fields.values()):
        raise ValidationError("Provide at least one field to change")
    rows = await _load_entries(session, unique_ids)
    missing = sorted(set(unique_ids) - {row.id for row in rows})
    if missing:
        raise EntryNotFound("Inspection entries not found", [str(i) for i in missing])
    await _apply_patch(session, rows, fields, dictionary, resolver, actor_id)
    logger.info(f"Bulk-edited {len(rows)} inspection entries", extra={"entry_ids": unique_ids})
    return [entry_to_dto(row) for row in await _load_entries(session, unique_ids)]


async def delete_entry(session: AsyncSession, entry_id: int) -> None:
    row = await session.get(InspectionEntry, entry_id)
    if row is None:
        raise EntryNotFound(f"Inspection entry {entry_id} not found")
    await session.delete(row)
    await session.flush()
    logger.info(f"Deleted inspection entry {entry_id}", extra={"entry_ids": [entry_id]})


async def delete_entries(session: AsyncSession, ids: list[int]) -> dict[str, Any]:
    unique_ids = list(dict.fromkeys(i for i in ids if i and i > 0))
    if not unique_ids:
        raise ValidationError("Select at least one inspection entry to delete")
    rows = (await session.execute(select(InspectionEntry).where(InspectionEntry.id.in_(unique_ids)))).scalars().all()
    for row in rows:
        await session.delete(row)
    await session.flush()
    deleted = sorted(row.id for row in rows)
    logger.info(f"Deleted {len(deleted)} inspection entries", extra={"entry_ids": deleted})
    return {"deleted": deleted, "missing": sorted(set(unique_ids) - set(deleted))}


# ── Listing ───────────────────────────────────────────────────────────────────

def _order_clauses(sort: list[SortSpec], submitter, creator, updater) -> list:
    status_rank = case(
        {status: rank for rank, status in enumerate(STATUS_ORDER)},
        value=InspectionEntry.status,
        else_=len(STATUS_ORDER),
    )
    columns = {
        "road": [RoadSection.name],
        "phase": [RoadPhase.name],
        "side": [InspectionEntry.side],
        "range": [InspectionEntry.start_pk, InspectionEntry.end_pk],
        "layers": [InspectionEntry.layer_name],
        "checks": [InspectionEntry.check_name],
        "submissionOrder": [InspectionEntry.submission_order, InspectionEntry.start_pk],
        "status": [status_rank],
        "appointmentDate": [InspectionEntry.appointment_date],
        "submittedAt": [InspectionEntry.submitted_at],
        "submittedBy": [submitter.username],
        "createdBy": [creator.username],
        "createdAt": [InspectionEntry.created_at],
        "updatedBy": [updater.username],
        "updatedAt": [InspectionEntry.updated_at],
        "remark": [InspectionEntry.remark],
    }
    clauses = []
    for spec in sort or [SortSpec(field="updatedAt", order="desc")]:
        for column in columns[spec.field]:
            clauses.append(column.asc() if spec.order == "asc" else column.desc())
    clauses.append(InspectionEntry.id.asc())
    return clauses


LIKE_ESCAPE = "\\"


def _contains(text: str) -> str:
    """Substring LIKE pattern with the wildcards in ``text`` matched literally."""
    escaped = text.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
    for wildcard in ("%", "_"):
        escaped = escaped.replace(wildcard, LIKE_ESCAPE + wildcard)
    return f"%{escaped}%"


def _filter_clauses(flt: InspectionEntryFilter) -> list:
    clauses = []
    if flt.road_slugs:
        clauses.append(RoadSection.slug.in_(flt.road_slugs))
    elif flt.road_slug:
        clauses.append(RoadSection.slug == flt.road_slug)
    if flt.phase_id:
        clauses.append(InspectionEntry.phase_id == flt.phase_id)
    if flt.phase_definition_ids:
        clauses.append(RoadPhase.phase_definition_id.in_(flt.phase_definition_ids))
    elif flt.phase_definition_id:
        clauses.append(RoadPhase.phase_definition_id == flt.phase_definition_id)
    if flt.status:
        clauses.append(InspectionEntry.status.in_(flt.status))
    if flt.side:
        clauses.append(InspectionEntry.side == flt.side)
    if flt.layer_names:
        clauses.append(InspectionEntry.layer_name.in_(flt.layer_names))
    if flt.check_id:
        clauses.append(InspectionEntry.check_id == flt.check_id)
    if flt.check_names:
        clauses.append(InspectionEntry.check_name.in_(flt.check_names))
    elif flt.check_name:
        clauses.append(InspectionEntry.check_name.ilike(_contains(flt.check_name), escape=LIKE_ESCAPE))
    if flt.start_pk_from is not None:
        clauses.append(InspectionEntry.start_pk >= flt.start_pk_from)
    if flt.start_pk_to is not None:
        clauses.append(InspectionEntry.end_pk <= flt.start_pk_to)
    if flt.keyword and flt.keyword.strip():
        keyword = flt.keyword.strip()
        if keyword.lower().startswith(REMARK_KEYWORD_PREFIX):
            remark = keyword[len(REMARK_KEYWORD_PREFIX):].strip()
            if remark:
                clauses.append(InspectionEntry.remark.ilike(_contains(remark), escape=LIKE_ESCAPE))
        else:
            pattern = _contains(keyword)
            clauses.append(or_(
                InspectionEntry.remark.ilike(pattern, escape=LIKE_ESCAPE),
                InspectionEntry.layer_name.ilike(pattern, escape=LIKE_ESCAPE),
                InspectionEntry.check_name.ilike(pattern, escape=LIKE_ESCAPE),
                RoadPhase.name.ilike(pattern, escape=LIKE_ESCAPE),
                RoadSection.name.ilike(pattern, escape=LIKE_ESCAPE),
            ))
    if flt.start_date is not None:
        clauses.append(InspectionEntry.created_at >= flt.start_date)
    if flt.end_date is not None:
        clauses.append(InspectionEntry.created_at <= flt.end_date)
    return clauses


def _has_any_type(row: InspectionEntry, wanted: set[str]) -> bool:
    return any(normalize_key(t) in wanted for t in row.types or [])


async def select_entries(
    session: AsyncSession,
    flt: Optional[InspectionEntryFilter],
    dictionary: ProgressDictionary,
    ids: Optional[list[int]] = None,
    page: Optional[int] = None,
    page_size: Optional[int] = None,
    max_page_size: int = LIST_MAX_PAGE_SIZE,
) -> tuple[list[InspectionEntry], int, int, int]:
    """
    Entries matching ``flt`` (and ``ids`` when given) in the requested sort,
    ties broken by id. Returns ``(rows, total, page, page_size)``.
    """
    flt = flt or InspectionEntryFilter()
    page = max(1, page if page is not None else flt.page or 1)
    size = page_size if page_size is not None else flt.page_size
    size = max(1, min(max_page_size, size or DEFAULT_PAGE_SIZE))

    submitter, creator, updater = aliased(User), aliased(User), aliased(User)
    stmt = (
        select(InspectionEntry)
        .join(RoadSection, InspectionEntry.road_id == RoadSection.id)
        .join(RoadPhase, InspectionEntry.phase_id == RoadPhase.id)
        .outerjoin(submitter, InspectionEntry.submitted_by == submitter.id)
        .outerjoin(creator, InspectionEntry.created_by == creator.id)
        .outerjoin(updater, InspectionEntry.updated_by == updater.id)
        .where(*_filter_clauses(flt))
    )
    if ids is not None:
        stmt = stmt.where(InspectionEntry.id.in_(ids))
    count_stmt = select(func.count()).select_from(stmt.subquery())
    stmt = stmt.order_by(*_order_clauses(flt.sort, submitter, creator, updater)).options(*_ENTRY_RELATIONS)

    if flt.types:
        # JSON arrays have no portable has-any operator; filter before paging
        wanted = {normalize_key(t) for t in dictionary.canonicalize("type", flt.types)}
        matched = [row for row in (await session.execute(stmt)).scalars().all() if _has_any_type(row, wanted)]
        start = (page - 1) * size
        return matched[start:start + size], len(matched), page, size

    total = await session.scalar(count_stmt)
    rows = (await session.execute(stmt.offset((page - 1) * size).limit(size))).scalars().all()
    return list(rows), int(total or 0), page, size


async def list_entries(
    session: AsyncSession,
    flt: InspectionEntryFilter,
    dictionary: ProgressDictionary,
) -> dict[str, Any]:
    rows, total, page, size = await select_entries(session, flt, dictionary)
    return {
        "items": [entry_to_dto(row) for row in rows],
        "total": total,
        "page": page,
        "page_size": size,
    }
