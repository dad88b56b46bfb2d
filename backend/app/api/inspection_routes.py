"""
Inspection entry routes.
Create / edit / list / delete inspection entries and aggregate them into
report line items. All writes canonicalize vocabulary and enforce the
acceptance-type rules; collisions are rejected, never merged implicitly.
"""
import logging
from datetime import datetime
from typing import Optional, get_args
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from app.db import get_db
from app.api.deps import engine_http_error, get_actor_id, get_progress_dictionary, get_type_rules
from app.models.inspection_schema import (
    AggregateRequest,
    BulkDeleteRequest,
    BulkEditRequest,
    CreateEntriesRequest,
    InspectionEntryFilter,
    InspectionEntryUpdate,
    SortSpec,
)
from app.services import inspection_entry_store as store
from app.services.entry_aggregator import aggregate_as_list_items
from app.services.inspection_errors import InspectionEngineError
from app.services.progress_dictionary import ProgressDictionary
from app.services.type_rules import TypeRuleResolver

router = APIRouter(prefix="/api/v1/inspection-entries", tags=["Inspection Entries"])
logger = logging.getLogger("progress-api")

_SORT_FIELDS = set(get_args(SortSpec.model_fields["field"].annotation))


def _reject(error: InspectionEngineError):
    logger.info(f"Rejected inspection request: {error.message}")
    return engine_http_error(error)


def _parse_sort(values: list[str]) -> list[SortSpec]:
    """``field:order`` pairs; unknown fields are ignored, unknown orders mean desc."""
    specs = []
    for value in values:
        field, _, order = value.partition(":")
        if field not in _SORT_FIELDS:
            continue
        specs.append(SortSpec(field=field, order=order if order in ("asc", "desc") else "desc"))
    return specs


@router.post("/")
async def create_entries(
    req: CreateEntriesRequest,
    actor_id: Optional[int] = Depends(get_actor_id),
    dictionary: ProgressDictionary = Depends(get_progress_dictionary),
    rules: TypeRuleResolver = Depends(get_type_rules),
    db: AsyncSession = Depends(get_db),
):
    """Create a batch of inspection entries (all or nothing)."""
    try:
        entries = await store.create_entries(db, req.entries, dictionary, rules, actor_id)
    except InspectionEngineError as e:
        raise _reject(e)
    await db.commit()
    return {"entries": entries}


@router.get("/")
async def list_entries(
    road_slug: Optional[str] = None,
    road_slugs: list[str] = Query(default=[]),
    phase_id: Optional[int] = None,
    phase_definition_id: Optional[int] = None,
    phase_definition_ids: list[int] = Query(default=[]),
    status: list[str] = Query(default=[]),
    side: Optional[str] = None,
    layer_names: list[str] = Query(default=[]),
    check_id: Optional[int] = None,
    check_name: Optional[str] = None,
    check_names: list[str] = Query(default=[]),
    types: list[str] = Query(default=[]),
    start_pk_from: Optional[float] = None,
    start_pk_to: Optional[float] = None,
    keyword: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    sort: list[str] = Query(default=[]),
    page: int = 1,
    page_size: Optional[int] = None,
    dictionary: ProgressDictionary = Depends(get_progress_dictionary),
    db: AsyncSession = Depends(get_db),
):
    """Filtered, sorted, paginated entry listing (sort ties broken by id)."""
    flt = InspectionEntryFilter(
        road_slug=road_slug,
        road_slugs=road_slugs,
        phase_id=phase_id,
        phase_definition_id=phase_definition_id,
        phase_definition_ids=phase_definition_ids,
        status=status,
        side=side,
        layer_names=layer_names,
        check_id=check_id,
        check_name=check_name,
        check_names=check_names,
        types=types,
        start_pk_from=start_pk_from,
        start_pk_to=start_pk_to,
        keyword=keyword,
        start_date=start_date,
        end_date=end_date,
        sort=_parse_sort(sort),
        page=page,
        page_size=page_size,
    )
    return await store.list_entries(db, flt, dictionary)


@router.post("/aggregate")
async def aggregate_entries(
    req: AggregateRequest,
    dictionary: ProgressDictionary = Depends(get_progress_dictionary),
    db: AsyncSession = Depends(get_db),
):
    """Report line items grouped by road / phase / side / PK range. Read-only."""
    return await aggregate_as_list_items(db, req, dictionary)


@router.post("/bulk-edit")
async def bulk_edit_entries(
    req: BulkEditRequest,
    actor_id: Optional[int] = Depends(get_actor_id),
    dictionary: ProgressDictionary = Depends(get_progress_dictionary),
    rules: TypeRuleResolver = Depends(get_type_rules),
    db: AsyncSession = Depends(get_db),
):
    try:
        entries = await store.bulk_edit_entries(db, req.ids, req.patch, dictionary, rules, actor_id)
    except InspectionEngineError as e:
        raise _reject(e)
    await db.commit()
    return {"entries": entries, "updated": len(entries)}


@router.post("/bulk-delete")
async def bulk_delete_entries(req: BulkDeleteRequest, db: AsyncSession = Depends(get_db)):
    try:
        result = await store.delete_entries(db, req.ids)
    except InspectionEngineError as e:
        raise _reject(e)
    await db.commit()
    return result


@router.get("/{entry_id}")
async def get_entry(entry_id: int, db: AsyncSession = Depends(get_db)):
    try:
        return {"entry": await store.get_entry(db, entry_id)}
    except InspectionEngineError as e:
        raise _reject(e)


@router.patch("/{entry_id}")
async def update_entry(
    entry_id: int,
    req: InspectionEntryUpdate,
    actor_id: Optional[int] = Depends(get_actor_id),
    dictionary: ProgressDictionary = Depends(get_progress_dictionary),
    rules: TypeRuleResolver = Depends(get_type_rules),
    db: AsyncSession = Depends(get_db),
):
    """Partial update; only fields present in the body change."""
    try:
        entry = await store.update_entry(db, entry_id, req, dictionary, rules, actor_id)
    except InspectionEngineError as e:
        raise _reject(e)
    await db.commit()
    return {"entry": entry}


@router.delete("/{entry_id}")
async def delete_entry(entry_id: int, db: AsyncSession = Depends(get_db)):
    try:
        await store.delete_entry(db, entry_id)
    except InspectionEngineError as e:
        raise _reject(e)
    await db.commit()
    return {"id": entry_id, "deleted": True}
