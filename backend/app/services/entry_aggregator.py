"""
Inspection report aggregation — folds entries into report line items.

Entries sharing (road, phase, side, start PK, end PK) become one "nature of
work" line that lists every layer, check and acceptance type observed, with
metadata (status, remark, submission, audit fields) taken from the member
updated most recently (ties → highest id).

Read-only: nothing here writes, locks or flushes.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import AGGREGATE_MAX_PAGE_SIZE
from app.models.inspection_schema import AggregateRequest, InspectionEntryFilter
from app.services.inspection_entry_store import entry_to_dto, select_entries
from app.services.progress_dictionary import ProgressDictionary, normalize_key

# Fields copied from the representative entry onto the list item
_REPRESENTATIVE_FIELDS = (
    "road_name",
    "road_slug",
    "phase_name",
    "submission_id",
    "submission_code",
    "status",
    "remark",
    "appointment_date",
    "submission_order",
    "submitted_at",
    "submitted_by",
    "created_by",
    "created_at",
    "updated_at",
    "updated_by",
)


def _timestamp(value: Optional[datetime]) -> datetime:
    """Comparable UTC-naive timestamp; missing values sort first."""
    if value is None:
        return datetime.min
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _newer(candidate: dict, current: dict) -> bool:
    return (_timestamp(candidate.get("updated_at")), candidate["id"]) > (
        _timestamp(current.get("updated_at")),
        current["id"],
    )


def _group_key(entry: dict, dictionary: ProgressDictionary, group_by_layer: bool) -> tuple:
    key = (entry["road_id"], entry["phase_id"], entry["side"], entry["start_pk"], entry["end_pk"])
    if group_by_layer:
        key += (normalize_key(dictionary.canonical_term("layer", entry.get("layer_name") or "")),)
    return key


def aggregate_entries(
    entries: Iterable[dict[str, Any]],
    dictionary: ProgressDictionary,
    group_by_layer: bool = False,
) -> list[dict[str, Any]]:
    """
    Group entry records (as produced by ``entry_to_dto``) into list items.

    Item order follows the first member of each group in ``entries``;
    ``layers``, ``checks`` and ``types`` keep first-seen order.
    """
    groups: dict[tuple, dict[str, Any]] = {}
    for entry in entries:
        key = _group_key(entry, dictionary, group_by_layer)
        group = groups.get(key)
        if group is None:
            groups[key] = {
                "representative": entry,
                "entry_ids": [entry["id"]],
                "layers": [entry.get("layer_name")],
                "checks": [entry.get("check_name")],
                "types": list(entry.get("types") or []),
            }
            continue
        group["entry_ids"].append(entry["id"])
        group["layers"].append(entry.get("layer_name"))
        group["checks"].append(entry.get("check_name"))
        group["types"].extend(entry.get("types") or [])
        if _newer(entry, group["representative"]):
            group["representative"] = entry

    items = []
    for group in groups.values():
        rep = group["representative"]
        item = {
            "id": rep["id"],
            "entry_ids": group["entry_ids"],
            "road_id": rep["road_id"],
            "phase_id": rep["phase_id"],
            "side": rep["side"],
            "start_pk": rep["start_pk"],
            "end_pk": rep["end_pk"],
            "layers": dictionary.canonicalize("layer", group["layers"]),
            "checks": dictionary.canonicalize("check", group["checks"]),
            "types": dictionary.canonicalize("type", group["types"]),
        }
        for name in _REPRESENTATIVE_FIELDS:
            item[name] = rep.get(name)
        items.append(item)
    return items


def _requested_page_size(request: AggregateRequest, flt: InspectionEntryFilter) -> Optional[int]:
    """An explicit id selection defaults to one page holding every id (up to the cap)."""
    if request.page_size is not None:
        return request.page_size
    if flt.page_size is not None or not request.ids:
        return flt.page_size
    return min(len(set(request.ids)), AGGREGATE_MAX_PAGE_SIZE)


async def aggregate_as_list_items(
    session: AsyncSession,
    request: AggregateRequest,
    dictionary: ProgressDictionary,
) -> dict[str, Any]:
    """
    Fetch the selected entries (explicit ids and/or a filter), page them
    exactly as requested, then group the page into list items.
    """
    flt = request.filter or InspectionEntryFilter()
    rows, total, page, size = await select_entries(
        session,
        flt,
        dictionary,
        ids=request.ids or None,
        page=request.page,
        page_size=_requested_page_size(request, flt),
        max_page_size=AGGREGATE_MAX_PAGE_SIZE,
    )
    items = aggregate_entries((entry_to_dto(row) for row in rows), dictionary, request.group_by_layer)
    return {
        "items": items,
        "page_info": {
            "page": page,
            "page_size": size,
            "total": total,
            "item_count": len(items),
            "has_next": page * size < total,
        },
    }
