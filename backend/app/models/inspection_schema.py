"""
Request / response shapes for inspection entries.

Side and status are plain strings here; vocabulary and geometry checks
happen in ``app.services.inspection_entry_store`` and raise the engine's
``ValidationError``.
"""
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field


class InspectionEntryPayload(BaseModel):
    """One layer × check row requested for validation."""
    road_id: int
    phase_id: int
    side: str = Field("BOTH", description="LEFT | RIGHT | BOTH")
    start_pk: float = Field(..., description="Interval start, metres from PK0")
    end_pk: float = Field(..., description="Interval end, metres from PK0")
    layer_id: Optional[int] = None
    layer_name: str = ""
    check_id: Optional[int] = None
    check_name: str = ""
    types: list[str] = Field(default_factory=list, description="Requested acceptance types")
    status: Optional[str] = None
    remark: Optional[str] = None
    appointment_date: Optional[datetime] = None
    submission_id: Optional[int] = None
    submission_order: Optional[int] = None
    submitted_at: Optional[datetime] = None


class InspectionEntryUpdate(BaseModel):
    """Partial update; only fields present in the request body are applied."""
    side: Optional[str] = None
    start_pk: Optional[float] = None
    end_pk: Optional[float] = None
    layer_id: Optional[int] = None
    layer_name: Optional[str] = None
    check_id: Optional[int] = None
    check_name: Optional[str] = None
    types: Optional[list[str]] = None
    status: Optional[str] = None
    remark: Optional[str] = None
    appointment_date: Optional[datetime] = None
    submission_id: Optional[int] = None
    submission_order: Optional[int] = None
    submitted_at: Optional[datetime] = None


class CreateEntriesRequest(BaseModel):
    entries: list[InspectionEntryPayload]


class BulkEditRequest(BaseModel):
    ids: list[int]
    patch: InspectionEntryUpdate


class BulkDeleteRequest(BaseModel):
    ids: list[int]


class SortSpec(BaseModel):
    field: Literal[
        "appointmentDate", "road", "phase", "side", "range", "layers", "checks",
        "submissionOrder", "status", "submittedAt", "submittedBy", "createdBy",
        "createdAt", "updatedBy", "updatedAt", "remark",
    ]
    order: Literal["asc", "desc"] = "desc"


class InspectionEntryFilter(BaseModel):
    road_slug: Optional[str] = None
    road_slugs: list[str] = Field(default_factory=list)
    phase_id: Optional[int] = None
    phase_definition_id: Optional[int] = None
    phase_definition_ids: list[int] = Field(default_factory=list)
    status: list[str] = Field(default_factory=list)
    side: Optional[str] = None
    layer_names: list[str] = Field(default_factory=list)
    check_id: Optional[int] = None
    check_name: Optional[str] = None      # case-insensitive substring
    check_names: list[str] = Field(default_factory=list)
    types: list[str] = Field(default_factory=list)  # has-any
    start_pk_from: Optional[float] = None
    start_pk_to: Optional[float] = None
    keyword: Optional[str] = None         # "remark:<text>" restricts to remarks
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    sort: list[SortSpec] = Field(default_factory=list)
    page: int = 1
    page_size: Optional[int] = None


class AggregateRequest(BaseModel):
    """
    Either explicit ``ids`` or a filter selects the entries to aggregate.

    Paging applies to entries. Without a page size an id selection returns
    every id on one page, up to AGGREGATE_MAX_PAGE_SIZE.
    """
    ids: list[int] = Field(default_factory=list)
    filter: Optional[InspectionEntryFilter] = None
    group_by_layer: bool = False
    page: int = 1
    page_size: Optional[int] = None
