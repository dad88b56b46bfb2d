"""ORM Models for the road progress inspection engine — SQLAlchemy 2.0"""
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import (
    JSON, String, Text, Boolean, Integer, Float, DateTime,
    ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from app.db import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONList = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── ACTORS ────────────────────────────────────────────────────────────────────
class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


# ── ROADS ─────────────────────────────────────────────────────────────────────
class RoadSection(Base):
    __tablename__ = "road_sections"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    phases: Mapped[list["RoadPhase"]] = relationship("RoadPhase", back_populates="road")


# ── TEMPLATE VOCABULARY ───────────────────────────────────────────────────────
class LayerDefinition(Base):
    __tablename__ = "layer_definitions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class CheckDefinition(Base):
    __tablename__ = "check_definitions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class PhaseDefinition(Base):
    __tablename__ = "phase_definitions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    measure: Mapped[str] = mapped_column(String(20), default="LINEAR")  # LINEAR | POINT
    # POINT phases only: inspections are reported per side, never BOTH
    point_has_sides: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    default_layers: Mapped[list["PhaseDefinitionLayer"]] = relationship(
        "PhaseDefinitionLayer", order_by="PhaseDefinitionLayer.sort_order", cascade="all, delete-orphan"
    )
    default_checks: Mapped[list["PhaseDefinitionCheck"]] = relationship(
        "PhaseDefinitionCheck", order_by="PhaseDefinitionCheck.sort_order", cascade="all, delete-orphan"
    )
    workflow: Mapped[Optional["PhaseWorkflow"]] = relationship(
        "PhaseWorkflow", uselist=False, back_populates="phase_definition"
    )


class PhaseDefinitionLayer(Base):
    __tablename__ = "phase_definition_layers"
    __table_args__ = (UniqueConstraint("phase_definition_id", "layer_definition_id"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    phase_definition_id: Mapped[int] = mapped_column(Integer, ForeignKey("phase_definitions.id"), nullable=False)
    layer_definition_id: Mapped[int] = mapped_column(Integer, ForeignKey("layer_definitions.id"), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    layer_definition: Mapped["LayerDefinition"] = relationship("LayerDefinition")


class PhaseDefinitionCheck(Base):
    __tablename__ = "phase_definition_checks"
    __table_args__ = (UniqueConstraint("phase_definition_id", "check_definition_id"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    phase_definition_id: Mapped[int] = mapped_column(Integer, ForeignKey("phase_definitions.id"), nullable=False)
    check_definition_id: Mapped[int] = mapped_column(Integer, ForeignKey("check_definitions.id"), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    check_definition: Mapped["CheckDefinition"] = relationship("CheckDefinition")


class PhaseWorkflow(Base):
    __tablename__ = "phase_workflows"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    phase_definition_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("phase_definitions.id"), unique=True, nullable=False
    )
    # {"layers": [{"name": ..., "checks": [{"name": ..., "types": [...], "required": true}]}]}
    config: Mapped[dict] = mapped_column(JSONList, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    phase_definition: Mapped["PhaseDefinition"] = relationship("PhaseDefinition", back_populates="workflow")


# ── PHASE INSTANCES ───────────────────────────────────────────────────────────
class RoadPhase(Base):
    __tablename__ = "road_phases"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    road_id: Mapped[int] = mapped_column(Integer, ForeignKey("road_sections.id"), nullable=False)
    phase_definition_id: Mapped[int] = mapped_column(Integer, ForeignKey("phase_definitions.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    road: Mapped["RoadSection"] = relationship("RoadSection", back_populates="phases")
    phase_definition: Mapped["PhaseDefinition"] = relationship("PhaseDefinition")
    intervals: Mapped[list["PhaseInterval"]] = relationship(
        "PhaseInterval", order_by="PhaseInterval.id", cascade="all, delete-orphan"
    )
    layer_links: Mapped[list["RoadPhaseLayer"]] = relationship("RoadPhaseLayer", cascade="all, delete-orphan")
    check_links: Mapped[list["RoadPhaseCheck"]] = relationship("RoadPhaseCheck", cascade="all, delete-orphan")


class RoadPhaseLayer(Base):
    __tablename__ = "road_phase_layers"
    __table_args__ = (UniqueConstraint("road_phase_id", "layer_definition_id"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    road_phase_id: Mapped[int] = mapped_column(Integer, ForeignKey("road_phases.id"), nullable=False)
    layer_definition_id: Mapped[int] = mapped_column(Integer, ForeignKey("layer_definitions.id"), nullable=False)
    layer_definition: Mapped["LayerDefinition"] = relationship("LayerDefinition")


class RoadPhaseCheck(Base):
    __tablename__ = "road_phase_checks"
    __table_args__ = (UniqueConstraint("road_phase_id", "check_definition_id"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    road_phase_id: Mapped[int] = mapped_column(Integer, ForeignKey("road_phases.id"), nullable=False)
    check_definition_id: Mapped[int] = mapped_column(Integer, ForeignKey("check_definitions.id"), nullable=False)
    check_definition: Mapped["CheckDefinition"] = relationship("CheckDefinition")


class PhaseInterval(Base):
    __tablename__ = "phase_intervals"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    road_phase_id: Mapped[int] = mapped_column(Integer, ForeignKey("road_phases.id"), nullable=False)
    start_pk: Mapped[float] = mapped_column(Float, nullable=False)
    end_pk: Mapped[float] = mapped_column(Float, nullable=False)
    side: Mapped[str] = mapped_column(String(10), default="BOTH")  # LEFT | RIGHT | BOTH
    layers: Mapped[list] = mapped_column(JSONList, default=list)  # free text, pre-canonicalization
    spec: Mapped[Optional[str]] = mapped_column(Text)


# ── SUBMISSIONS & INSPECTIONS ─────────────────────────────────────────────────
class Submission(Base):
    __tablename__ = "submissions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    remark: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class InspectionEntry(Base):
    __tablename__ = "inspection_entries"
    __table_args__ = (
        # Natural key; not unique because legacy spellings only collide after canonicalization
        Index(
            "ix_inspection_entries_natural_key",
            "road_id", "phase_id", "side", "start_pk", "end_pk", "layer_name", "check_name",
        ),
        Index("ix_inspection_entries_status", "status"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    road_id: Mapped[int] = mapped_column(Integer, ForeignKey("road_sections.id"), nullable=False)
    phase_id: Mapped[int] = mapped_column(Integer, ForeignKey("road_phases.id"), nullable=False)
    side: Mapped[str] = mapped_column(String(10), nullable=False)
    start_pk: Mapped[float] = mapped_column(Float, nullable=False)
    end_pk: Mapped[float] = mapped_column(Float, nullable=False)
    layer_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("layer_definitions.id"))
    layer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    check_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("check_definitions.id"))
    check_name: Mapped[str] = mapped_column(String(255), nullable=False)
    types: Mapped[list] = mapped_column(JSONList, default=list)
    status: Mapped[str] = mapped_column(String(20), default="PENDING")
    remark: Mapped[Optional[str]] = mapped_column(Text)
    appointment_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    submission_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("submissions.id"))
    submission_order: Mapped[Optional[int]] = mapped_column(Integer)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    submitted_by: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("users.id"))
    created_by: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("users.id"))
    updated_by: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    road: Mapped["RoadSection"] = relationship("RoadSection")
    phase: Mapped["RoadPhase"] = relationship("RoadPhase")
    submission: Mapped[Optional["Submission"]] = relationship("Submission")
    submitter: Mapped[Optional["User"]] = relationship("User", foreign_keys=[submitted_by])
    creator: Mapped[Optional["User"]] = relationship("User", foreign_keys=[created_by])
    updater: Mapped[Optional["User"]] = relationship("User", foreign_keys=[updated_by])
