"""
conftest.py — Shared pytest fixtures for the road progress inspection test suite.

Pure-logic tests use the dictionary / resolver fixtures directly.  Store,
dedup, audit and route tests run against an in-memory SQLite database
(aiosqlite + StaticPool) so every connection sees the same data.

Import-path bootstrapping:
    The ``backend/`` directory is inserted into sys.path so that all
    ``app.*`` imports resolve correctly regardless of where pytest is invoked.
"""

import sys
import os
from dataclasses import dataclass

import pytest

# ---------------------------------------------------------------------------
# Ensure ``backend/`` is on the import path before any app imports occur.
# ---------------------------------------------------------------------------
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402


# ---------------------------------------------------------------------------
# Vocabulary fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def dictionary():
    """Built-in bilingual vocabulary, canonical locale zh."""
    from app.services.progress_dictionary import build_dictionary
    return build_dictionary()


@pytest.fixture(scope="session")
def french_dictionary():
    """
    Small French-canonical vocabulary used by the end-to-end merge scenario.

    Layer Fondation, check Épaisseur, types Visuel / Géométrie; no rule
    governs Épaisseur so merged types are a plain union.
    """
    from app.services.progress_dictionary import ProgressDictionary, Term
    return ProgressDictionary(
        {
            "phase": {},
            "layer": {"Fondation": Term("底基层", "Fondation")},
            "check": {"Épaisseur": Term("厚度验收", "Épaisseur"), "Epaisseur": Term("厚度验收", "Épaisseur")},
            "type": {"Visuel": Term("外观验收", "Visuel"), "Géométrie": Term("几何验收", "Géométrie")},
        },
        canonical_locale="fr",
    )


@pytest.fixture(scope="session")
def resolver(dictionary):
    """Resolver over the hard overrides and every built-in workflow template (global scope)."""
    from app.services.type_rules import TypeRuleResolver
    from app.services.workflow_templates import DEFAULT_WORKFLOW_TEMPLATES
    return TypeRuleResolver(dictionary, DEFAULT_WORKFLOW_TEMPLATES)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def db_engine():
    """Fresh in-memory SQLite schema per test."""
    from app.db import Base
    from app.models import orm_models  # noqa: F401

    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@dataclass
class Seed:
    """Ids of the rows created by the ``seeded`` fixture."""
    road_id: int
    other_road_id: int
    base_course_definition_id: int
    culvert_definition_id: int
    base_course_phase_id: int
    culvert_phase_id: int
    other_road_phase_id: int
    surveyor_id: int
    inspector_id: int
    submission_id: int


@pytest.fixture
async def seeded(session_factory):
    """
    Two roads, two phase definitions and three road phases:

      - 底基层 (LINEAR) on road RN1, defaults 底基层 / 压实度验收 + 标高验收
      - 涵洞 (POINT, reported per side) on road RN1, with a LEFT-only point at PK 1200
      - 底基层 on road RN2

    Users: surveyor, inspector.  Submission: SUB-001.
    """
    from app.models.orm_models import (
        CheckDefinition,
        LayerDefinition,
        PhaseDefinition,
        PhaseDefinitionCheck,
        PhaseDefinitionLayer,
        PhaseInterval,
        RoadPhase,
        RoadSection,
        Submission,
        User,
    )

    async with session_factory() as s:
        surveyor = User(username="surveyor")
        inspector = User(username="inspector")
        road = RoadSection(name="RN1 Nord", slug="rn1")
        other_road = RoadSection(name="RN2 Sud", slug="rn2")
        base_layer = LayerDefinition(name="底基层")
        compaction = CheckDefinition(name="压实度验收")
        levels = CheckDefinition(name="标高验收")
        base_course = PhaseDefinition(name="底基层", measure="LINEAR")
        base_course.default_layers = [PhaseDefinitionLayer(layer_definition=base_layer, sort_order=0)]
        base_course.default_checks = [
            PhaseDefinitionCheck(check_definition=compaction, sort_order=0),
            PhaseDefinitionCheck(check_definition=levels, sort_order=1),
        ]
        culvert = PhaseDefinition(name="涵洞", measure="POINT", point_has_sides=True)
        submission = Submission(code="SUB-001", remark="first batch")
        s.add_all([surveyor, inspector, road, other_road, base_course, culvert, submission])
        await s.flush()

        base_phase = RoadPhase(road_id=road.id, phase_definition_id=base_course.id, name="底基层 PK0-PK2000")
        culvert_phase = RoadPhase(road_id=road.id, phase_definition_id=culvert.id, name="涵洞")
        culvert_phase.intervals = [PhaseInterval(start_pk=1200, end_pk=1200, side="LEFT", layers=["基坑"])]
        other_phase = RoadPhase(road_id=other_road.id, phase_definition_id=base_course.id, name="底基层")
        s.add_all([base_phase, culvert_phase, other_phase])
        await s.commit()

        return Seed(
            road_id=road.id,
            other_road_id=other_road.id,
            base_course_definition_id=base_course.id,
            culvert_definition_id=culvert.id,
            base_course_phase_id=base_phase.id,
            culvert_phase_id=culvert_phase.id,
            other_road_phase_id=other_phase.id,
            surveyor_id=surveyor.id,
            inspector_id=inspector.id,
            submission_id=submission.id,
        )


@pytest.fixture
def insert_entry(session_factory):
    """
    Insert an InspectionEntry row directly, bypassing validation — used to
    stage legacy duplicates and spellings that the write path would reject.
    """
    from app.models.orm_models import InspectionEntry

    async def _insert(**fields):
        values = {
            "side": "BOTH",
            "start_pk": 0.0,
            "end_pk": 100.0,
            "layer_name": "底基层",
            "check_name": "压实度验收",
            "types": ["现场验收"],
            "status": "PENDING",
        }
        values.update(fields)
        async with session_factory() as s:
            row = InspectionEntry(**values)
            s.add(row)
            await s.commit()
            return row.id

    return _insert
