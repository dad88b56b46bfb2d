"""
Template Consistency Auditor — read-only drift report between road phases
and the template vocabulary of their phase definitions.

Violation codes:
  definitionMissingDefaults      — definition has no default layers or no default checks
  intervalLayerOutsideTemplate   — interval free-text layer not in the template
  phaseLayerLinkOutsideTemplate  — bound layer link not in the template
  phaseCheckLinkOutsideTemplate  — bound check link not in the template

Remediation is a separate explicit operation; nothing here writes.
"""
from __future__ import annotations

import logging
import time
import warnings
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.models.orm_models import (
    PhaseDefinition,
    PhaseDefinitionCheck,
    PhaseDefinitionLayer,
    RoadPhase,
    RoadPhaseCheck,
    RoadPhaseLayer,
)
from app.services.inspection_errors import TemplateDriftWarning
from app.services.perf_monitor import timed_async, tracker
from app.services.progress_dictionary import ProgressDictionary, normalize_key

logger = logging.getLogger("progress-audit")

DEFINITION_MISSING_DEFAULTS = "definitionMissingDefaults"
INTERVAL_LAYER_OUTSIDE_TEMPLATE = "intervalLayerOutsideTemplate"
PHASE_LAYER_LINK_OUTSIDE_TEMPLATE = "phaseLayerLinkOutsideTemplate"
PHASE_CHECK_LINK_OUTSIDE_TEMPLATE = "phaseCheckLinkOutsideTemplate"

VIOLATION_CODES = (
    DEFINITION_MISSING_DEFAULTS,
    INTERVAL_LAYER_OUTSIDE_TEMPLATE,
    PHASE_LAYER_LINK_OUTSIDE_TEMPLATE,
    PHASE_CHECK_LINK_OUTSIDE_TEMPLATE,
)


@dataclass(frozen=True)
class IntervalSnapshot:
    id: int
    side: str
    start_pk: float
    end_pk: float
    layers: tuple[str, ...] = ()
    spec: Optional[str] = None


@dataclass(frozen=True)
class LinkSnapshot:
    definition_id: int
    name: str


@dataclass(frozen=True)
class PhaseSnapshot:
    road_phase_id: int
    phase_name: str
    definition_id: int
    definition_name: str
    template_layers: tuple[str, ...] = ()
    template_checks: tuple[str, ...] = ()
    intervals: tuple[IntervalSnapshot, ...] = ()
    layer_links: tuple[LinkSnapshot, ...] = ()
    check_links: tuple[LinkSnapshot, ...] = ()


@dataclass
class Violation:
    code: str
    definition_id: int
    road_phase_id: Optional[int] = None
    phase_name: Optional[str] = None
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "definition_id": self.definition_id,
            "road_phase_id": self.road_phase_id,
            "phase_name": self.phase_name,
            **self.detail,
        }


@dataclass
class TemplateAuditReport:
    phases_scanned: int = 0
    violations: list[Violation] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def has_drift(self) -> bool:
        return bool(self.violations)

    def by_code(self, code: str) -> list[Violation]:
        return [v for v in self.violations if v.code == code]

    def counters(self) -> dict[str, int]:
        counts = {code: len(self.by_code(code)) for code in VIOLATION_CODES}
        counts["phases_scanned"] = self.phases_scanned
        return counts

    def to_dict(self) -> dict[str, Any]:
        report: dict[str, Any] = {code: [v.to_dict() for v in self.by_code(code)] for code in VIOLATION_CODES}
        report["summary"] = self.counters()
        report["duration_ms"] = self.duration_ms
        return report


def _outside(names: Iterable[str], template_keys: set[str]) -> list[str]:
    return [name for name in names if normalize_key(name) not in template_keys]


def audit_phase_templates(
    phases: Iterable[PhaseSnapshot],
    dictionary: ProgressDictionary,
) -> TemplateAuditReport:
    """Compare every phase against its definition's template vocabulary."""
    report = TemplateAuditReport()
    reported_definitions: set[int] = set()
    for phase in phases:
        report.phases_scanned += 1
        template_layers = dictionary.canonicalize("layer", phase.template_layers)
        template_checks = dictionary.canonicalize("check", phase.template_checks)
        layer_keys = {normalize_key(name) for name in template_layers}
        check_keys = {normalize_key(name) for name in template_checks}

        if (not template_layers or not template_checks) and phase.definition_id not in reported_definitions:
            reported_definitions.add(phase.definition_id)
            missing = [label for label, names in (("layers", template_layers), ("checks", template_checks)) if not names]
            report.violations.append(Violation(
                code=DEFINITION_MISSING_DEFAULTS,
                definition_id=phase.definition_id,
                detail={"definition_name": phase.definition_name, "missing": missing},
            ))

        for interval in phase.intervals:
            invalid = _outside(dictionary.canonicalize("layer", interval.layers), layer_keys)
            if invalid:
                report.violations.append(Violation(
                    code=INTERVAL_LAYER_OUTSIDE_TEMPLATE,
                    definition_id=phase.definition_id,
                    road_phase_id=phase.road_phase_id,
                    phase_name=phase.phase_name,
                    detail={
                        "interval_id": interval.id,
                        "side": interval.side,
                        "start_pk": interval.start_pk,
                        "end_pk": interval.end_pk,
                        "spec": interval.spec,
                        "invalid_layers": invalid,
                        "template_layers": template_layers,
                    },
                ))

        for code, links, keys, template_names, kind in (
            (PHASE_LAYER_LINK_OUTSIDE_TEMPLATE, phase.layer_links, layer_keys, template_layers, "layer"),
            (PHASE_CHECK_LINK_OUTSIDE_TEMPLATE, phase.check_links, check_keys, template_checks, "check"),
        ):
            for link in links:
                canonical = dictionary.canonical_term(kind, link.name)
                if normalize_key(canonical) in keys:
                    continue
                report.violations.append(Violation(
                    code=code,
                    definition_id=phase.definition_id,
                    road_phase_id=phase.road_phase_id,
                    phase_name=phase.phase_name,
                    detail={
                        f"{kind}_id": link.definition_id,
                        f"{kind}_name": link.name,
                        f"template_{kind}s": template_names,
                    },
                ))
    return report


async def load_phase_snapshots(session: AsyncSession) -> list[PhaseSnapshot]:
    result = await session.execute(
        select(RoadPhase)
        .options(
            selectinload(RoadPhase.intervals),
            selectinload(RoadPhase.layer_links).selectinload(RoadPhaseLayer.layer_definition),
            selectinload(RoadPhase.check_links).selectinload(RoadPhaseCheck.check_definition),
            selectinload(RoadPhase.phase_definition)
            .selectinload(PhaseDefinition.default_layers)
            .selectinload(PhaseDefinitionLayer.layer_definition),
            selectinload(RoadPhase.phase_definition)
            .selectinload(PhaseDefinition.default_checks)
            .selectinload(PhaseDefinitionCheck.check_definition),
        )
        .order_by(RoadPhase.id)
    )
    snapshots = []
    for phase in result.scalars().all():
        definition = phase.phase_definition
        snapshots.append(PhaseSnapshot(
            road_phase_id=phase.id,
            phase_name=phase.name,
            definition_id=phase.phase_definition_id,
            definition_name=definition.name,
            template_layers=tuple(link.layer_definition.name for link in definition.default_layers),
            template_checks=tuple(link.check_definition.name for link in definition.default_checks),
            intervals=tuple(
                IntervalSnapshot(
                    id=interval.id,
                    side=interval.side,
                    start_pk=interval.start_pk,
                    end_pk=interval.end_pk,
                    layers=tuple(v for v in (interval.layers or []) if isinstance(v, str)),
                    spec=interval.spec,
                )
                for interval in phase.intervals
            ),
            layer_links=tuple(
                LinkSnapshot(link.layer_definition_id, link.layer_definition.name) for link in phase.layer_links
            ),
            check_links=tuple(
                LinkSnapshot(link.check_definition_id, link.check_definition.name) for link in phase.check_links
            ),
        ))
    return snapshots


@timed_async
async def run_template_audit(session: AsyncSession, dictionary: ProgressDictionary) -> TemplateAuditReport:
    """Audit every road phase; emits TemplateDriftWarning when drift is found."""
    start = time.perf_counter()
    try:
        report = audit_phase_templates(await load_phase_snapshots(session), dictionary)
    except Exception:
        tracker.record_error("template_audit")
        raise
    report.duration_ms = round((time.perf_counter() - start) * 1000, 2)
    tracker.record_run("template_audit", report.duration_ms, report.counters())

    if report.has_drift:
        summary = {code: count for code, count in report.counters().items() if code in VIOLATION_CODES and count}
        message = f"Template drift in {report.phases_scanned} phases: {summary}"
        logger.warning(message, extra={"violation_count": len(report.violations)})
        warnings.warn(message, TemplateDriftWarning, stacklevel=2)
    else:
        logger.info(f"Template audit clean across {report.phases_scanned} phases")
    return report
