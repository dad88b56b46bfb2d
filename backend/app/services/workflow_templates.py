"""
Workflow Templates — per phase type, the ordered layers → checks → allowed
acceptance types that site staff may request.

A phase definition's template comes from, in order:
  1. its stored workflow config (``phase_workflows.config``),
  2. the built-in template whose phase name matches the definition,
  3. a template derived from the definition's default layers/checks,
     every check allowing the fixed inspection types.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.config import FIXED_INSPECTION_TYPES, MEASURES

logger = logging.getLogger("progress-workflows")


@dataclass
class WorkflowCheckTemplate:
    id: str
    name: str
    types: list[str]
    required: bool = True          # must be accepted before the layer counts as done
    notes: Optional[str] = None


@dataclass
class WorkflowLayerTemplate:
    id: str
    name: str
    stage: int
    checks: list[WorkflowCheckTemplate]
    dependencies: list[str] = field(default_factory=list)
    lock_step_with: list[str] = field(default_factory=list)
    parallel_with: list[str] = field(default_factory=list)
    description: Optional[str] = None


@dataclass
class WorkflowTemplate:
    id: str
    phase_name: str
    measure: str
    layers: list[WorkflowLayerTemplate]
    default_types: list[str] = field(default_factory=lambda: list(FIXED_INSPECTION_TYPES))
    description: Optional[str] = None
    side_rule: Optional[str] = None
    phase_definition_id: Optional[int] = None
    is_active: bool = True

    def layer_names(self) -> list[str]:
        return [layer.name for layer in self.layers]

    def check_names(self) -> list[str]:
        names: list[str] = []
        for layer in self.layers:
            names.extend(check.name for check in layer.checks)
        return names


def _simple_layer(
    layer_id: str,
    name: str,
    stage: int,
    checks: list[str],
    deps: Optional[list[str]] = None,
) -> WorkflowLayerTemplate:
    return WorkflowLayerTemplate(
        id=layer_id,
        name=name,
        stage=stage,
        dependencies=list(deps or []),
        checks=[
            WorkflowCheckTemplate(id=f"{layer_id}-check-{idx + 1}", name=check, types=list(FIXED_INSPECTION_TYPES))
            for idx, check in enumerate(checks)
        ],
    )


def _concrete_layer(layer_id: str, name: str, stage: int, deps: list[str], description: Optional[str] = None):
    """Structural layer accepted as rebar → formwork → pour."""
    return WorkflowLayerTemplate(
        id=layer_id,
        name=name,
        stage=stage,
        dependencies=deps,
        description=description,
        checks=[
            WorkflowCheckTemplate(id=f"{layer_id}-rebar", name="钢筋验收", types=["现场验收", "测量验收"]),
            WorkflowCheckTemplate(id=f"{layer_id}-form", name="模板安装验收", types=["现场验收"]),
            WorkflowCheckTemplate(id=f"{layer_id}-pour", name="混凝土浇筑验收", types=["现场验收", "试验验收"]),
        ],
    )


# ── Built-in templates ─────────────────────────────────────────────────────────

CULVERT_WORKFLOW = WorkflowTemplate(
    id="culvert",
    phase_name="涵洞",
    measure="POINT",
    description="涵洞分项按照基坑→垫层→底板/截水墙→墙身/八字墙/顶板/帽石的顺序设置依赖，避免越级报检。",
    side_rule="可左右分开或同时报检，需遵守前置工序与并行锁定规则。",
    layers=[
        WorkflowLayerTemplate(
            id="excavation",
            name="基坑",
            stage=1,
            checks=[
                WorkflowCheckTemplate(
                    id="staking",
                    name="放样与开挖",
                    types=["现场验收", "测量验收"],
                    notes="未完成不得进入垫层或后续任何报检。",
                ),
            ],
        ),
        WorkflowLayerTemplate(
            id="cushion",
            name="垫层",
            stage=2,
            dependencies=["excavation"],
            checks=[
                WorkflowCheckTemplate(
                    id="lean-pour",
                    name="混凝土浇筑验收",
                    types=["现场验收", "试验验收"],
                    notes="完成后才能创建底板/截水墙的报检单。",
                ),
            ],
        ),
        _concrete_layer("base-slab", "底板", 3, ["cushion"]),
        _concrete_layer("cutoff", "截水墙", 3, ["cushion"]),
        _concrete_layer("wall", "墙身", 4, ["base-slab", "cutoff"]),
        _concrete_layer("wing", "八字墙", 4, ["base-slab", "cutoff"]),
        _concrete_layer("roof", "顶板", 4, ["base-slab", "cutoff"], "顶板与帽石应成组报检，避免单独浇筑。"),
        _concrete_layer("cap", "帽石", 4, ["base-slab", "cutoff"], "与顶板同节奏验收钢筋/模板/浇筑。"),
        WorkflowLayerTemplate(
            id="finishing-plaster",
            name="埋墙粉刷",
            stage=5,
            dependencies=["wall", "wing", "roof", "cap"],
            checks=[
                WorkflowCheckTemplate(
                    id="finishing-plaster-check",
                    name="埋墙粉刷验收",
                    types=["现场验收", "试验验收"],
                ),
            ],
        ),
    ],
)

EARTHWORK_WORKFLOW = WorkflowTemplate(
    id="earthwork",
    phase_name="土方",
    measure="LINEAR",
    description="按填土层次逐级验收，确保压实到位后再进入下一层。",
    layers=[
        _simple_layer("fill-1", "第一层填土", 1, ["压实度验收"]),
        _simple_layer("fill-2", "第二层填土", 2, ["压实度验收"], ["fill-1"]),
        _simple_layer("fill-3", "第三层填土", 3, ["压实度验收"], ["fill-2"]),
        _simple_layer("fill-4", "第四层填土", 4, ["压实度验收"], ["fill-3"]),
    ],
)

SUBBASE_WORKFLOW = WorkflowTemplate(
    id="subbase",
    phase_name="垫层",
    measure="LINEAR",
    description="路基垫层整体验收，含压实度、标高与弯沉/CBR 检测。",
    layers=[_simple_layer("subbase", "路基垫层", 1, ["压实度验收", "标高验收", "CBR", "弯沉验收"])],
)

BASE_COURSE_WORKFLOW = WorkflowTemplate(
    id="base-course",
    phase_name="底基层",
    measure="LINEAR",
    description="底基层整体验收，含压实度、标高与弯沉/CBR 检测。",
    layers=[_simple_layer("base-course", "底基层", 1, ["压实度验收", "标高验收", "CBR", "弯沉验收"])],
)

WALKWAY_CULVERT_WORKFLOW = WorkflowTemplate(
    id="walkway-culvert",
    phase_name="过道涵",
    measure="POINT",
    description="简化的涵洞流程：基坑→底板→墙身→顶板，按顺序报检。",
    layers=[
        _simple_layer("excavation", "基坑", 1, ["放样与开挖"]),
        _simple_layer("base-slab", "底板", 2, ["钢筋绑扎验收", "模版安装验收", "混凝土浇筑验收"], ["excavation"]),
        _simple_layer("wall", "墙身", 3, ["钢筋绑扎验收", "模版安装验收", "混凝土浇筑验收"], ["base-slab"]),
        _simple_layer("roof", "顶板", 4, ["钢筋绑扎验收", "模版安装验收", "混凝土浇筑验收"], ["wall"]),
    ],
)

SIDE_DITCH_WORKFLOW = WorkflowTemplate(
    id="side-ditch",
    phase_name="边沟",
    measure="LINEAR",
    description="基坑验收后进行边沟安装，可并行左/右侧施工。",
    layers=[
        _simple_layer("excavation", "基坑", 1, ["放样与开挖"]),
        _simple_layer("ditch", "边沟", 2, ["安装验收"], ["excavation"]),
    ],
)

PIPE_CULVERT_WORKFLOW = WorkflowTemplate(
    id="pipe-culvert",
    phase_name="圆管涵",
    measure="LINEAR",
    description="基坑完成后安装圆管涵，按顺序报检。",
    layers=[
        _simple_layer("excavation", "基坑", 1, ["放样与开挖"]),
        _simple_layer("pipe", "圆管涵", 2, ["安装验收"], ["excavation"]),
    ],
)

CURB_WORKFLOW = WorkflowTemplate(
    id="curb",
    phase_name="路缘石",
    measure="LINEAR",
    layers=[_simple_layer("curb", "路缘石", 1, ["安装验收"])],
)

SLAB_COVER_WORKFLOW = WorkflowTemplate(
    id="slab-cover",
    phase_name="盖板",
    measure="LINEAR",
    layers=[_simple_layer("cover", "盖板", 1, ["安装验收"])],
)

OLD_CULVERT_REMOVAL_WORKFLOW = WorkflowTemplate(
    id="old-culvert-removal",
    phase_name="旧涵挖除",
    measure="POINT",
    layers=[_simple_layer("removal", "原有涵洞", 1, ["尺寸及清理验收"])],
)

OLD_DITCH_REMOVAL_WORKFLOW = WorkflowTemplate(
    id="old-ditch-removal",
    phase_name="旧边沟挖除",
    measure="LINEAR",
    layers=[_simple_layer("removal", "原有边沟", 1, ["起终点桩号及清理完成验收"])],
)

DEFAULT_WORKFLOW_TEMPLATES: list[WorkflowTemplate] = [
    CULVERT_WORKFLOW,
    EARTHWORK_WORKFLOW,
    SUBBASE_WORKFLOW,
    BASE_COURSE_WORKFLOW,
    WALKWAY_CULVERT_WORKFLOW,
    SIDE_DITCH_WORKFLOW,
    PIPE_CULVERT_WORKFLOW,
    CURB_WORKFLOW,
    SLAB_COVER_WORKFLOW,
    OLD_CULVERT_REMOVAL_WORKFLOW,
    OLD_DITCH_REMOVAL_WORKFLOW,
]


# ── Parsing ────────────────────────────────────────────────────────────────────

def _clean_names(values: Any) -> list[str]:
    if not isinstance(values, list):
        return []
    result: list[str] = []
    for item in values:
        text = str(item).strip() if item is not None else ""
        if text and text not in result:
            result.append(text)
    return result


def template_from_config(
    config: dict,
    phase_definition_id: Optional[int] = None,
    phase_name: str = "",
    measure: str = "LINEAR",
) -> WorkflowTemplate:
    """
    Build a template from a stored JSON config, tolerating missing fields.

    Checks without their own ``types`` inherit the template's default types;
    a template without default types gets the fixed inspection types.
    """
    default_types = _clean_names(config.get("defaultTypes")) or list(FIXED_INSPECTION_TYPES)
    layers: list[WorkflowLayerTemplate] = []
    for idx, raw_layer in enumerate(config.get("layers") or []):
        if not isinstance(raw_layer, dict):
            continue
        layer_id = str(raw_layer.get("id") or f"{phase_definition_id}-layer-{idx + 1}")
        checks: list[WorkflowCheckTemplate] = []
        for check_idx, raw_check in enumerate(raw_layer.get("checks") or []):
            if not isinstance(raw_check, dict):
                continue
            checks.append(
                WorkflowCheckTemplate(
                    id=str(raw_check.get("id") or f"{layer_id}-check-{check_idx + 1}"),
                    name=str(raw_check.get("name") or "").strip() or f"验收内容 {check_idx + 1}",
                    types=_clean_names(raw_check.get("types")) or list(default_types),
                    required=bool(raw_check.get("required", True)),
                    notes=raw_check.get("notes"),
                )
            )
        try:
            stage = max(1, int(raw_layer.get("stage") or 1))
        except (TypeError, ValueError):
            stage = 1
        layers.append(
            WorkflowLayerTemplate(
                id=layer_id,
                name=str(raw_layer.get("name") or "").strip(),
                stage=stage,
                checks=checks,
                dependencies=_clean_names(raw_layer.get("dependencies")),
                lock_step_with=_clean_names(raw_layer.get("lockStepWith")),
                parallel_with=_clean_names(raw_layer.get("parallelWith")),
                description=raw_layer.get("description"),
            )
        )
    raw_measure = str(config.get("measure") or measure).upper()
    return WorkflowTemplate(
        id=str(config.get("id") or f"phase-{phase_definition_id}"),
        phase_name=str(config.get("phaseName") or phase_name),
        measure=raw_measure if raw_measure in MEASURES else "LINEAR",
        layers=layers,
        default_types=default_types,
        description=config.get("description"),
        side_rule=config.get("sideRule"),
        phase_definition_id=phase_definition_id,
    )


def template_from_definition(
    phase_definition_id: int,
    phase_name: str,
    measure: str,
    layer_names: list[str],
    check_names: list[str],
) -> WorkflowTemplate:
    """Chain the definition's default layers in order, each carrying every default check."""
    layers = [
        WorkflowLayerTemplate(
            id=f"{phase_definition_id}-layer-{idx + 1}",
            name=name,
            stage=idx + 1,
            dependencies=[] if idx == 0 else [f"{phase_definition_id}-layer-{idx}"],
            checks=[
                WorkflowCheckTemplate(
                    id=f"{phase_definition_id}-check-{idx + 1}-{check_idx + 1}",
                    name=check,
                    types=list(FIXED_INSPECTION_TYPES),
                )
                for check_idx, check in enumerate(check_names)
            ],
        )
        for idx, name in enumerate(layer_names)
    ]
    return WorkflowTemplate(
        id=f"phase-{phase_definition_id}",
        phase_name=phase_name,
        measure=measure if measure in MEASURES else "LINEAR",
        layers=layers,
        phase_definition_id=phase_definition_id,
    )


def builtin_template_for(phase_name: str) -> Optional[WorkflowTemplate]:
    for template in DEFAULT_WORKFLOW_TEMPLATES:
        if template.phase_name == (phase_name or "").strip():
            return template
    return None


# ── Loading ────────────────────────────────────────────────────────────────────

async def load_active_workflows(session: AsyncSession) -> list[WorkflowTemplate]:
    """Resolve one template per active phase definition, in definition id order."""
    from app.models.orm_models import PhaseDefinition, PhaseDefinitionCheck, PhaseDefinitionLayer

    result = await session.execute(
        select(PhaseDefinition)
        .where(PhaseDefinition.is_active.is_(True))
        .options(
            selectinload(PhaseDefinition.workflow),
            selectinload(PhaseDefinition.default_layers).selectinload(PhaseDefinitionLayer.layer_definition),
            selectinload(PhaseDefinition.default_checks).selectinload(PhaseDefinitionCheck.check_definition),
        )
        .order_by(PhaseDefinition.id)
    )
    templates: list[WorkflowTemplate] = []
    for definition in result.scalars().all():
        workflow = definition.workflow
        if workflow is not None and not workflow.is_active:
            continue
        if workflow is not None and isinstance(workflow.config, dict) and workflow.config.get("layers"):
            template = template_from_config(
                workflow.config,
                phase_definition_id=definition.id,
                phase_name=definition.name,
                measure=definition.measure,
            )
        else:
            builtin = builtin_template_for(definition.name)
            if builtin is not None:
                template = template_from_config(
                    template_to_config(builtin),
                    phase_definition_id=definition.id,
                    phase_name=definition.name,
                    measure=builtin.measure,
                )
            else:
                template = template_from_definition(
                    definition.id,
                    definition.name,
                    definition.measure,
                    [link.layer_definition.name for link in definition.default_layers],
                    [link.check_definition.name for link in definition.default_checks],
                )
        templates.append(template)
    logger.debug(f"Loaded {len(templates)} active workflow templates")
    return templates


def template_to_config(template: WorkflowTemplate) -> dict:
    """Serialize a template into the stored JSON config shape."""
    return {
        "id": template.id,
        "phaseName": template.phase_name,
        "measure": template.measure,
        "description": template.description,
        "sideRule": template.side_rule,
        "defaultTypes": list(template.default_types),
        "layers": [
            {
                "id": layer.id,
                "name": layer.name,
                "stage": layer.stage,
                "dependencies": list(layer.dependencies),
                "lockStepWith": list(layer.lock_step_with),
                "parallelWith": list(layer.parallel_with),
                "description": layer.description,
                "checks": [
                    {
                        "id": check.id,
                        "name": check.name,
                        "types": list(check.types),
                        "required": check.required,
                        "notes": check.notes,
                    }
                    for check in layer.checks
                ],
            }
            for layer in template.layers
        ],
    }

