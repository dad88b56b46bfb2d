"""
Acceptance-Type Rules — which acceptance types a check may legally carry.

Resolution order (first match wins):
  1. HARD_TYPE_OVERRIDES — code-level table for safety-critical checks; a
     misconfigured workflow template can never widen these.
  2. Workflow templates — the allowed list on the matching check. When the
     same check appears with different lists, the shorter list is kept
     (first-encountered on a tie).
  3. Nothing governs the check — requested types pass through canonicalized.
"""
from __future__ import annotations

import logging
import unicodedata
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.services.progress_dictionary import ProgressDictionary, normalize_key
from app.services.workflow_templates import WorkflowTemplate, load_active_workflows

logger = logging.getLogger("progress-type-rules")


# check name → acceptance types; names are canonicalized when the resolver is built
HARD_TYPE_OVERRIDES: dict[str, list[str]] = {
    "钢筋绑扎验收": ["现场验收", "测量验收"],
    "模板安装验收": ["现场验收"],
    "混凝土浇筑验收": ["现场验收", "试验验收"],
}


def rule_key(value: str) -> str:
    """Lower-cased, accent-free, whitespace-free key for rule lookups."""
    decomposed = unicodedata.normalize("NFKD", value or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return "".join(stripped.lower().split())


def _prefer_stricter(table: dict[str, list[str]], key: str, types: list[str]) -> None:
    existing = table.get(key)
    if existing is None or len(types) < len(existing):
        table[key] = types


class TypeRuleResolver:
    """Two-tier allowed-type lookup shared by write, dedup and audit paths."""

    def __init__(
        self,
        dictionary: ProgressDictionary,
        templates: Optional[Iterable[WorkflowTemplate]] = None,
        overrides: Optional[dict[str, list[str]]] = None,
    ) -> None:
        self.dictionary = dictionary
        self._overrides: dict[str, list[str]] = {}
        for check_name, types in (HARD_TYPE_OVERRIDES if overrides is None else overrides).items():
            self._overrides[self.check_key(check_name)] = dictionary.canonicalize("type", types)

        self._template_global: dict[str, list[str]] = {}
        self._template_by_definition: dict[int, dict[str, list[str]]] = {}
        for template in templates or []:
            if not template.is_active:
                continue
            scoped = None
            if template.phase_definition_id is not None:
                scoped = self._template_by_definition.setdefault(template.phase_definition_id, {})
            for layer in template.layers:
                for check in layer.checks:
                    types = dictionary.canonicalize("type", check.types)
                    if not check.name or not types:
                        continue
                    key = self.check_key(check.name)
                    existing = self._template_global.get(key)
                    if existing is not None and existing != types:
                        logger.info(
                            f"Template conflict for check '{check.name}': "
                            f"{existing} vs {types}; keeping the shorter list"
                        )
                    _prefer_stricter(self._template_global, key, types)
                    if scoped is not None:
                        _prefer_stricter(scoped, key, types)

    def check_key(self, check_name: str) -> str:
        return rule_key(self.dictionary.canonical_term("check", check_name or ""))

    def governing_source(self, check_name: str, phase_definition_id: Optional[int] = None) -> Optional[str]:
        """"override", "template" or None, naming the tier that governs the check."""
        if not check_name or not check_name.strip():
            return None
        key = self.check_key(check_name)
        if key in self._overrides:
            return "override"
        scoped = self._template_by_definition.get(phase_definition_id, {})
        if key in scoped or key in self._template_global:
            return "template"
        return None

    def allowed_types(self, check_name: str, phase_definition_id: Optional[int] = None) -> Optional[list[str]]:
        """Governing set for the check, or None when nothing governs it."""
        source = self.governing_source(check_name, phase_definition_id)
        if source is None:
            return None
        key = self.check_key(check_name)
        if source == "override":
            return list(self._overrides[key])
        scoped = self._template_by_definition.get(phase_definition_id, {})
        return list(scoped.get(key) or self._template_global[key])

    def clamp_types(
        self,
        check_name: str,
        requested: Optional[Iterable[str]],
        phase_definition_id: Optional[int] = None,
    ) -> list[str]:
        """Canonicalize ``requested`` and keep only what the governing set allows."""
        canonical = self.dictionary.canonicalize("type", requested or [])
        allowed = self.allowed_types(check_name, phase_definition_id)
        if allowed is None:
            return canonical
        allowed_keys = {normalize_key(t) for t in allowed}
        return [t for t in canonical if normalize_key(t) in allowed_keys]

    def merge_types(
        self,
        check_name: str,
        current: Optional[Iterable[str]],
        incoming: Optional[Iterable[str]],
        phase_definition_id: Optional[int] = None,
    ) -> list[str]:
        """Union of both sets, re-clamped so a merge never yields an illegal combination."""
        union = [*(current or []), *(incoming or [])]
        return self.clamp_types(check_name, union, phase_definition_id)

    def disallowed_types(
        self,
        check_name: str,
        requested: Optional[Iterable[str]],
        phase_definition_id: Optional[int] = None,
    ) -> list[str]:
        """Requested types (canonical) that the governing set rejects."""
        allowed = self.allowed_types(check_name, phase_definition_id)
        if allowed is None:
            return []
        allowed_keys = {normalize_key(t) for t in allowed}
        return [
            t for t in self.dictionary.canonicalize("type", requested or [])
            if normalize_key(t) not in allowed_keys
        ]


async def load_type_rule_resolver(session: AsyncSession, dictionary: ProgressDictionary) -> TypeRuleResolver:
    """Resolver backed by the currently active workflow templates."""
    templates = await load_active_workflows(session)
    return TypeRuleResolver(dictionary, templates)
