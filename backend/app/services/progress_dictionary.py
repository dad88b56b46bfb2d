"""
Progress Vocabulary Dictionary — bilingual (zh / fr) canonicalization of the
free-text layer, check and acceptance-type names typed by site staff.

Every synonym (either language, any casing, stray whitespace) maps to one
canonical display string. All write, dedup and audit paths go through
``ProgressDictionary.canonicalize`` so duplicate detection sees one spelling.

Public API:
    dictionary = get_dictionary()
    dictionary.canonicalize("layer", ["底基层", " fondation "])   # -> ["底基层"]
    dictionary.localize("layer", "底基层", "fr")                   # -> "Fondation"
"""
from __future__ import annotations

import json
import logging
import os
from functools import lru_cache
from types import MappingProxyType
from typing import Iterable, Mapping, NamedTuple, Optional

from app.config import CANONICAL_LOCALE, DICTIONARY_KINDS, DICTIONARY_PATH

logger = logging.getLogger("progress-dictionary")


class Term(NamedTuple):
    zh: str
    fr: str


def normalize_key(value: str) -> str:
    """Lookup key used for synonym matching: trimmed and lower-cased."""
    return value.strip().lower()


# ── Built-in vocabulary ────────────────────────────────────────────────────────
#
# Keys are synonyms as typed in the field; values are the bilingual term.
# Both spellings of every term are registered as synonyms automatically, so
# only irregular spellings need an explicit key.

PROGRESS_TERMS: dict[str, dict[str, Term]] = {
    "phase": {
        "边沟": Term("边沟", "Caniveau"),
        "现浇边沟": Term("现浇边沟", "Caniveau coulé en place"),
        "路缘石": Term("路缘石", "Bordure"),
        "圆管涵": Term("圆管涵", "Buse circulaire"),
        "涵洞": Term("涵洞", "Dalot"),
        "盖板": Term("盖板", "Dallette"),
        "旧涵挖除": Term("旧涵挖除", "Demolision Dalot"),
        "旧边沟挖除": Term("旧边沟挖除", "Demolistion Caniveaux"),
        "原有涵洞": Term("原有涵洞", "Dalot Exitant"),
        "过道涵": Term("过道涵", "Dalot Traversee"),
        "底基层": Term("底基层", "Fondation"),
        "垫层": Term("垫层", "Couche de forme"),
        "路基垫层": Term("路基垫层", "Couche de Forme"),
        "Beton Proprete": Term("垫层", "Béton de propreté"),
        "土方": Term("土方", "Terrassement"),
        "基坑": Term("基坑", "Fouille"),
        "底板": Term("底板", "Radier"),
        "墙身": Term("墙身", "Voile"),
        "顶板": Term("顶板", "Tablier"),
    },
    "layer": {
        "预制边沟": Term("预制边沟", "Caniveau préfabriqué"),
        "现浇边沟": Term("现浇边沟", "Caniveau coulé en place"),
        "预制路缘石": Term("预制路缘石", "Bordure préfabriquée"),
        "路缘石": Term("路缘石", "Bordure"),
        "预制圆管涵": Term("预制圆管涵", "Buse préfabriquée"),
        "圆管涵": Term("圆管涵", "Buse circulaire"),
        "旧涵挖除": Term("旧涵挖除", "Demolision Dalot"),
        "旧边沟挖除": Term("旧边沟挖除", "Demolistion Caniveaux"),
        "原有涵洞": Term("原有涵洞", "Dalot Exitant"),
        "边沟": Term("边沟", "Caniveau"),
        "原有边沟": Term("原有边沟", "Caniveau existant"),
        "Caniveux Exitant": Term("原有边沟", "Caniveau existant"),
        "过道涵": Term("过道涵", "Dalot Traversee"),
        "底基层": Term("底基层", "Fondation"),
        "垫层": Term("垫层", "Couche de forme"),
        "路基垫层": Term("路基垫层", "Couche de Forme"),
        "埋墙粉刷": Term("埋墙粉刷", "Badigeonnage"),
        "土方": Term("土方", "Terrassement"),
        "基坑": Term("基坑", "Fouille"),
        "底板": Term("底板", "Radier"),
        "墙身": Term("墙身", "Voile"),
        "顶板": Term("顶板", "Tablier"),
        "帽石": Term("帽石", "Guide Roue"),
        "第一层填土": Term("第一层填土", "Remblais 1ère couche"),
        "第二层填土": Term("第二层填土", "Remblais 2e couche"),
        "第三层填土": Term("第三层填土", "Remblais 3e couche"),
        "第四层填土": Term("第四层填土", "Remblais 4e couche"),
        "第五层填土": Term("第五层填土", "Remblais 5e couche"),
        "第六层填土": Term("第六层填土", "Remblais 6e couche"),
        "第七层填土": Term("第七层填土", "Remblais 7e couche"),
        "第八层填土": Term("第八层填土", "Remblais 8e couche"),
        "八字墙": Term("八字墙", "Aile"),
        "截水墙": Term("截水墙", "Bêche"),
        "Beche": Term("截水墙", "Bêche"),
        "跌水井": Term("跌水井", "Chute d'eau"),
    },
    "check": {
        "钢筋绑扎验收": Term("钢筋绑扎验收", "Ferraillage"),
        "模版验收": Term("模版验收", "Réception coffrage"),
        "模版安装验收": Term("模板安装验收", "Coffrage"),
        "模板安装验收": Term("模板安装验收", "Coffrage"),
        "混凝土浇筑验收": Term("混凝土浇筑验收", "Réception bétonnage"),
        "放样与开挖": Term("放样与开挖", "Implantation et fouille"),
        "Implatation et fouille": Term("放样与开挖", "Implantation et fouille"),
        "起终点桩号及清理完成验收": Term("起终点桩号及清理完成验收", "Réception des sections et nettoyage"),
        "Recption des Section et Netoyer": Term("起终点桩号及清理完成验收", "Réception des sections et nettoyage"),
        "尺寸及清理验收": Term("尺寸及清理验收", "Réception dimensions et nettoyage"),
        "压实度验收": Term("压实度验收", "Proctor"),
        "标高验收": Term("标高验收", "Nivellement"),
        "Nivelement": Term("标高验收", "Nivellement"),
        "弯沉验收": Term("弯沉验收", "Déflexion"),
        "Deflextion": Term("弯沉验收", "Déflexion"),
        "安装验收": Term("安装验收", "Réception de pose"),
        "Reception Pose": Term("安装验收", "Réception de pose"),
        "埋墙粉刷验收": Term("埋墙粉刷验收", "Badigeonnage"),
    },
    "type": {
        "现场验收": Term("现场验收", "GENIE CIVIL"),
        "测量验收": Term("测量验收", "TOPOGRAPHIQUE"),
        "TOPOGRAPIQUE": Term("测量验收", "TOPOGRAPHIQUE"),
        "试验验收": Term("试验验收", "GEOTECHNIQUE"),
        "其他": Term("其他", "Autre"),
    },
}

# Phases in which the 垫层 layer is lean concrete rather than road bedding
CULVERT_PHASE_KEYS = frozenset(normalize_key(name) for name in ("涵洞", "过道涵", "Dalot"))
LEAN_CONCRETE_LAYER_KEY = normalize_key("垫层")


class ProgressDictionary:
    """
    Immutable synonym → term lookup for every vocabulary kind.

    ``canonical_locale`` picks which spelling of a term is stored and emitted
    by ``canonicalize``; ``localize`` renders either spelling for display.
    """

    def __init__(
        self,
        terms: Mapping[str, Mapping[str, Term]],
        canonical_locale: str = "zh",
    ) -> None:
        if canonical_locale not in ("zh", "fr"):
            raise ValueError(f"Unsupported canonical locale: {canonical_locale}")
        self.canonical_locale = canonical_locale
        other_locale = "fr" if canonical_locale == "zh" else "zh"
        tables: dict[str, Mapping[str, Term]] = {}
        exact_tables: dict[str, Mapping[str, Term]] = {}
        spellings: dict[str, Mapping[str, str]] = {}
        for kind, entries in terms.items():
            table: dict[str, Term] = {}
            canonical_by_key: dict[str, str] = {}
            # Canonical spellings first so every canonical form maps to itself,
            # then explicit synonyms, then the other locale's spelling.
            for term in entries.values():
                spelling = getattr(term, canonical_locale).strip()
                key = normalize_key(spelling)
                if key:
                    table.setdefault(key, term)
                    canonical_by_key.setdefault(key, spelling)
            for synonym, term in entries.items():
                key = normalize_key(synonym)
                if key:
                    table.setdefault(key, term)
            table, exact = self._register_other_locale(kind, table, entries.values(), canonical_locale, other_locale)
            tables[kind] = MappingProxyType(table)
            exact_tables[kind] = MappingProxyType(exact)
            spellings[kind] = MappingProxyType(canonical_by_key)
        self._tables: Mapping[str, Mapping[str, Term]] = MappingProxyType(tables)
        # Other-locale spellings shared case-insensitively by distinct terms; matched verbatim only
        self._exact: Mapping[str, Mapping[str, Term]] = MappingProxyType(exact_tables)
        # Terms whose canonical spellings differ only by case share the first one
        self._canonical: Mapping[str, Mapping[str, str]] = MappingProxyType(spellings)

    @staticmethod
    def _register_other_locale(
        kind: str,
        table: dict[str, Term],
        terms: Iterable[Term],
        canonical_locale: str,
        other_locale: str,
    ) -> tuple[dict[str, Term], dict[str, Term]]:
        """
        Add each term's other-locale spelling as a synonym.

        A key claimed by terms with different canonical forms (e.g. 垫层
        "Couche de forme" and 路基垫层 "Couche de Forme") is not registered
        case-insensitively; each spelling then only matches exactly as written.
        """
        claims: dict[str, dict[str, Term]] = {}
        for term in terms:
            spelling = getattr(term, other_locale).strip()
            key = normalize_key(spelling)
            if not key:
                continue
            owner = table.get(key)
            if owner is not None:
                if getattr(owner, canonical_locale).strip() != getattr(term, canonical_locale).strip():
                    logger.warning(
                        f"Dictionary {kind} spelling '{spelling}' already maps to "
                        f"'{getattr(owner, canonical_locale)}'; not registered for '{getattr(term, canonical_locale)}'"
                    )
                continue
            claims.setdefault(key, {}).setdefault(spelling, term)

        exact: dict[str, Term] = {}
        for key, by_spelling in claims.items():
            owners = {getattr(term, canonical_locale).strip() for term in by_spelling.values()}
            if len(owners) == 1:
                table[key] = next(iter(by_spelling.values()))
                continue
            logger.warning(
                f"Ambiguous {kind} spelling '{key}' shared by {sorted(owners)}; matching it case-sensitively"
            )
            exact.update(by_spelling)
        return table, exact

    @property
    def kinds(self) -> tuple[str, ...]:
        return tuple(self._tables)

    def lookup(self, kind: str, value: str) -> Optional[Term]:
        table = self._tables.get(kind)
        if table is None or not isinstance(value, str):
            return None
        exact = self._exact[kind].get(value.strip())
        if exact is not None:
            return exact
        return table.get(normalize_key(value))

    def canonical_term(self, kind: str, value: str) -> str:
        """Canonical form of one value; unknown vocabulary comes back trimmed."""
        trimmed = value.strip() if isinstance(value, str) else ""
        term = self.lookup(kind, trimmed)
        if term is None:
            return trimmed
        spelling = getattr(term, self.canonical_locale).strip()
        return self._canonical[kind].get(normalize_key(spelling), spelling)

    def canonicalize(self, kind: str, inputs: Optional[Iterable[str]]) -> list[str]:
        """
        Map each input to its canonical form, dropping blanks and duplicates.

        Duplicates are detected on the normalization key of the canonical form,
        keeping the first-seen spelling. Never raises.
        """
        result: list[str] = []
        seen: set[str] = set()
        for raw in inputs or []:
            if not isinstance(raw, str):
                continue
            canonical = self.canonical_term(kind, raw)
            if not canonical:
                continue
            key = normalize_key(canonical)
            if key in seen:
                continue
            seen.add(key)
            result.append(canonical)
        return result

    def localize(
        self,
        kind: str,
        value: str,
        locale: str,
        phase_name: Optional[str] = None,
    ) -> str:
        """Display spelling of ``value`` in ``locale`` (zh | fr)."""
        if not value:
            return value
        if (
            kind == "layer"
            and normalize_key(value) == LEAN_CONCRETE_LAYER_KEY
            and phase_name
            and normalize_key(phase_name) in CULVERT_PHASE_KEYS
        ):
            return "Béton de propreté" if locale == "fr" else "垫层"
        term = self.lookup(kind, value)
        if term is None:
            return value
        return term.fr if locale == "fr" else term.zh

    def localize_list(
        self,
        kind: str,
        values: Iterable[str],
        locale: str,
        phase_name: Optional[str] = None,
    ) -> list[str]:
        return [self.localize(kind, v, locale, phase_name) for v in values]


def _read_extra_terms(path: str) -> dict[str, dict[str, Term]]:
    """
    Load extra bilingual entries from JSON:
        {"layer": {"Fondation GNT": {"zh": "底基层", "fr": "Fondation"}}}
    """
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    extra: dict[str, dict[str, Term]] = {}
    for kind, entries in (raw or {}).items():
        if kind not in DICTIONARY_KINDS or not isinstance(entries, dict):
            logger.warning(f"Ignoring unknown dictionary kind in {path}: {kind}")
            continue
        bucket = extra.setdefault(kind, {})
        for synonym, spec in entries.items():
            if not isinstance(spec, dict) or not spec.get("zh") or not spec.get("fr"):
                logger.warning(f"Ignoring malformed {kind} entry '{synonym}' in {path}")
                continue
            bucket[synonym] = Term(str(spec["zh"]).strip(), str(spec["fr"]).strip())
    return extra


def build_dictionary(
    extra_terms: Optional[Mapping[str, Mapping[str, Term]]] = None,
    canonical_locale: str = "zh",
) -> ProgressDictionary:
    """Built-in vocabulary with ``extra_terms`` layered on top (extra wins)."""
    merged: dict[str, dict[str, Term]] = {}
    for kind in DICTIONARY_KINDS:
        merged[kind] = dict((extra_terms or {}).get(kind, {}))
        for synonym, term in PROGRESS_TERMS.get(kind, {}).items():
            merged[kind].setdefault(synonym, term)
    return ProgressDictionary(merged, canonical_locale=canonical_locale)


@lru_cache(maxsize=1)
def get_dictionary() -> ProgressDictionary:
    """Process-wide dictionary, loaded once from the built-in table + config file."""
    extra: dict[str, dict[str, Term]] = {}
    if DICTIONARY_PATH:
        if os.path.exists(DICTIONARY_PATH):
            extra = _read_extra_terms(DICTIONARY_PATH)
            logger.info(f"Loaded extra dictionary entries from {DICTIONARY_PATH}")
        else:
            logger.warning(f"PROGRESS_DICTIONARY_PATH not found: {DICTIONARY_PATH}")
    return build_dictionary(extra, canonical_locale=CANONICAL_LOCALE)
