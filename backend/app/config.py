"""
Progress engine configuration — single source of truth for vocabulary kinds,
status ordering, paging limits and batch schedules.

Import from here in services and routes rather than hardcoding values.
"""
from __future__ import annotations

import os

# ── Vocabulary ─────────────────────────────────────────────────────────────────
# Kinds handled by the canonicalization dictionary. "phase" is only used for
# display localization; entries never carry a phase name as free text.
DICTIONARY_KINDS: tuple[str, ...] = ("phase", "layer", "check", "type")

# Locale whose spelling is stored as the canonical form (zh | fr)
CANONICAL_LOCALE: str = os.getenv("PROGRESS_CANONICAL_LOCALE", "zh")

# Optional JSON file with extra bilingual entries, merged over the built-in table
DICTIONARY_PATH: str = os.getenv("PROGRESS_DICTIONARY_PATH", "")

# Acceptance types offered when a workflow check does not list its own
FIXED_INSPECTION_TYPES: list[str] = ["现场验收", "测量验收", "试验验收", "其他"]


# ── Geometry ───────────────────────────────────────────────────────────────────
SIDES: tuple[str, ...] = ("LEFT", "RIGHT", "BOTH")
MEASURES: tuple[str, ...] = ("LINEAR", "POINT")


# ── Inspection status ──────────────────────────────────────────────────────────
# Ordered; the engine never enforces transitions between these.
STATUS_ORDER: list[str] = [
    "PENDING",
    "SCHEDULED",
    "SUBMITTED",
    "IN_PROGRESS",
    "APPROVED",
]
INITIAL_STATUS: str = "PENDING"


# ── Paging ─────────────────────────────────────────────────────────────────────
DEFAULT_PAGE_SIZE: int = 20
LIST_MAX_PAGE_SIZE: int = int(os.getenv("LIST_MAX_PAGE_SIZE", "1000"))
AGGREGATE_MAX_PAGE_SIZE: int = int(os.getenv("AGGREGATE_MAX_PAGE_SIZE", "100"))

# Keyword prefix that restricts free-text search to the remark column
REMARK_KEYWORD_PREFIX: str = "remark:"


# ── Batch schedule ─────────────────────────────────────────────────────────────
# Hour (UTC) at which the nightly dedup + template audit run
DEDUP_SCHEDULE_HOUR_UTC: int = int(os.getenv("DEDUP_SCHEDULE_HOUR_UTC", "2"))
