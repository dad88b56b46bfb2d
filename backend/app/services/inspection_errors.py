"""Error kinds raised by the inspection-entry consistency engine."""
from typing import Optional


class InspectionEngineError(Exception):
    """Base class for engine errors surfaced to callers."""

    def __init__(self, message: str, details: Optional[list[str]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or []


class ValidationError(InspectionEngineError):
    """Malformed input rejected before persistence."""


class EntryNotFound(InspectionEngineError):
    """Requested inspection entry does not exist."""


class TypeNotAllowed(InspectionEngineError):
    """Requested acceptance types fall outside the check's governing set."""

    def __init__(self, check_name: str, disallowed: list[str], allowed: list[str]):
        super().__init__(
            f"Acceptance type(s) {', '.join(disallowed)} not allowed for check '{check_name}'",
            details=list(disallowed),
        )
        self.check_name = check_name
        self.disallowed = list(disallowed)
        self.allowed = list(allowed)


class DuplicateKeyConflict(InspectionEngineError):
    """A write would create a second entry for the same natural key."""

    def __init__(self, message: str, existing_id: Optional[int] = None):
        super().__init__(message)
        self.existing_id = existing_id


class MergeTransactionFailure(InspectionEngineError):
    """One dedup group's merge transaction failed; siblings are unaffected."""

    def __init__(self, keeper_id: int, source_ids: list[int], cause: Exception):
        super().__init__(
            f"Merge into entry {keeper_id} failed: {cause}",
            details=[str(i) for i in source_ids],
        )
        self.keeper_id = keeper_id
        self.source_ids = list(source_ids)
        self.cause = cause


class TemplateDriftWarning(UserWarning):
    """Phase data has drifted away from its template vocabulary."""
