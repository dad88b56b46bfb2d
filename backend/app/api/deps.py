"""FastAPI dependency injection — engine collaborators and error translation."""
from typing import Optional
from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from app.db import get_db
from app.services.inspection_errors import (
    DuplicateKeyConflict,
    EntryNotFound,
    InspectionEngineError,
    TypeNotAllowed,
    ValidationError,
)
from app.services.progress_dictionary import ProgressDictionary, get_dictionary
from app.services.type_rules import TypeRuleResolver, load_type_rule_resolver


def get_progress_dictionary() -> ProgressDictionary:
    return get_dictionary()


async def get_type_rules(
    db: AsyncSession = Depends(get_db),
    dictionary: ProgressDictionary = Depends(get_progress_dictionary),
) -> TypeRuleResolver:
    """Resolver over the workflow templates active at request time."""
    return await load_type_rule_resolver(db, dictionary)


def get_actor_id(x_actor_id: Optional[int] = Header(default=None)) -> Optional[int]:
    """Acting user id forwarded by the calling service (X-Actor-Id); authentication happens upstream."""
    return x_actor_id


def engine_http_error(error: InspectionEngineError) -> HTTPException:
    """Translate an engine error into the HTTPException routes raise."""
    detail: dict = {"message": error.message, "details": error.details}
    if isinstance(error, ValidationError):
        code = 400
    elif isinstance(error, EntryNotFound):
        code = 404
    elif isinstance(error, DuplicateKeyConflict):
        code = 409
        detail["existing_id"] = error.existing_id
    elif isinstance(error, TypeNotAllowed):
        code = 422
        detail["check_name"] = error.check_name
        detail["allowed"] = error.allowed
    else:
        code = 500
    return HTTPException(status_code=code, detail=detail)
