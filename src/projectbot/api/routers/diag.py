from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query

from ...domain.models import DatabaseStatus, MutationAttemptOut
from ...infrastructure.db import get_database
from ...security.rbac import Permission, require_permission
from ...services.diagnostics import database_status, list_recent_attempts

router = APIRouter(prefix="/diag", tags=["diagnostics"])


@router.get("/db", response_model=DatabaseStatus)
def diag_db(user=Depends(require_permission(Permission.ADMIN))) -> DatabaseStatus:
    """Admin-only: reachability and table presence, without touching the schema."""
    return database_status(get_database())


@router.get("/mutations", response_model=List[MutationAttemptOut])
def diag_mutations(
    limit: int = Query(default=50, ge=1, le=200),
    user=Depends(require_permission(Permission.ADMIN)),
) -> List[MutationAttemptOut]:
    return [MutationAttemptOut.model_validate(attempt.to_dict()) for attempt in list_recent_attempts(limit)]
