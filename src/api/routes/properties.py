"""Property routes."""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from api.deps import get_db
from services.skip_trace import get_skip_trace_service

router = APIRouter()


class SkipTraceRequest(BaseModel):
    property_id: int
    phone_hint: Optional[str] = None


@router.post("/skip-trace")
def skip_trace_property(
    request: SkipTraceRequest,
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Look up the owner's contact details for a property."""
    result = get_skip_trace_service().skip_trace_property(
        db, request.property_id, phone_hint=request.phone_hint
    )
    return {"property_id": request.property_id, **result.to_dict()}
