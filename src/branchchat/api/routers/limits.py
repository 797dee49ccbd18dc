from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ...domain.chat_models import AdmissionCheck, AdmissionResult, AdmissionStatus
from ...security.auth import Identity, get_identity
from ...security.rate_limit import get_rate_limiter
from ...services.admission import AdmissionController


router = APIRouter(prefix="/limits", tags=["limits"])


@router.post("/check", response_model=AdmissionResult)
def check_limit(req: AdmissionCheck, identity: Identity = Depends(get_identity)) -> AdmissionResult:
    result = get_rate_limiter().check(identity.subject_key, req.limit_name, consume=req.consume)
    return AdmissionResult(ok=result.ok, retry_after_ms=result.retry_after_ms)


@router.get("/status", response_model=AdmissionStatus)
def admission_status(
    model: Optional[str] = Query(default=None),
    identity: Identity = Depends(get_identity),
) -> AdmissionStatus:
    return AdmissionController().status(identity, model)
