"""Sync trigger, status, history and review routes."""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlmodel import Session, select

from fmssync.api.deps import get_orchestrator
from fmssync.db.engine import get_session
from fmssync.models.sync import ChangeDecision, SyncChange, SyncLog, TriggerSource
from fmssync.sync.errors import (
    AlreadyRunning,
    ChangeAlreadyReviewed,
    ChangeNotFound,
    SyncConfigNotFound,
    SyncDisabled,
    SyncNotAwaitingReview,
)
from fmssync.sync.orchestrator import SyncOrchestrator

router = APIRouter()


class SyncTriggerRequest(BaseModel):
    triggered_by: Literal["manual", "automatic", "webhook"] = TriggerSource.MANUAL.value
    user_id: Optional[str] = None


class SyncStatusResponse(BaseModel):
    active: bool
    facility_id: Optional[str] = None
    sync_log_id: Optional[int] = None
    step: Optional[str] = None
    progress_percentage: Optional[int] = None
    message: Optional[str] = None
    cancel_requested: Optional[bool] = None
    started_at: Optional[datetime] = None


class ReviewRequest(BaseModel):
    decision: Literal["approve", "reject"]


_DECISIONS = {"approve": ChangeDecision.APPROVED, "reject": ChangeDecision.REJECTED}


@router.post("/sync/{facility_id}")
async def trigger_sync(
    facility_id: str,
    request: Optional[SyncTriggerRequest] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """
    Run a sync for the facility. Returns once it completes, fails, or
    stops to wait for review.
    """
    request = request or SyncTriggerRequest()
    try:
        result = await orchestrator.trigger_sync(
            facility_id, triggered_by=request.triggered_by, user_id=request.user_id
        )
    except AlreadyRunning as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except SyncConfigNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except SyncDisabled as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return result.to_dict()


@router.get("/sync/{facility_id}/status", response_model=SyncStatusResponse)
def sync_status(
    facility_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Live step and progress of the facility's active sync."""
    state = orchestrator.get_sync_status(facility_id)
    if state is None:
        return SyncStatusResponse(active=False)
    return SyncStatusResponse(active=True, **state)


@router.post("/sync/{facility_id}/cancel")
def cancel_sync(
    facility_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    return {"cancelled": orchestrator.cancel_sync(facility_id)}


@router.get("/sync/{facility_id}/history")
def sync_history(
    facility_id: str,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Most recent sync logs first."""
    return orchestrator.get_sync_history(facility_id, limit=limit, offset=offset)


@router.get("/logs/{sync_log_id}")
def sync_log_detail(sync_log_id: int, session: Session = Depends(get_session)):
    """One sync log with every change it detected."""
    log = session.get(SyncLog, sync_log_id)
    if log is None:
        raise HTTPException(status_code=404, detail="Sync log not found")
    changes = session.exec(
        select(SyncChange).where(SyncChange.sync_log_id == sync_log_id).order_by(SyncChange.id)
    ).all()
    return {**log.to_dict(), "changes": [c.to_dict() for c in changes]}


@router.get("/changes/{sync_log_id}/pending")
def pending_changes(
    sync_log_id: int,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> List[Dict[str, Any]]:
    return [c.to_dict() for c in orchestrator.get_pending_changes(sync_log_id)]


@router.post("/changes/{change_id}/review")
async def review_change(
    change_id: int,
    request: ReviewRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Approve or reject one pending change. Deciding the last pending change
    of a sync resumes it; the response then already reflects the outcome.
    """
    try:
        change = await orchestrator.review_change(change_id, _DECISIONS[request.decision])
    except ChangeNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except (ChangeAlreadyReviewed, SyncNotAwaitingReview) as exc:
        raise HTTPException(status_code=409, detail=str(exc))

    log = orchestrator.store.get_log(change.sync_log_id)
    return {"change": change.to_dict(), "sync_status": log.status if log else None}
