"""FacilitySyncConfig CRUD and connection test routes."""
import json
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from fmssync.api.deps import get_orchestrator
from fmssync.models.sync import FacilitySyncConfig
from fmssync.sync.errors import UnknownProviderError
from fmssync.sync.orchestrator import SyncOrchestrator

router = APIRouter()


class SyncConfigCreate(BaseModel):
    facility_id: str
    provider_type: str
    is_enabled: bool = True
    provider_config: Dict[str, Any] = Field(default_factory=dict)
    auto_accept_changes: bool = False
    sync_interval_minutes: Optional[int] = Field(default=None, ge=1)


class SyncConfigUpdate(BaseModel):
    provider_type: Optional[str] = None
    is_enabled: Optional[bool] = None
    provider_config: Optional[Dict[str, Any]] = None
    auto_accept_changes: Optional[bool] = None
    sync_interval_minutes: Optional[int] = Field(default=None, ge=1)


class SyncConfigResponse(BaseModel):
    id: int
    facility_id: str
    provider_type: str
    is_enabled: bool
    provider_config: Dict[str, Any]
    auto_accept_changes: bool
    sync_interval_minutes: Optional[int]
    last_sync_at: Optional[datetime]
    last_sync_status: Optional[str]
    created_at: datetime
    updated_at: datetime


def _to_response(config: FacilitySyncConfig) -> SyncConfigResponse:
    return SyncConfigResponse(
        id=config.id,
        facility_id=config.facility_id,
        provider_type=config.provider_type,
        is_enabled=config.is_enabled,
        provider_config=config.provider_config,
        auto_accept_changes=config.auto_accept_changes,
        sync_interval_minutes=config.sync_interval_minutes,
        last_sync_at=config.last_sync_at,
        last_sync_status=config.last_sync_status,
        created_at=config.created_at,
        updated_at=config.updated_at,
    )


def _check_provider_type(orchestrator: SyncOrchestrator, provider_type: str) -> None:
    if provider_type not in orchestrator.registry.types():
        raise HTTPException(
            status_code=400,
            detail=f"Unknown provider type {provider_type!r}; expected one of {orchestrator.registry.types()}",
        )


def _get_or_404(orchestrator: SyncOrchestrator, facility_id: str) -> FacilitySyncConfig:
    config = orchestrator.store.get_config(facility_id)
    if config is None:
        raise HTTPException(status_code=404, detail="Sync config not found")
    return config


@router.post("", response_model=SyncConfigResponse, status_code=201)
def create_config(
    request: SyncConfigCreate,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    if orchestrator.store.get_config(request.facility_id) is not None:
        raise HTTPException(status_code=409, detail="Facility already has a sync config")
    _check_provider_type(orchestrator, request.provider_type)
    config = FacilitySyncConfig(
        facility_id=request.facility_id,
        provider_type=request.provider_type,
        is_enabled=request.is_enabled,
        provider_config_json=json.dumps(request.provider_config),
        auto_accept_changes=request.auto_accept_changes,
        sync_interval_minutes=request.sync_interval_minutes,
    )
    return _to_response(orchestrator.store.save_config(config))


@router.get("/{facility_id}", response_model=SyncConfigResponse)
def get_config(
    facility_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    return _to_response(_get_or_404(orchestrator, facility_id))


@router.put("/{facility_id}", response_model=SyncConfigResponse)
def update_config(
    facility_id: str,
    request: SyncConfigUpdate,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    config = _get_or_404(orchestrator, facility_id)
    fields = request.model_dump(exclude_unset=True)
    if "provider_type" in fields:
        _check_provider_type(orchestrator, fields["provider_type"])
    if "provider_config" in fields:
        config.provider_config_json = json.dumps(fields.pop("provider_config") or {})
    for name, value in fields.items():
        setattr(config, name, value)
    return _to_response(orchestrator.store.save_config(config))


@router.delete("/{facility_id}")
def delete_config(
    facility_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    if not orchestrator.can_start_new_sync(facility_id):
        raise HTTPException(status_code=409, detail="A sync is active for this facility")
    if not orchestrator.store.delete_config(facility_id):
        raise HTTPException(status_code=404, detail="Sync config not found")
    return {"deleted": True}


@router.post("/{facility_id}/test")
async def test_config(
    facility_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Check that the facility's provider can reach its FMS."""
    config = _get_or_404(orchestrator, facility_id)
    try:
        success = await orchestrator.test_connection(config)
    except UnknownProviderError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"success": success, "provider_type": config.provider_type}
