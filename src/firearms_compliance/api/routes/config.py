"""Compliance policy endpoints."""

from fastapi import APIRouter, status

from firearms_compliance.api.dependencies import AppRuntime, Staff
from firearms_compliance.api.schemas import (
    ComplianceSettingsResponse,
    ComplianceSettingsUpdate,
    ErrorResponse,
)

router = APIRouter(prefix="/config", tags=["config"])


@router.get("", response_model=ComplianceSettingsResponse)
def get_config(runtime: AppRuntime) -> ComplianceSettingsResponse:
    """Return the active compliance policy."""
    return ComplianceSettingsResponse.model_validate(runtime.config_store.get())


@router.get("/history", response_model=list[ComplianceSettingsResponse])
def get_config_history(runtime: AppRuntime) -> list[ComplianceSettingsResponse]:
    """All policy versions, newest first."""
    return [ComplianceSettingsResponse.model_validate(s) for s in runtime.config_store.history()]


@router.put(
    "",
    response_model=ComplianceSettingsResponse,
    status_code=status.HTTP_200_OK,
    responses={422: {"model": ErrorResponse}},
)
def update_config(
    runtime: AppRuntime,
    staff: Staff,
    payload: ComplianceSettingsUpdate,
) -> ComplianceSettingsResponse:
    """Apply a partial policy update as a new version."""
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    updated = runtime.config_store.update(changes, updated_by=staff.staff_id)
    return ComplianceSettingsResponse.model_validate(updated)
