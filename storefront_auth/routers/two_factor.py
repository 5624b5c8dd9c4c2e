"""Account security routes for TOTP enrollment."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Body, Depends, Response

from storefront_auth.dependencies import get_current_identity
from storefront_auth.schemas.two_factor import (
    BackupCodesResponse,
    EnrollmentResponse,
    TwoFactorCodeRequest,
    TwoFactorStatusResponse,
)
from storefront_auth.services.login_service import SessionIdentity
from storefront_auth.services.two_factor_service import TwoFactorService, get_two_factor_service

router = APIRouter(prefix="/account/security/2fa", tags=["two-factor"])

CurrentIdentity = Annotated[SessionIdentity, Depends(get_current_identity)]
Service = Annotated[TwoFactorService, Depends(get_two_factor_service)]


@router.get("", response_model=TwoFactorStatusResponse)
async def status(identity: CurrentIdentity, service: Service) -> TwoFactorStatusResponse:
    current = await service.get_status(identity.user_id)
    return TwoFactorStatusResponse(
        enabled=current.enabled,
        pending_confirmation=current.pending_confirmation,
        backup_codes_remaining=current.backup_codes_remaining,
    )


@router.post("/enroll", response_model=EnrollmentResponse)
async def enroll(
    identity: CurrentIdentity,
    service: Service,
    account_name: Annotated[str | None, Body(embed=True, max_length=320)] = None,
) -> EnrollmentResponse:
    """Start enrollment; the secret is shown once and must be confirmed with a code."""
    started = await service.begin_enrollment(identity.user_id, account_name or identity.user_id)
    return EnrollmentResponse(secret=started.secret, provisioning_uri=started.provisioning_uri)


@router.post("/confirm", response_model=BackupCodesResponse)
async def confirm(
    payload: TwoFactorCodeRequest, identity: CurrentIdentity, service: Service
) -> BackupCodesResponse:
    backup_codes = await service.confirm_enrollment(identity.user_id, payload.code)
    return BackupCodesResponse(backup_codes=backup_codes)


@router.post("/disable", status_code=204, response_model=None)
async def disable(payload: TwoFactorCodeRequest, identity: CurrentIdentity, service: Service) -> Response:
    await service.disable(identity.user_id, payload.code)
    return Response(status_code=204)


@router.post("/backup-codes", response_model=BackupCodesResponse)
async def regenerate_backup_codes(
    payload: TwoFactorCodeRequest, identity: CurrentIdentity, service: Service
) -> BackupCodesResponse:
    """Rotate backup codes; the previous set stops working."""
    backup_codes = await service.regenerate_backup_codes(identity.user_id, payload.code)
    return BackupCodesResponse(backup_codes=backup_codes)
