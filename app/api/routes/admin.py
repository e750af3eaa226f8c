"""
Admin Endpoints.

Fleet view of live sessions. Admins only see tenants of their own company.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from app.api.middleware.auth import TenantContext, require_admin
from app.core.messaging import MessagingService, get_messaging_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/whatsapp", tags=["Admin"])


class ConnectedSession(BaseModel):
    tenant_id: str
    company_id: Optional[str] = None
    phone_number: Optional[str] = None
    connected_at: Optional[str] = None
    sync_status: str


class ConnectedResponse(BaseModel):
    sessions: list[ConnectedSession]
    count: int


@router.get(
    "/connected",
    response_model=ConnectedResponse,
    summary="Connected sessions",
    description="Tenants of the admin's company with a live, connected client in this process.",
    responses={403: {"description": "Not an admin, or not attached to a company"}},
)
async def connected(
    admin: TenantContext = Depends(require_admin),
    service: MessagingService = Depends(get_messaging_service),
) -> ConnectedResponse:
    if not admin.company_id:
        logger.warning(f"Admin {admin.user_id} has no company, fleet view refused")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin is not attached to a company",
        )

    sessions = [
        ConnectedSession(**row)
        for row in service.list_connected()
        if row["company_id"] == admin.company_id
    ]
    return ConnectedResponse(sessions=sessions, count=len(sessions))
