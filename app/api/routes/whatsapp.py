"""
WhatsApp Session Endpoints.

Pairing, liveness, sync and message actions for the authenticated tenant.
Every route acts on the caller's own session only.

Session conditions (not connected, timeout, ...) are raised as
``MessagingError`` and rendered by the handler registered in main.py.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from app.api.middleware.auth import TenantContext
from app.api.middleware.rate_limit import require_auth_with_rate_limit
from app.core.messaging import MessagingService, get_messaging_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/whatsapp", tags=["WhatsApp"])


# =============================================================================
# Models
# =============================================================================


class InitRequest(BaseModel):
    """Pairing request."""

    force: bool = Field(
        default=False,
        description="Start fresh pairing even if a stale connection record exists",
    )


class SessionStatusResponse(BaseModel):
    """Session status as seen by the live registry."""

    status: str = Field(..., description="Session status or needs_reconnect")
    pairing_code: Optional[str] = Field(default=None, description="Raw pairing code while pairing")
    qr_data_url: Optional[str] = Field(default=None, description="Pairing code rendered as PNG data URL")
    phone_number: Optional[str] = None
    sync_status: str = "idle"
    sync_progress: Optional[dict] = None
    last_error: Optional[str] = None
    message: Optional[str] = None
    needs_reconnect: bool = False


class HeartbeatResponse(BaseModel):
    status: str = Field(..., description="ok, or no_client if nothing is live")


class SuccessResponse(BaseModel):
    success: bool = True


class SyncResponse(BaseModel):
    sync_status: str
    progress: dict


class ContactResponse(BaseModel):
    id: str
    phone: str
    name: str
    pushname: str
    is_my_contact: bool


class ContactsResponse(BaseModel):
    contacts: list[ContactResponse]
    count: int


class MessageResponse(BaseModel):
    id: str
    chat_id: str
    body: str
    from_me: bool
    timestamp: datetime
    type: str
    has_media: bool


class MessagesResponse(BaseModel):
    messages: list[MessageResponse]
    count: int


class SendRequest(BaseModel):
    """Outbound text message."""

    to: str = Field(
        ...,
        min_length=1,
        max_length=128,
        description="Phone number (digits) or chat id",
        examples=["5511999998888"],
    )
    message: str = Field(
        ...,
        min_length=1,
        max_length=4096,
        description="Message text",
    )


class SendResponse(BaseModel):
    success: bool = True
    message_id: str
    chat_id: str
    timestamp: datetime


class EditMessageRequest(BaseModel):
    wa_message_id: str = Field(..., min_length=1)
    new_content: str = Field(..., min_length=1, max_length=4096)


class DeleteMessageRequest(BaseModel):
    wa_message_id: str = Field(..., min_length=1)
    delete_for_everyone: bool = False


class ReactMessageRequest(BaseModel):
    wa_message_id: str = Field(..., min_length=1)
    emoji: str = Field(..., min_length=1, max_length=16)


class ErrorResponse(BaseModel):
    """Error response."""

    error: str
    detail: Optional[str] = None


ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Unauthorized"},
    409: {"model": ErrorResponse, "description": "WhatsApp not connected"},
    429: {"description": "Rate limit exceeded"},
    504: {"model": ErrorResponse, "description": "Action timed out, outcome unknown"},
}


# =============================================================================
# Pairing and liveness
# =============================================================================


@router.post(
    "/init",
    response_model=SessionStatusResponse,
    summary="Start or resume pairing",
    responses={502: {"model": ErrorResponse, "description": "Client could not be created"}},
)
async def init_session(
    request: Optional[InitRequest] = None,
    tenant: TenantContext = Depends(require_auth_with_rate_limit),
    service: MessagingService = Depends(get_messaging_service),
) -> SessionStatusResponse:
    """
    Create the tenant's live client and wait briefly for a pairing code.

    Idempotent: an already connected or pairing session is returned as-is.
    """
    force = request.force if request else False
    result = await service.initialize(tenant.user_id, tenant.company_id, force=force)
    return SessionStatusResponse(**result.to_dict())


@router.get("/status", response_model=SessionStatusResponse, summary="Session status")
async def session_status(
    tenant: TenantContext = Depends(require_auth_with_rate_limit),
    service: MessagingService = Depends(get_messaging_service),
) -> SessionStatusResponse:
    result = await service.status(tenant.user_id)
    return SessionStatusResponse(**result.to_dict())


@router.post("/heartbeat", response_model=HeartbeatResponse, summary="Keep the session alive")
async def heartbeat(
    tenant: TenantContext = Depends(require_auth_with_rate_limit),
    service: MessagingService = Depends(get_messaging_service),
) -> HeartbeatResponse:
    if service.heartbeat(tenant.user_id):
        return HeartbeatResponse(status="ok")
    return HeartbeatResponse(status="no_client")


@router.post("/disconnect", response_model=SuccessResponse, summary="Log out and release the session")
async def disconnect(
    tenant: TenantContext = Depends(require_auth_with_rate_limit),
    service: MessagingService = Depends(get_messaging_service),
) -> SuccessResponse:
    await service.disconnect(tenant.user_id)
    return SuccessResponse()


@router.post(
    "/sync",
    response_model=SyncResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Re-sync chat history",
    responses=ERROR_RESPONSES,
)
async def sync(
    tenant: TenantContext = Depends(require_auth_with_rate_limit),
    service: MessagingService = Depends(get_messaging_service),
) -> SyncResponse:
    progress = await service.trigger_sync(tenant.user_id)
    record = service.get_record(tenant.user_id)
    return SyncResponse(
        sync_status=record.sync_status.value if record else "idle",
        progress=progress.to_dict(),
    )


# =============================================================================
# Reads
# =============================================================================


@router.get("/contacts", response_model=ContactsResponse, responses=ERROR_RESPONSES)
async def contacts(
    tenant: TenantContext = Depends(require_auth_with_rate_limit),
    service: MessagingService = Depends(get_messaging_service),
) -> ContactsResponse:
    items = await service.list_contacts(tenant.user_id)
    return ContactsResponse(
        contacts=[ContactResponse(**c.to_dict()) for c in items],
        count=len(items),
    )


@router.get("/messages", response_model=MessagesResponse, responses=ERROR_RESPONSES)
async def messages(
    chat_id: str = Query(..., min_length=1, description="Phone number or chat id"),
    limit: int = Query(default=50, ge=1, le=200),
    tenant: TenantContext = Depends(require_auth_with_rate_limit),
    service: MessagingService = Depends(get_messaging_service),
) -> MessagesResponse:
    try:
        items = await service.fetch_messages(tenant.user_id, chat_id, limit)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return MessagesResponse(
        messages=[MessageResponse(**m.to_dict()) for m in items],
        count=len(items),
    )


# =============================================================================
# Actions
# =============================================================================


@router.post("/send", response_model=SendResponse, responses=ERROR_RESPONSES)
async def send(
    request: SendRequest,
    tenant: TenantContext = Depends(require_auth_with_rate_limit),
    service: MessagingService = Depends(get_messaging_service),
) -> SendResponse:
    try:
        sent = await service.send(tenant.user_id, request.to, request.message)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return SendResponse(message_id=sent.id, chat_id=sent.chat_id, timestamp=sent.timestamp)


@router.post("/edit-message", response_model=SuccessResponse, responses=ERROR_RESPONSES)
async def edit_message(
    request: EditMessageRequest,
    tenant: TenantContext = Depends(require_auth_with_rate_limit),
    service: MessagingService = Depends(get_messaging_service),
) -> SuccessResponse:
    if not request.new_content.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="new_content is required")
    await service.edit_message(tenant.user_id, request.wa_message_id, request.new_content)
    return SuccessResponse()


@router.post("/delete-message", response_model=SuccessResponse, responses=ERROR_RESPONSES)
async def delete_message(
    request: DeleteMessageRequest,
    tenant: TenantContext = Depends(require_auth_with_rate_limit),
    service: MessagingService = Depends(get_messaging_service),
) -> SuccessResponse:
    await service.delete_message(tenant.user_id, request.wa_message_id, request.delete_for_everyone)
    return SuccessResponse()


@router.post("/react-message", response_model=SuccessResponse, responses=ERROR_RESPONSES)
async def react_message(
    request: ReactMessageRequest,
    tenant: TenantContext = Depends(require_auth_with_rate_limit),
    service: MessagingService = Depends(get_messaging_service),
) -> SuccessResponse:
    await service.react_to_message(tenant.user_id, request.wa_message_id, request.emoji)
    return SuccessResponse()
