"""
Lead endpoints - ingestion, status and booking confirmation.

Expected failures map to 4xx: unknown tenant or lead → 404, unusable phone
number or slot → 422, booking a lead that is not interested → 409.
"""
import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from leadrelay.database import get_db
from leadrelay.errors import InvalidPhoneNumber, InvalidTransition, NotFound
from leadrelay.schemas.api_responses import (
    BookingRequest,
    LeadStatusView,
    NewLeadRequest,
    NewLeadResponse,
)
from leadrelay.services.booking import BookingRejected
from leadrelay.services.engagement import confirm_booking, get_lead_status, ingest_new_lead

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/leads", tags=["leads"])


@router.post("", response_model=NewLeadResponse, status_code=201)
async def create_lead(
    payload: NewLeadRequest,
    db: AsyncSession = Depends(get_db),
):
    try:
        lead_id = await ingest_new_lead(db, payload.tenant_key, payload.phone, payload.context)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidPhoneNumber as e:
        raise HTTPException(status_code=422, detail=str(e))

    view = await get_lead_status(db, lead_id)
    return NewLeadResponse(lead_id=lead_id, status=view.status)


@router.get("/{lead_id}", response_model=LeadStatusView)
async def lead_status(
    lead_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    try:
        return await get_lead_status(db, lead_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{lead_id}/booking", response_model=LeadStatusView)
async def book_lead(
    lead_id: uuid.UUID,
    payload: BookingRequest,
    db: AsyncSession = Depends(get_db),
):
    try:
        return await confirm_booking(db, lead_id, payload.slot)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except BookingRejected as e:
        raise HTTPException(status_code=422, detail=str(e))
