"""
Payments API Endpoints

Payment initiation, customer-submitted details, admin verification, refunds,
status queries and provider webhooks.
"""
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict, Any, Optional
import logging

from ..db.init_db import get_db
from ..models.common import Actor
from ..models.transactions import (
    AdminVerifyRequest,
    InitiatePaymentRequest,
    ManualVerificationRequest,
    MobileMoneyDetailsRequest,
    RefundRequest,
)
from ..services import payment_service
from .deps import get_actor

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/initialize")
async def initialize_payment_endpoint(
    request: InitiatePaymentRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    """
    Start a payment attempt for an order.

    Returns:
        {
            "transaction": {...},
            "payment_details": {...}  # redirect URL, references or transfer instructions
        }
    """
    return await payment_service.initiate_payment(db, request, actor)


@router.post("/mobile-money/{transaction_id}")
async def mobile_money_details_endpoint(
    transaction_id: str,
    request: MobileMoneyDetailsRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    return await payment_service.submit_mobile_money_details(db, transaction_id, request, actor)


@router.post("/verify/{transaction_id}")
async def manual_verification_endpoint(
    transaction_id: str,
    request: ManualVerificationRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    """Submit bank transfer receipt or Western Union MTCN for review."""
    return await payment_service.submit_manual_verification(db, transaction_id, request, actor)


@router.post("/admin-verify/{transaction_id}")
async def admin_verify_endpoint(
    transaction_id: str,
    request: AdminVerifyRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    transaction = await payment_service.admin_verify_payment(db, transaction_id, request, actor)
    return {
        "message": f"Payment {'approved' if request.approved else 'rejected'} successfully",
        "transaction_id": transaction.transaction_id,
        "status": transaction.status.value,
    }


@router.post("/refund/{transaction_id}")
async def refund_endpoint(
    transaction_id: str,
    request: RefundRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    return await payment_service.process_refund(db, transaction_id, request, actor)


@router.get("/methods")
async def payment_methods_endpoint() -> Dict[str, Any]:
    return {"methods": payment_service.list_payment_methods()}


@router.get("/transactions")
async def transaction_history_endpoint(
    payment_method: Optional[str] = Query(None, description="Filter by payment method"),
    status: Optional[str] = Query(None, description="Filter by transaction status"),
    limit: int = Query(10, ge=1, le=100, description="Max results"),
    offset: int = Query(0, ge=0, description="Pagination offset"),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    transactions = await payment_service.list_user_transactions(
        db, actor, payment_method=payment_method, status=status, limit=limit, offset=offset
    )
    return {"transactions": transactions, "count": len(transactions), "limit": limit, "offset": offset}


@router.get("/{transaction_id}/status")
async def payment_status_endpoint(
    transaction_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    return await payment_service.check_payment_status(db, transaction_id, actor)


@router.post("/webhook/{provider}")
async def webhook_endpoint(
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    """
    Provider callback.

    Always answers 200 with success=true, even for malformed bodies or
    unknown transactions, so providers do not retry.
    """
    try:
        payload = await request.json()
    except ValueError:
        logger.warning(f"Webhook from {provider} with non-JSON body ignored")
        return {"success": True, "message": "Webhook received"}

    if not isinstance(payload, dict):
        return {"success": True, "message": "Webhook received"}

    return await payment_service.handle_webhook(
        db,
        provider,
        payload,
        headers=dict(request.headers),
        source_ip=request.client.host if request.client else None,
    )
