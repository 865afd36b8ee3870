"""
Transaction Service

Creates and retrieves payment attempts and applies the aggregate-level
bookkeeping: status changes, refunds and the webhook log.
"""
import secrets
import string
import time
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..db.repository import load_transaction, save_transaction, transaction_exists
from ..exceptions import NotFoundError, ValidationError
from ..models.common import StatusHistoryEntry, to_money, utcnow
from ..models.orders import Order
from ..models.transactions import RefundRecord, Transaction, TransactionStatus, WebhookEntry

logger = logging.getLogger(__name__)

_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


# ============================================================================
# Transaction Creation
# ============================================================================

def generate_transaction_id(payment_method: str) -> str:
    """
    Build an id of the form PRE-12345678-AB12.

    PRE is the first three letters of the method, then the last 8 digits of
    the millisecond clock and a 4-character random suffix.
    """
    prefix = payment_method[:3].upper()
    millis = str(int(time.time() * 1000))[-8:]
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(4))
    return f"{prefix}-{millis}-{suffix}"


async def create_transaction(
    db: AsyncSession,
    order: Order,
    payment_method: str,
    actor_id: Optional[str] = None
) -> Transaction:
    """
    Create an initiated transaction for the order's full amount.

    Args:
        db: Database session
        order: Order being paid
        payment_method: Validated payment method
        actor_id: Initiating user

    Returns:
        Persisted Transaction (status initiated)
    """
    transaction_id = generate_transaction_id(payment_method)
    while await transaction_exists(db, transaction_id):
        transaction_id = generate_transaction_id(payment_method)

    now = utcnow()
    transaction = Transaction(
        transaction_id=transaction_id,
        order_id=order.order_id,
        user_id=order.user_id,
        amount=order.total_amount,
        currency=order.currency,
        payment_method=payment_method,
        status=TransactionStatus.INITIATED,
        status_history=[
            StatusHistoryEntry(
                status=TransactionStatus.INITIATED.value,
                note=f"Payment initiated via {payment_method}",
                actor=actor_id
            )
        ],
        payment_reference=order.order_number,
        expires_at=now + timedelta(hours=settings.transaction_expiry_hours),
        created_at=now,
        updated_at=now,
    )
    await save_transaction(db, transaction)

    logger.info(
        f"Created transaction: {transaction_id}, order={order.order_id}, "
        f"method={payment_method}, amount={transaction.amount} {transaction.currency}"
    )
    return transaction


# ============================================================================
# Transaction Retrieval
# ============================================================================

async def get_transaction(db: AsyncSession, transaction_id: str) -> Transaction:
    transaction = await load_transaction(db, transaction_id)
    if transaction is None:
        raise NotFoundError(f"Transaction {transaction_id} not found", {"transaction_id": transaction_id})
    return transaction


# ============================================================================
# Bookkeeping
# ============================================================================

async def update_status(
    db: AsyncSession,
    transaction: Transaction,
    status: TransactionStatus,
    note: Optional[str] = None,
    actor_id: Optional[str] = None
) -> bool:
    """
    Set status, append history and persist.

    Returns:
        False when the status was already current (nothing written)
    """
    previous = transaction.status
    if not transaction.set_status(status, note, actor_id):
        return False

    await save_transaction(db, transaction)
    logger.info(f"Transaction {transaction.transaction_id} status: {previous.value} -> {status.value}")
    return True


def add_refund(
    transaction: Transaction,
    amount: Decimal,
    reason: str,
    actor_id: Optional[str] = None,
    refund_reference: Optional[str] = None
) -> RefundRecord:
    """
    Append a refund and move the transaction to refunded/partially_refunded.

    Mutates the aggregate only; the caller persists it.

    Raises:
        ValidationError: amount <= 0, finer than a cent, or > remaining_amount
    """
    amount = Decimal(amount)
    if amount != to_money(amount):
        raise ValidationError(
            "Refund amount must have at most 2 decimal places",
            {"amount": str(amount)}
        )
    if amount <= 0 or amount > transaction.remaining_amount:
        raise ValidationError(
            "Invalid refund amount",
            {"amount": str(amount), "remaining_amount": str(transaction.remaining_amount)}
        )

    refund = RefundRecord(
        amount=to_money(amount),
        reason=reason,
        status="pending",
        refund_reference=refund_reference,
        actor=actor_id,
    )
    transaction.refunds.append(refund)
    transaction.total_refunded = to_money(transaction.total_refunded + amount)

    if transaction.total_refunded >= transaction.amount:
        transaction.set_status(TransactionStatus.REFUNDED, f"Refunded: {reason}", actor_id)
    else:
        transaction.set_status(
            TransactionStatus.PARTIALLY_REFUNDED,
            f"Partial refund of {refund.amount}: {reason}",
            actor_id
        )

    return refund


def record_webhook(
    transaction: Transaction,
    provider: str,
    event: Optional[str],
    payload: Dict[str, Any],
    idempotency_key: str,
    headers: Optional[Dict[str, str]] = None,
    source_ip: Optional[str] = None
) -> WebhookEntry:
    """
    Append a provider callback to the webhook log.

    Always appended; entries whose key was already seen are flagged duplicate.
    """
    duplicate = any(entry.idempotency_key == idempotency_key for entry in transaction.webhook_log)
    entry = WebhookEntry(
        provider=provider,
        event=event,
        payload=payload,
        headers=headers or {},
        source_ip=source_ip,
        idempotency_key=idempotency_key,
        duplicate=duplicate,
    )
    transaction.webhook_log.append(entry)
    return entry
