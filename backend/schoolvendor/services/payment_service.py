"""
Payment Orchestrator

Dispatches payment initiation to providers, ingests webhooks, runs the
manual verification and refund flows, and keeps Order and Transaction in
sync through the order state machine.
"""
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from ..db.repository import (
    find_transaction_by_correlation,
    list_expired_initiated_transactions,
    list_transactions_for_user,
    load_order,
    save_order,
    save_transaction,
)
from ..exceptions import (
    InvalidStateError,
    NotFoundError,
    PaymentError,
    ValidationError,
)
from ..mocks import payment_gateways
from ..models.common import Actor, to_money, utcnow
from ..models.orders import Order, OrderStatus, SUPPORTED_PAYMENT_METHODS
from ..models.transactions import (
    AdminVerifyRequest,
    BankTransferDetails,
    InitiatePaymentRequest,
    MANUAL_SETTLEMENT_METHODS,
    ManualVerificationRequest,
    MobileMoneyDetails,
    MobileMoneyDetailsRequest,
    RefundRequest,
    Transaction,
    TransactionStatus,
    WesternUnionDetails,
)
from . import order_state_machine, transaction_service
from .authorization import require_admin, require_owner_or_admin
from .order_service import get_order
from .signature_service import webhook_idempotency_key

logger = logging.getLogger(__name__)

PAYABLE_ORDER_STATUSES = frozenset({
    OrderStatus.PENDING,
    OrderStatus.PAYMENT_PENDING,
    OrderStatus.PAYMENT_FAILED,
})

UNSETTLED_TRANSACTION_STATUSES = frozenset({
    TransactionStatus.INITIATED,
    TransactionStatus.PENDING,
    TransactionStatus.PROCESSING,
})

REFUNDABLE_TRANSACTION_STATUSES = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.PARTIALLY_REFUNDED,
})


async def _get_owned_transaction(db: AsyncSession, transaction_id: str, actor: Actor) -> Transaction:
    transaction = await transaction_service.get_transaction(db, transaction_id)
    require_owner_or_admin(actor, transaction.user_id, "transaction")
    return transaction


async def _get_transaction_order(db: AsyncSession, transaction: Transaction) -> Order:
    order = await load_order(db, transaction.order_id)
    if order is None:
        raise NotFoundError(
            f"Order with ID {transaction.order_id} not found",
            {"order_id": transaction.order_id, "transaction_id": transaction.transaction_id}
        )
    return order


def _transaction_summary(transaction: Transaction) -> Dict[str, Any]:
    return {
        "transaction_id": transaction.transaction_id,
        "order_id": transaction.order_id,
        "amount": str(transaction.amount),
        "currency": transaction.currency,
        "payment_method": transaction.payment_method,
        "status": transaction.status.value,
        "created_at": transaction.created_at.isoformat(),
        "expires_at": transaction.expires_at.isoformat(),
    }


# ============================================================================
# Initiation
# ============================================================================

async def initiate_payment(db: AsyncSession, request: InitiatePaymentRequest, actor: Actor) -> Dict[str, Any]:
    """
    Start a payment attempt for an order.

    Creates an initiated transaction, moves the order to payment_pending and
    asks the provider for checkout instructions.

    Args:
        db: Database session
        request: Order id and payment method
        actor: Order owner or admin

    Returns:
        Dict with transaction summary and client-facing payment_details

    Raises:
        ValidationError: unsupported payment method
        InvalidStateError: order not awaiting payment
        PaymentError: provider dispatch failed (order moved to payment_failed)
    """
    method = request.payment_method
    if method not in SUPPORTED_PAYMENT_METHODS:
        raise ValidationError(
            f"Unsupported payment method: {method}",
            {"payment_method": method, "supported": list(SUPPORTED_PAYMENT_METHODS)}
        )

    order = await get_order(db, request.order_id, actor)
    if order.status not in PAYABLE_ORDER_STATUSES:
        raise InvalidStateError(
            f"Cannot process payment for order in {order.status.value} status",
            {"order_id": order.order_id, "status": order.status.value}
        )

    if order.payment.method != method:
        order.payment.method = method

    transaction = await transaction_service.create_transaction(db, order, method, actor.user_id)

    order.payment.transaction_id = transaction.transaction_id
    order.payment.status = "pending"
    await save_order(db, order)

    if order.status != OrderStatus.PAYMENT_PENDING:
        await order_state_machine.transition(
            db, order, OrderStatus.PAYMENT_PENDING, f"Payment initiated via {method}", actor
        )

    try:
        details, payment_details = payment_gateways.initialize_payment(transaction, order)
    except Exception as e:
        logger.error(f"Payment dispatch failed for {transaction.transaction_id}", exc_info=True)
        transaction.error_message = str(e)
        await transaction_service.update_status(
            db, transaction, TransactionStatus.FAILED, "Provider initialization failed"
        )
        await order_state_machine.transition(
            db, order, OrderStatus.PAYMENT_FAILED, "Payment initialization failed", actor
        )
        raise PaymentError(
            f"Failed to initialize {method} payment",
            {"transaction_id": transaction.transaction_id, "error_type": type(e).__name__}
        ) from e

    transaction.details = details
    await save_transaction(db, transaction)

    logger.info(f"Payment initialized: {transaction.transaction_id} for order {order.order_id} via {method}")

    return {
        "transaction": _transaction_summary(transaction),
        "payment_details": payment_details,
    }


# ============================================================================
# Customer-Submitted Details
# ============================================================================

async def submit_mobile_money_details(
    db: AsyncSession,
    transaction_id: str,
    request: MobileMoneyDetailsRequest,
    actor: Actor
) -> Dict[str, Any]:
    """
    Attach network and phone number; the transaction moves to processing.
    """
    if request.provider not in payment_gateways.MOBILE_MONEY_PROVIDERS:
        raise ValidationError("Invalid mobile money provider", {"provider": request.provider})

    transaction = await _get_owned_transaction(db, transaction_id, actor)
    if transaction.payment_method != "mobile_money":
        raise ValidationError("Transaction is not a mobile money payment", {"transaction_id": transaction_id})
    if transaction.status not in UNSETTLED_TRANSACTION_STATUSES:
        raise InvalidStateError(
            f"Transaction is already {transaction.status.value}",
            {"transaction_id": transaction_id, "status": transaction.status.value}
        )
    if transaction.is_expired():
        raise InvalidStateError("Transaction has expired", {"transaction_id": transaction_id})

    previous = transaction.details if isinstance(transaction.details, MobileMoneyDetails) else None
    transaction.details = MobileMoneyDetails(
        provider=request.provider,
        phone_number=request.phone_number,
        network_reference=payment_gateways.generate_reference(f"MM-{request.provider.upper()}"),
        provider_transaction_id=previous.provider_transaction_id if previous else None,
    )
    transaction.set_status(
        TransactionStatus.PROCESSING, f"Mobile Money payment processing for {request.provider}", actor.user_id
    )
    await save_transaction(db, transaction)

    logger.info(f"Mobile money details submitted for {transaction_id} ({request.provider})")

    return {
        "transaction_id": transaction_id,
        "provider": request.provider,
        "network_reference": transaction.details.network_reference,
        "amount": str(transaction.amount),
        "currency": transaction.currency,
        "instructions": f"Please confirm the payment on your {request.provider.upper()} mobile money account. "
                        "You will receive a prompt shortly.",
    }


async def submit_manual_verification(
    db: AsyncSession,
    transaction_id: str,
    request: ManualVerificationRequest,
    actor: Actor
) -> Dict[str, Any]:
    """
    Record proof of a bank or wire transfer and queue it for admin review.

    Bank transfer needs reference + receipt number; wire transfer needs the
    MTCN (reference) + sender identity.
    """
    transaction = await _get_owned_transaction(db, transaction_id, actor)
    method = transaction.payment_method

    if method not in MANUAL_SETTLEMENT_METHODS:
        raise ValidationError("Payment method not supported for manual verification", {"payment_method": method})
    if request.payment_method and request.payment_method != method:
        raise ValidationError(
            "Payment method mismatch",
            {"expected": method, "received": request.payment_method}
        )
    if transaction.status not in UNSETTLED_TRANSACTION_STATUSES:
        raise InvalidStateError(
            f"Transaction is already {transaction.status.value}",
            {"transaction_id": transaction_id, "status": transaction.status.value}
        )

    now = utcnow()
    if transaction.is_expired(now):
        raise InvalidStateError("Transaction has expired", {"transaction_id": transaction_id})

    if method == "bank_transfer":
        if not request.reference or not request.receipt_number:
            raise ValidationError("Reference and receipt number are required for bank transfer verification")
        base = transaction.details if isinstance(transaction.details, BankTransferDetails) else None
        transaction.details = BankTransferDetails(
            bank_name=base.bank_name if base else "",
            account_number=base.account_number if base else "",
            transfer_reference=request.reference,
            receipt_number=request.receipt_number,
            deposit_slip_url=request.receipt_url,
            transfer_date=now,
        )
    else:
        if not request.reference or request.sender_info is None:
            raise ValidationError("MTCN and sender information are required for Western Union verification")
        base = transaction.details if isinstance(transaction.details, WesternUnionDetails) else None
        transaction.details = WesternUnionDetails(
            receiver_name=base.receiver_name if base else "",
            mtcn=request.reference,
            sender_name=request.sender_info.name,
            sender_country=request.sender_info.country,
            transfer_date=now,
        )

    order = await _get_transaction_order(db, transaction)
    move_order = order.status != OrderStatus.PAYMENT_PENDING
    if move_order:
        order_state_machine.validate_transition(order.status, OrderStatus.PAYMENT_PENDING)

    transaction.set_status(TransactionStatus.PENDING, "Manual payment verification pending review", actor.user_id)
    await save_transaction(db, transaction)

    if move_order:
        await order_state_machine.transition(
            db, order, OrderStatus.PAYMENT_PENDING, "Payment verification submitted, pending review", actor
        )

    logger.info(f"Manual verification submitted for {transaction_id} ({method})")

    return {
        "transaction_id": transaction_id,
        "status": "pending_verification",
        "message": "Payment verification submitted successfully",
    }


# ============================================================================
# Admin Verification
# ============================================================================

async def admin_verify_payment(
    db: AsyncSession,
    transaction_id: str,
    request: AdminVerifyRequest,
    actor: Actor
) -> Transaction:
    """
    Final human decision on an unsettled payment.

    Approval completes the transaction and marks the order paid; rejection
    fails the transaction and moves the order to payment_failed.
    """
    require_admin(actor, "verify payments")
    transaction = await transaction_service.get_transaction(db, transaction_id)

    if transaction.status not in UNSETTLED_TRANSACTION_STATUSES:
        raise InvalidStateError(
            f"Transaction is already {transaction.status.value}",
            {"transaction_id": transaction_id, "status": transaction.status.value}
        )

    order = await _get_transaction_order(db, transaction)
    target = OrderStatus.PAID if request.approved else OrderStatus.PAYMENT_FAILED
    order_state_machine.validate_transition(order.status, target)

    if request.approved:
        transaction.verified = True
        transaction.verified_at = utcnow()
        transaction.verified_by = actor.user_id
        transaction.verification_method = "manual"
        transaction.verification_details = {"note": request.note} if request.note else None
        transaction.set_status(TransactionStatus.COMPLETED, "Payment verified and approved by admin", actor.user_id)
        note = request.note or "Payment verified by admin"
    else:
        note = f"Payment verification rejected: {request.note or 'No reason provided'}"
        transaction.error_message = note
        transaction.set_status(TransactionStatus.FAILED, note, actor.user_id)

    await save_transaction(db, transaction)
    logger.info(
        f"Transaction {transaction_id} {'approved' if request.approved else 'rejected'} by {actor.user_id}"
    )

    await order_state_machine.transition(db, order, target, note, actor)
    return transaction


# ============================================================================
# Refunds
# ============================================================================

async def process_refund(
    db: AsyncSession,
    transaction_id: str,
    request: RefundRequest,
    actor: Actor
) -> Dict[str, Any]:
    """
    Refund part or all of a settled payment.

    The provider is asked first; a refund that covers the order total moves
    the order to refunded.

    Raises:
        InvalidStateError: transaction not completed/partially refunded
        ValidationError: amount out of bounds, or order cannot be refunded
        PaymentError: provider declined or failed
    """
    require_admin(actor, "process refunds")
    transaction = await transaction_service.get_transaction(db, transaction_id)

    if transaction.status not in REFUNDABLE_TRANSACTION_STATUSES:
        raise InvalidStateError(
            "Only completed transactions can be refunded",
            {"transaction_id": transaction_id, "status": transaction.status.value}
        )
    amount = request.amount
    if amount <= 0 or amount != to_money(amount) or amount > transaction.remaining_amount:
        raise ValidationError(
            "Invalid refund amount",
            {"amount": str(amount), "remaining_amount": str(transaction.remaining_amount)}
        )

    order = await _get_transaction_order(db, transaction)
    # Same predicate add_refund uses to mark the transaction refunded
    if transaction.total_refunded + amount >= transaction.amount and order.status != OrderStatus.REFUNDED:
        order_state_machine.validate_transition(order.status, OrderStatus.REFUNDED)

    try:
        provider_result = payment_gateways.request_refund(transaction, amount, request.reason)
    except Exception as e:
        logger.error(f"Refund provider call failed for {transaction_id}", exc_info=True)
        raise PaymentError(f"Failed to process refund: {e}", {"transaction_id": transaction_id}) from e

    if provider_result.get("status") != "accepted":
        raise PaymentError(
            "Refund declined by provider",
            {"transaction_id": transaction_id, "provider_status": provider_result.get("status")}
        )

    refund = transaction_service.add_refund(
        transaction, amount, request.reason, actor.user_id, provider_result.get("refund_reference")
    )
    await save_transaction(db, transaction)

    logger.info(
        f"Refund of {refund.amount} {transaction.currency} recorded on {transaction_id}; "
        f"total refunded {transaction.total_refunded}"
    )

    full_refund = transaction.status == TransactionStatus.REFUNDED
    if full_refund and order.status != OrderStatus.REFUNDED:
        await order_state_machine.transition(db, order, OrderStatus.REFUNDED, request.reason, actor)
    elif not full_refund:
        order.payment.status = "partially_refunded"
        await save_order(db, order)

    return {
        "transaction_id": transaction_id,
        "refund": refund.model_dump(mode="json"),
        "total_refunded": str(transaction.total_refunded),
        "remaining_amount": str(transaction.remaining_amount),
        "transaction_status": transaction.status.value,
        "order_status": order.status.value,
    }


# ============================================================================
# Webhooks
# ============================================================================

async def handle_webhook(
    db: AsyncSession,
    provider: str,
    payload: Dict[str, Any],
    headers: Optional[Dict[str, str]] = None,
    source_ip: Optional[str] = None
) -> Dict[str, Any]:
    """
    Process a provider callback.

    Never raises: providers always get a success acknowledgment so they do
    not retry. Internal failures are logged.
    """
    try:
        message = await _process_webhook(db, provider, payload or {}, headers or {}, source_ip)
    except Exception:
        logger.error(f"Webhook processing failed for provider {provider}", exc_info=True)
        message = "Webhook received"
    return {"success": True, "message": message}


async def _process_webhook(
    db: AsyncSession,
    provider: str,
    payload: Dict[str, Any],
    headers: Dict[str, str],
    source_ip: Optional[str]
) -> str:
    method = payment_gateways.WEBHOOK_PROVIDERS.get(provider)
    if method is None:
        logger.warning(f"Webhook from unknown provider {provider} ignored")
        return "Webhook received for unknown provider"

    transaction_id, reference, raw_status = payment_gateways.extract_correlation(method, payload)
    transaction = await find_transaction_by_correlation(db, transaction_id, reference)
    if transaction is None:
        logger.info(f"{method} webhook with no matching transaction (id={transaction_id}, ref={reference})")
        return "Webhook received but transaction not found"

    key = webhook_idempotency_key(method, payload)
    entry = transaction_service.record_webhook(
        transaction, method, raw_status, payload, key, headers, source_ip
    )
    if entry.duplicate:
        await save_transaction(db, transaction)
        logger.info(f"Duplicate {method} webhook for {transaction.transaction_id} ignored (key={key})")
        return "Duplicate webhook ignored"

    payment_gateways.apply_webhook_details(transaction, payload)
    new_status = payment_gateways.map_webhook_status(method, raw_status)

    if transaction.status == TransactionStatus.EXPIRED or transaction.is_expired():
        return await _reject_late_webhook(db, transaction, method, raw_status, new_status)

    transaction.set_status(new_status, f"{method} webhook received: {raw_status}", None)

    if new_status == TransactionStatus.COMPLETED:
        transaction.verified = True
        transaction.verified_at = utcnow()
        transaction.verification_method = "webhook"
    elif new_status == TransactionStatus.FAILED:
        transaction.error_message = payload.get("message") or f"Provider reported {raw_status}"

    await save_transaction(db, transaction)
    logger.info(f"{method} webhook applied to {transaction.transaction_id}: {raw_status} -> {new_status.value}")

    if new_status == TransactionStatus.COMPLETED:
        order = await load_order(db, transaction.order_id)
        if order is None:
            logger.warning(f"Order {transaction.order_id} for {transaction.transaction_id} not found")
        elif order_state_machine.can_transition(order.status, OrderStatus.PAID):
            await order_state_machine.transition(db, order, OrderStatus.PAID, f"Payment confirmed by {method}")
        else:
            logger.warning(
                f"Order {order.order_id} in {order.status.value} not moved to paid after {method} confirmation"
            )

    return "Webhook processed successfully"


async def _reject_late_webhook(
    db: AsyncSession,
    transaction: Transaction,
    method: str,
    raw_status: Optional[str],
    new_status: TransactionStatus
) -> str:
    """
    A callback for a transaction whose payment window has closed.

    The payment is never completed; a provider-side success is flagged
    disputed so an admin can reconcile or refund it by hand.
    """
    if new_status == TransactionStatus.COMPLETED:
        transaction.set_status(
            TransactionStatus.DISPUTED,
            f"{method} reported {raw_status} after the payment window expired",
            None
        )
        logger.warning(
            f"{method} confirmed payment for expired transaction {transaction.transaction_id}; marked disputed"
        )
    else:
        logger.info(
            f"{method} webhook ({raw_status}) for expired transaction {transaction.transaction_id} not applied"
        )

    await save_transaction(db, transaction)
    return "Webhook received for expired transaction"


# ============================================================================
# Queries
# ============================================================================

def _mask_phone(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return phone
    if len(phone) <= 7:
        return phone[:3] + "****"
    return f"{phone[:3]}****{phone[7:]}"


def _details_summary(transaction: Transaction) -> Dict[str, Any]:
    details = transaction.details
    if details is None:
        return {"payment_method": transaction.payment_method}

    if details.method == "expresspay":
        return {
            "payment_method": "ExpressPay",
            "merchant_transaction_id": details.merchant_transaction_id,
            "checkout_url": details.checkout_url,
        }
    if details.method == "mobile_money":
        return {
            "payment_method": "Mobile Money",
            "provider": details.provider,
            "phone_number": _mask_phone(details.phone_number),
            "network_reference": details.network_reference,
        }
    if details.method == "hubtel":
        return {"payment_method": "Hubtel", "client_reference": details.client_reference}
    if details.method == "bank_transfer":
        return {
            "payment_method": "Bank Transfer",
            "bank_name": details.bank_name,
            "transfer_reference": details.transfer_reference,
            "transfer_date": details.transfer_date.isoformat() if details.transfer_date else None,
        }
    return {
        "payment_method": "Western Union",
        "mtcn": details.mtcn,
        "sender_name": details.sender_name,
        "transfer_date": details.transfer_date.isoformat() if details.transfer_date else None,
    }


async def check_payment_status(db: AsyncSession, transaction_id: str, actor: Actor) -> Dict[str, Any]:
    """Transaction status with a per-method detail summary (phone masked)."""
    transaction = await _get_owned_transaction(db, transaction_id, actor)
    order = await load_order(db, transaction.order_id)

    return {
        "transaction": _transaction_summary(transaction),
        "payment_details": _details_summary(transaction),
        "order": {
            "order_id": order.order_id,
            "order_number": order.order_number,
            "status": order.status.value,
        } if order else None,
    }


async def list_user_transactions(
    db: AsyncSession,
    actor: Actor,
    payment_method: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 10,
    offset: int = 0
) -> List[Dict[str, Any]]:
    transactions = await list_transactions_for_user(
        db, actor.user_id, payment_method=payment_method, status=status, limit=limit, offset=offset
    )
    return [_transaction_summary(t) for t in transactions]


def list_payment_methods() -> List[Dict[str, Any]]:
    return payment_gateways.PAYMENT_METHODS


# ============================================================================
# Expiry Reconciliation
# ============================================================================

async def expire_stale_transactions(db: AsyncSession, now=None) -> int:
    """
    Mark initiated transactions past expires_at as expired.

    An order still waiting on that transaction moves to payment_failed.

    Returns:
        Number of transactions expired
    """
    now = now or utcnow()
    expired = 0

    for transaction in await list_expired_initiated_transactions(db, now):
        await transaction_service.update_status(
            db, transaction, TransactionStatus.EXPIRED, "Payment window expired"
        )
        expired += 1

        order = await load_order(db, transaction.order_id)
        if (
            order is not None
            and order.status == OrderStatus.PAYMENT_PENDING
            and order.payment.transaction_id == transaction.transaction_id
        ):
            await order_state_machine.transition(db, order, OrderStatus.PAYMENT_FAILED, "Payment window expired")

    if expired:
        logger.info(f"Expired {expired} stale transaction(s)")
    return expired
