import re
from datetime import timedelta
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from schoolvendor.db.repository import load_order, load_transaction, save_transaction
from schoolvendor.exceptions import (
    AuthorizationError,
    InvalidStateError,
    PaymentError,
    ValidationError,
)
from schoolvendor.mocks import payment_gateways
from schoolvendor.models.common import utcnow
from schoolvendor.models.orders import OrderStatus
from schoolvendor.models.transactions import (
    AdminVerifyRequest,
    InitiatePaymentRequest,
    ManualVerificationRequest,
    MobileMoneyDetailsRequest,
    RefundRequest,
    SenderInfo,
    Transaction,
    TransactionStatus,
)
from schoolvendor.services import payment_service, transaction_service
from schoolvendor.services.order_state_machine import transition


async def _start_payment(db, order, actor, method="expresspay"):
    result = await payment_service.initiate_payment(
        db, InitiatePaymentRequest(order_id=order.order_id, payment_method=method), actor
    )
    return result["transaction"]["transaction_id"], result


# ============================================================================
# Initiation
# ============================================================================

@pytest.mark.asyncio
async def test_initiate_payment_creates_transaction(db, make_product, make_order, customer):
    book = await make_product()
    order = await make_order([(book, 1)])

    transaction_id, result = await _start_payment(db, order, customer, "mobile_money")

    assert re.fullmatch(r"MOB-\d{8}-[A-Z0-9]{4}", transaction_id)
    assert result["payment_details"]["supported_providers"] == ["mtn", "vodafone", "airtel_tigo"]

    transaction = await load_transaction(db, transaction_id)
    assert transaction.status == TransactionStatus.INITIATED
    assert transaction.amount == order.total_amount
    assert transaction.details.method == "mobile_money"
    assert transaction.details.network_reference.startswith("MM-")
    assert timedelta(hours=1) <= transaction.expires_at - transaction.created_at <= timedelta(hours=2)

    stored = await load_order(db, order.order_id)
    assert stored.status == OrderStatus.PAYMENT_PENDING
    assert stored.payment.method == "mobile_money"
    assert stored.payment.transaction_id == transaction_id


@pytest.mark.asyncio
async def test_initiate_payment_rejects_unknown_method(db, make_product, make_order, customer):
    book = await make_product()
    order = await make_order([(book, 1)])

    with pytest.raises(ValidationError):
        await _start_payment(db, order, customer, "paypal")

    assert (await load_order(db, order.order_id)).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_initiate_payment_requires_payable_order(db, make_product, make_order, customer, admin):
    book = await make_product()
    order = await make_order([(book, 1)])
    await transition(db, order, OrderStatus.PROCESSING, actor=admin)

    with pytest.raises(InvalidStateError):
        await _start_payment(db, order, customer)


@pytest.mark.asyncio
async def test_initiate_payment_by_stranger_is_forbidden(db, make_product, make_order, other_customer):
    book = await make_product()
    order = await make_order([(book, 1)])

    with pytest.raises(AuthorizationError):
        await _start_payment(db, order, other_customer)


@pytest.mark.asyncio
async def test_retry_after_failure_uses_new_transaction(db, make_product, make_order, customer, admin):
    book = await make_product()
    order = await make_order([(book, 1)])
    first_id, _ = await _start_payment(db, order, customer, "bank_transfer")
    await payment_service.admin_verify_payment(db, first_id, AdminVerifyRequest(approved=False), admin)

    second_id, _ = await _start_payment(db, await load_order(db, order.order_id), customer, "hubtel")

    assert second_id != first_id
    stored = await load_order(db, order.order_id)
    assert stored.status == OrderStatus.PAYMENT_PENDING
    assert stored.payment.transaction_id == second_id


@pytest.mark.asyncio
async def test_dispatch_failure_marks_order_payment_failed(db, make_product, make_order, customer, monkeypatch):
    book = await make_product()
    order = await make_order([(book, 1)])

    def gateway_down(transaction, order):
        raise ConnectionError("gateway timeout")

    monkeypatch.setitem(payment_gateways.PROVIDER_INITIALIZERS, "hubtel", gateway_down)

    with pytest.raises(PaymentError):
        await _start_payment(db, order, customer, "hubtel")

    stored = await load_order(db, order.order_id)
    assert stored.status == OrderStatus.PAYMENT_FAILED
    transaction = await load_transaction(db, stored.payment.transaction_id)
    assert transaction.status == TransactionStatus.FAILED
    assert transaction.error_message == "gateway timeout"


# ============================================================================
# Webhooks
# ============================================================================

@pytest.mark.asyncio
async def test_webhook_success_marks_order_paid(db, make_product, make_order, customer):
    book = await make_product()
    order = await make_order([(book, 1)])
    transaction_id, _ = await _start_payment(db, order, customer)

    result = await payment_service.handle_webhook(
        db, "expresspay", {"transactionId": transaction_id, "status": "SUCCESSFUL"}, source_ip="10.0.0.5"
    )

    assert result["success"] is True
    transaction = await load_transaction(db, transaction_id)
    assert transaction.status == TransactionStatus.COMPLETED
    assert transaction.verified is True
    assert transaction.verification_method == "webhook"
    assert len(transaction.webhook_log) == 1
    assert transaction.webhook_log[0].source_ip == "10.0.0.5"
    stored = await load_order(db, order.order_id)
    assert stored.status == OrderStatus.PAID
    assert stored.payment.status == "completed"


@pytest.mark.asyncio
async def test_webhook_matches_on_provider_reference(db, make_product, make_order, customer):
    book = await make_product()
    order = await make_order([(book, 1)])
    transaction_id, result = await _start_payment(db, order, customer, "hubtel")
    client_reference = result["payment_details"]["client_reference"]

    await payment_service.handle_webhook(
        db, "hubtel", {"clientReference": client_reference, "status": "Success", "hubtelTransactionId": "HT-9"}
    )

    transaction = await load_transaction(db, transaction_id)
    assert transaction.status == TransactionStatus.COMPLETED
    assert transaction.details.hubtel_transaction_id == "HT-9"


@pytest.mark.asyncio
async def test_duplicate_webhook_is_logged_but_not_reapplied(db, make_product, make_order, customer):
    book = await make_product()
    order = await make_order([(book, 1)])
    transaction_id, _ = await _start_payment(db, order, customer)
    payload = {"transactionId": transaction_id, "status": "PENDING", "eventId": "evt_001"}

    await payment_service.handle_webhook(db, "expresspay", payload)
    history_len = len((await load_transaction(db, transaction_id)).status_history)
    result = await payment_service.handle_webhook(db, "expresspay", dict(payload))

    assert result == {"success": True, "message": "Duplicate webhook ignored"}
    transaction = await load_transaction(db, transaction_id)
    assert len(transaction.webhook_log) == 2
    assert transaction.webhook_log[1].duplicate is True
    assert len(transaction.status_history) == history_len


@pytest.mark.asyncio
async def test_webhook_for_unknown_transaction_is_acknowledged(db):
    result = await payment_service.handle_webhook(
        db, "expresspay", {"transactionId": "EXP-00000000-ZZZZ", "status": "SUCCESSFUL"}
    )

    assert result["success"] is True
    assert await load_transaction(db, "EXP-00000000-ZZZZ") is None


@pytest.mark.asyncio
async def test_webhook_unrecognised_status_maps_to_processing(db, make_product, make_order, customer):
    book = await make_product()
    order = await make_order([(book, 1)])
    transaction_id, result = await _start_payment(db, order, customer, "mobile_money")
    reference = result["payment_details"]["network_reference"]

    await payment_service.handle_webhook(db, "mobile-money", {"reference": reference, "status": "QUEUED"})

    transaction = await load_transaction(db, transaction_id)
    assert transaction.status == TransactionStatus.PROCESSING
    assert (await load_order(db, order.order_id)).status == OrderStatus.PAYMENT_PENDING


@pytest.mark.asyncio
async def test_webhook_errors_are_swallowed(db, monkeypatch):
    async def exploding_lookup(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(payment_service, "find_transaction_by_correlation", exploding_lookup)

    result = await payment_service.handle_webhook(db, "hubtel", {"clientReference": "HUB-1", "status": "Success"})

    assert result["success"] is True


@pytest.mark.asyncio
async def test_webhook_completes_digital_only_order(db, make_digital_product, make_order, customer):
    ebook = await make_digital_product()
    order = await make_order([(ebook, 1)], shipping=False)
    transaction_id, _ = await _start_payment(db, order, customer)

    await payment_service.handle_webhook(db, "expresspay", {"transactionId": transaction_id, "status": "SUCCESSFUL"})

    stored = await load_order(db, order.order_id)
    assert stored.status == OrderStatus.COMPLETED
    assert stored.items[0].digital_delivery.delivery_status == "delivered"
    assert stored.items[0].digital_delivery.download_link


@pytest.mark.asyncio
async def test_success_after_expiry_sweep_is_disputed_not_completed(db, make_product, make_order, customer):
    book = await make_product()
    order = await make_order([(book, 1)])
    transaction_id, _ = await _start_payment(db, order, customer)
    await payment_service.expire_stale_transactions(db, now=utcnow() + timedelta(hours=3))

    result = await payment_service.handle_webhook(
        db, "expresspay", {"transactionId": transaction_id, "status": "SUCCESSFUL"}
    )

    assert result == {"success": True, "message": "Webhook received for expired transaction"}
    transaction = await load_transaction(db, transaction_id)
    assert transaction.status == TransactionStatus.DISPUTED
    assert transaction.verified is False
    assert len(transaction.webhook_log) == 1
    assert "after the payment window expired" in transaction.status_history[-1].note
    assert (await load_order(db, order.order_id)).status == OrderStatus.PAYMENT_FAILED


@pytest.mark.asyncio
async def test_success_past_window_before_sweep_is_disputed(db, make_product, make_order, customer):
    book = await make_product()
    order = await make_order([(book, 1)])
    transaction_id, _ = await _start_payment(db, order, customer)
    transaction = await load_transaction(db, transaction_id)
    transaction.expires_at = utcnow() - timedelta(minutes=1)
    await save_transaction(db, transaction)

    await payment_service.handle_webhook(db, "expresspay", {"transactionId": transaction_id, "status": "SUCCESSFUL"})

    assert (await load_transaction(db, transaction_id)).status == TransactionStatus.DISPUTED
    assert (await load_order(db, order.order_id)).status == OrderStatus.PAYMENT_PENDING


@pytest.mark.asyncio
async def test_non_success_webhook_leaves_expired_transaction_alone(db, make_product, make_order, customer):
    book = await make_product()
    order = await make_order([(book, 1)])
    transaction_id, _ = await _start_payment(db, order, customer)
    await payment_service.expire_stale_transactions(db, now=utcnow() + timedelta(hours=3))

    await payment_service.handle_webhook(db, "expresspay", {"transactionId": transaction_id, "status": "PENDING"})

    transaction = await load_transaction(db, transaction_id)
    assert transaction.status == TransactionStatus.EXPIRED
    assert len(transaction.webhook_log) == 1


# ============================================================================
# Customer-Submitted Details and Manual Verification
# ============================================================================

@pytest.mark.asyncio
async def test_mobile_money_details_move_to_processing(db, make_product, make_order, customer):
    book = await make_product()
    order = await make_order([(book, 1)])
    transaction_id, _ = await _start_payment(db, order, customer, "mobile_money")

    result = await payment_service.submit_mobile_money_details(
        db, transaction_id, MobileMoneyDetailsRequest(provider="vodafone", phone_number="0201234567"), customer
    )

    assert result["network_reference"].startswith("MM-VODAFONE-")
    transaction = await load_transaction(db, transaction_id)
    assert transaction.status == TransactionStatus.PROCESSING
    assert transaction.details.provider == "vodafone"

    status = await payment_service.check_payment_status(db, transaction_id, customer)
    assert status["payment_details"]["phone_number"] == "020****567"
    assert status["order"]["status"] == "payment_pending"


@pytest.mark.asyncio
async def test_mobile_money_rejects_unknown_network(db, make_product, make_order, customer):
    book = await make_product()
    order = await make_order([(book, 1)])
    transaction_id, _ = await _start_payment(db, order, customer, "mobile_money")

    with pytest.raises(ValidationError):
        await payment_service.submit_mobile_money_details(
            db, transaction_id, MobileMoneyDetailsRequest(provider="glo", phone_number="0201234567"), customer
        )


@pytest.mark.asyncio
async def test_bank_transfer_verification_and_approval(db, make_product, make_order, customer, admin):
    book = await make_product()
    order = await make_order([(book, 1)], payment_method="bank_transfer")
    transaction_id, result = await _start_payment(db, order, customer, "bank_transfer")
    assert result["payment_details"]["payment_reference"] == f"BT-{order.order_number}"

    with pytest.raises(ValidationError):
        await payment_service.submit_manual_verification(
            db, transaction_id, ManualVerificationRequest(reference="BT-REF"), customer
        )

    await payment_service.submit_manual_verification(
        db,
        transaction_id,
        ManualVerificationRequest(payment_method="bank_transfer", reference="BT-REF", receipt_number="RCPT-77"),
        customer,
    )
    transaction = await load_transaction(db, transaction_id)
    assert transaction.status == TransactionStatus.PENDING
    assert transaction.details.receipt_number == "RCPT-77"
    assert transaction.details.transfer_date is not None

    with pytest.raises(AuthorizationError):
        await payment_service.admin_verify_payment(db, transaction_id, AdminVerifyRequest(approved=True), customer)

    verified = await payment_service.admin_verify_payment(
        db, transaction_id, AdminVerifyRequest(approved=True, note="Matched statement line 14"), admin
    )

    assert verified.status == TransactionStatus.COMPLETED
    assert verified.verified is True
    assert verified.verified_by == admin.user_id
    assert verified.verification_method == "manual"
    assert (await load_order(db, order.order_id)).status == OrderStatus.PAID


@pytest.mark.asyncio
async def test_admin_rejection_fails_payment(db, make_product, make_order, customer, admin):
    book = await make_product()
    order = await make_order([(book, 1)], payment_method="western_union")
    transaction_id, _ = await _start_payment(db, order, customer, "western_union")

    await payment_service.submit_manual_verification(
        db,
        transaction_id,
        ManualVerificationRequest(reference="1234567890", sender_info=SenderInfo(name="Kwame", country="UK")),
        customer,
    )
    rejected = await payment_service.admin_verify_payment(
        db, transaction_id, AdminVerifyRequest(approved=False, note="MTCN not found"), admin
    )

    assert rejected.status == TransactionStatus.FAILED
    stored = await load_order(db, order.order_id)
    assert stored.status == OrderStatus.PAYMENT_FAILED
    assert stored.status_history[-1].note == "Payment verification rejected: MTCN not found"

    with pytest.raises(InvalidStateError):
        await payment_service.admin_verify_payment(db, transaction_id, AdminVerifyRequest(approved=True), admin)


@pytest.mark.asyncio
async def test_wire_transfer_needs_sender_identity(db, make_product, make_order, customer):
    book = await make_product()
    order = await make_order([(book, 1)])
    transaction_id, _ = await _start_payment(db, order, customer, "western_union")

    with pytest.raises(ValidationError):
        await payment_service.submit_manual_verification(
            db, transaction_id, ManualVerificationRequest(reference="1234567890"), customer
        )


@pytest.mark.asyncio
async def test_manual_verification_only_for_manual_methods(db, make_product, make_order, customer):
    book = await make_product()
    order = await make_order([(book, 1)])
    transaction_id, _ = await _start_payment(db, order, customer, "expresspay")

    with pytest.raises(ValidationError):
        await payment_service.submit_manual_verification(
            db, transaction_id, ManualVerificationRequest(reference="X", receipt_number="Y"), customer
        )


@pytest.mark.asyncio
async def test_manual_verification_rejected_after_window(db, make_product, make_order, customer):
    book = await make_product()
    order = await make_order([(book, 1)], payment_method="bank_transfer")
    transaction_id, _ = await _start_payment(db, order, customer, "bank_transfer")
    transaction = await load_transaction(db, transaction_id)
    transaction.expires_at = utcnow() - timedelta(minutes=1)
    await save_transaction(db, transaction)

    with pytest.raises(InvalidStateError):
        await payment_service.submit_manual_verification(
            db,
            transaction_id,
            ManualVerificationRequest(reference="BT-REF", receipt_number="RCPT-1"),
            customer,
        )

    assert (await load_transaction(db, transaction_id)).status == TransactionStatus.INITIATED


# ============================================================================
# Refunds
# ============================================================================

def test_refund_request_allows_at_most_cents():
    assert RefundRequest(amount="12.50", reason="Damaged").amount == Decimal("12.50")
    with pytest.raises(PydanticValidationError):
        RefundRequest(amount="0.004", reason="Rounding")
    with pytest.raises(PydanticValidationError):
        RefundRequest(amount="0", reason="Nothing")


def test_refund_bookkeeping_rejects_sub_cent_amounts():
    transaction = Transaction(
        transaction_id="EXP-12345678-CD34",
        order_id="ord_test",
        user_id="student_1",
        amount=Decimal("100.00"),
        payment_method="expresspay",
        status=TransactionStatus.COMPLETED,
        expires_at=utcnow(),
    )

    with pytest.raises(ValidationError):
        transaction_service.add_refund(transaction, Decimal("99.996"), "Almost everything")
    with pytest.raises(ValidationError):
        transaction_service.add_refund(transaction, Decimal("0.004"), "Dust")

    assert transaction.refunds == []
    assert transaction.total_refunded == Decimal("0.00")
    assert transaction.status == TransactionStatus.COMPLETED

def test_refund_bookkeeping_partial_then_full():
    transaction = Transaction(
        transaction_id="EXP-12345678-AB12",
        order_id="ord_test",
        user_id="student_1",
        amount=Decimal("100.00"),
        payment_method="expresspay",
        status=TransactionStatus.COMPLETED,
        expires_at=utcnow() + timedelta(hours=2),
    )

    transaction_service.add_refund(transaction, Decimal("40.00"), "Damaged cover")
    assert transaction.status == TransactionStatus.PARTIALLY_REFUNDED
    assert transaction.total_refunded == Decimal("40.00")

    transaction_service.add_refund(transaction, Decimal("60.00"), "Returned remainder")
    assert transaction.status == TransactionStatus.REFUNDED
    assert transaction.total_refunded == Decimal("100.00")
    assert transaction.remaining_amount == Decimal("0.00")

    with pytest.raises(ValidationError):
        transaction_service.add_refund(transaction, Decimal("0.01"), "One more")
    assert len(transaction.refunds) == 2


def test_refund_rejects_non_positive_amount():
    transaction = Transaction(
        transaction_id="HUB-12345678-AB12",
        order_id="ord_test",
        user_id="student_1",
        amount=Decimal("10.00"),
        payment_method="hubtel",
        status=TransactionStatus.COMPLETED,
        expires_at=utcnow(),
    )

    with pytest.raises(ValidationError):
        transaction_service.add_refund(transaction, Decimal("0"), "Nothing")
    assert transaction.total_refunded == Decimal("0.00")


@pytest.mark.asyncio
async def test_process_refund_partial_then_full(db, make_product, make_order, customer, admin):
    book = await make_product(price=Decimal("100.00"))
    order = await make_order([(book, 1)])
    transaction_id, _ = await _start_payment(db, order, customer)
    await payment_service.handle_webhook(db, "expresspay", {"transactionId": transaction_id, "status": "SUCCESSFUL"})
    total = order.total_amount

    partial = await payment_service.process_refund(
        db, transaction_id, RefundRequest(amount=Decimal("40.00"), reason="Damaged cover"), admin
    )
    assert partial["transaction_status"] == "partially_refunded"
    assert partial["refund"]["refund_reference"].startswith("RF-")
    assert partial["order_status"] == "paid"

    full = await payment_service.process_refund(
        db, transaction_id, RefundRequest(amount=total - Decimal("40.00"), reason="Order returned"), admin
    )
    assert full["transaction_status"] == "refunded"
    assert full["remaining_amount"] == "0.00"
    stored = await load_order(db, order.order_id)
    assert stored.status == OrderStatus.REFUNDED
    assert stored.payment.status == "refunded"

    with pytest.raises(InvalidStateError):
        await payment_service.process_refund(
            db, transaction_id, RefundRequest(amount=Decimal("1.00"), reason="Again"), admin
        )


@pytest.mark.asyncio
async def test_process_refund_rejects_sub_cent_remainder(db, make_product, make_order, customer, admin):
    book = await make_product(price=Decimal("100.00"))
    order = await make_order([(book, 1)])
    transaction_id, _ = await _start_payment(db, order, customer)
    await payment_service.handle_webhook(db, "expresspay", {"transactionId": transaction_id, "status": "SUCCESSFUL"})
    almost_all = RefundRequest.model_construct(amount=order.total_amount - Decimal("0.004"), reason="Rounding")

    with pytest.raises(ValidationError):
        await payment_service.process_refund(db, transaction_id, almost_all, admin)

    transaction = await load_transaction(db, transaction_id)
    assert transaction.status == TransactionStatus.COMPLETED
    assert transaction.refunds == []
    stored = await load_order(db, order.order_id)
    assert stored.status == OrderStatus.PAID
    assert stored.payment.status == "completed"


@pytest.mark.asyncio
async def test_refund_requires_settled_transaction(db, make_product, make_order, customer, admin):
    book = await make_product()
    order = await make_order([(book, 1)])
    transaction_id, _ = await _start_payment(db, order, customer)

    with pytest.raises(InvalidStateError):
        await payment_service.process_refund(
            db, transaction_id, RefundRequest(amount=Decimal("5.00"), reason="Early"), admin
        )


@pytest.mark.asyncio
async def test_refund_declined_by_provider(db, make_product, make_order, customer, admin, monkeypatch):
    book = await make_product()
    order = await make_order([(book, 1)])
    transaction_id, _ = await _start_payment(db, order, customer)
    await payment_service.handle_webhook(db, "expresspay", {"transactionId": transaction_id, "status": "SUCCESSFUL"})

    monkeypatch.setattr(
        payment_gateways, "request_refund", lambda transaction, amount, reason: {"status": "declined"}
    )

    with pytest.raises(PaymentError):
        await payment_service.process_refund(
            db, transaction_id, RefundRequest(amount=Decimal("5.00"), reason="Scratched"), admin
        )
    assert (await load_transaction(db, transaction_id)).refunds == []


# ============================================================================
# Queries and Expiry
# ============================================================================

@pytest.mark.asyncio
async def test_transaction_history_filters(db, make_product, make_order, customer, other_customer):
    book = await make_product()
    first = await make_order([(book, 1)])
    second = await make_order([(book, 1)])
    await _start_payment(db, first, customer, "hubtel")
    await _start_payment(db, second, customer, "bank_transfer")

    everything = await payment_service.list_user_transactions(db, customer)
    only_hubtel = await payment_service.list_user_transactions(db, customer, payment_method="hubtel")

    assert len(everything) == 2
    assert [t["payment_method"] for t in only_hubtel] == ["hubtel"]
    assert await payment_service.list_user_transactions(db, other_customer) == []


def test_payment_method_catalogue_lists_every_method():
    ids = [m["id"] for m in payment_service.list_payment_methods()]
    assert ids == ["expresspay", "mobile_money", "hubtel", "bank_transfer", "western_union"]


@pytest.mark.asyncio
async def test_expiry_sweep_fails_waiting_order(db, make_product, make_order, customer):
    book = await make_product()
    order = await make_order([(book, 1)])
    transaction_id, _ = await _start_payment(db, order, customer)

    assert await payment_service.expire_stale_transactions(db) == 0

    expired = await payment_service.expire_stale_transactions(db, now=utcnow() + timedelta(hours=3))

    assert expired == 1
    assert (await load_transaction(db, transaction_id)).status == TransactionStatus.EXPIRED
    stored = await load_order(db, order.order_id)
    assert stored.status == OrderStatus.PAYMENT_FAILED
    assert stored.status_history[-1].note == "Payment window expired"
