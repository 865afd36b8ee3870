"""
Mock Payment Gateways

Simulates the provider side of every supported payment method: checkout
initialization, webhook vocabularies and correlation fields, and refunds.

No real provider is contacted; references are generated locally and
client-facing instructions never contain secrets.
"""
import secrets
import time
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

from ..config import settings
from ..models.orders import Order
from ..models.transactions import (
    BankTransferDetails,
    ExpressPayDetails,
    HubtelDetails,
    MobileMoneyDetails,
    TransactionStatus,
    Transaction,
    WesternUnionDetails,
)


MOBILE_MONEY_PROVIDERS = ("mtn", "vodafone", "airtel_tigo")

# Payment method catalogue shown at checkout
PAYMENT_METHODS = [
    {
        "id": "expresspay",
        "name": "ExpressPay",
        "description": "Pay with Visa or Mastercard through ExpressPay",
        "type": "gateway",
        "currencies": ["GHS", "USD"],
    },
    {
        "id": "mobile_money",
        "name": "Mobile Money",
        "description": "Pay with MTN, Vodafone or AirtelTigo mobile money",
        "type": "gateway",
        "providers": list(MOBILE_MONEY_PROVIDERS),
        "currencies": ["GHS"],
    },
    {
        "id": "hubtel",
        "name": "Hubtel",
        "description": "Pay through the Hubtel checkout",
        "type": "gateway",
        "currencies": ["GHS"],
    },
    {
        "id": "bank_transfer",
        "name": "Bank Transfer",
        "description": "Transfer directly to our bank account and upload your receipt",
        "type": "manual",
        "currencies": ["GHS", "USD", "EUR", "GBP"],
    },
    {
        "id": "western_union",
        "name": "Western Union",
        "description": "Send money via Western Union and submit the MTCN",
        "type": "manual",
        "currencies": ["USD", "EUR", "GBP"],
    },
]


def generate_reference(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(2).upper()}"


# ============================================================================
# Checkout Initialization
# ============================================================================

def _init_expresspay(transaction: Transaction, order: Order) -> Tuple[ExpressPayDetails, Dict[str, Any]]:
    details = ExpressPayDetails(
        merchant_transaction_id=generate_reference("EP"),
        checkout_url=f"{settings.frontend_url}/checkout/expresspay/{transaction.transaction_id}",
        payment_token=secrets.token_hex(16),
    )
    return details, {
        "redirect_url": details.checkout_url,
        "payment_token": details.payment_token,
        "merchant_transaction_id": details.merchant_transaction_id,
        "instructions": "You will be redirected to ExpressPay to complete your payment",
    }


def _init_mobile_money(transaction: Transaction, order: Order) -> Tuple[MobileMoneyDetails, Dict[str, Any]]:
    # Network and phone number arrive in a follow-up step
    details = MobileMoneyDetails(provider="mtn", network_reference=generate_reference("MM"))
    return details, {
        "redirect_url": f"{settings.frontend_url}/checkout/mobile-money/{transaction.transaction_id}",
        "network_reference": details.network_reference,
        "instructions": "Provide your mobile money details to complete the payment",
        "supported_providers": list(MOBILE_MONEY_PROVIDERS),
    }


def _init_hubtel(transaction: Transaction, order: Order) -> Tuple[HubtelDetails, Dict[str, Any]]:
    details = HubtelDetails(client_reference=generate_reference("HUB"), checkout_id=secrets.token_hex(8))
    return details, {
        "redirect_url": f"{settings.frontend_url}/checkout/hubtel/{transaction.transaction_id}",
        "client_reference": details.client_reference,
        "instructions": "You will be redirected to Hubtel to complete your payment",
    }


def _init_bank_transfer(transaction: Transaction, order: Order) -> Tuple[BankTransferDetails, Dict[str, Any]]:
    details = BankTransferDetails(
        bank_name=settings.bank_name,
        account_number=settings.bank_account_number,
        transfer_reference=f"BT-{order.order_number}",
    )
    return details, {
        "bank_details": {
            "bank_name": details.bank_name,
            "account_number": details.account_number,
            "account_name": settings.bank_account_name,
            "swift_code": settings.bank_swift_code,
        },
        "payment_reference": details.transfer_reference,
        "amount": str(transaction.amount),
        "currency": transaction.currency,
        "instructions": "Please transfer the exact amount using the provided reference. "
                        "Upload your receipt after payment.",
        "verification_url": f"{settings.frontend_url}/verify-payment/{transaction.transaction_id}",
    }


def _init_western_union(transaction: Transaction, order: Order) -> Tuple[WesternUnionDetails, Dict[str, Any]]:
    details = WesternUnionDetails(receiver_name=settings.wire_recipient_name)
    return details, {
        "recipient_details": {
            "full_name": details.receiver_name,
            "country": settings.wire_recipient_country,
            "city": settings.wire_recipient_city,
            "address": settings.wire_recipient_address,
        },
        "amount": str(transaction.amount),
        "currency": transaction.currency,
        "instructions": "Please send the exact amount via Western Union to the recipient details above. "
                        "After payment, provide the MTCN and sender information.",
        "verification_url": f"{settings.frontend_url}/verify-payment/{transaction.transaction_id}",
    }


PROVIDER_INITIALIZERS: Dict[str, Callable[[Transaction, Order], Tuple[Any, Dict[str, Any]]]] = {
    "expresspay": _init_expresspay,
    "mobile_money": _init_mobile_money,
    "hubtel": _init_hubtel,
    "bank_transfer": _init_bank_transfer,
    "western_union": _init_western_union,
}


def initialize_payment(transaction: Transaction, order: Order) -> Tuple[Any, Dict[str, Any]]:
    """
    Start a checkout with the transaction's provider.

    Args:
        transaction: Freshly created transaction (status initiated)
        order: Owning order

    Returns:
        (provider detail block, client-facing instructions)
    """
    initializer = PROVIDER_INITIALIZERS[transaction.payment_method]
    return initializer(transaction, order)


# ============================================================================
# Webhooks
# ============================================================================

# URL provider segment -> payment method
WEBHOOK_PROVIDERS = {
    "expresspay": "expresspay",
    "mobile-money": "mobile_money",
    "mobile_money": "mobile_money",
    "hubtel": "hubtel",
}

_STATUS_VOCABULARY: Dict[str, Dict[str, TransactionStatus]] = {
    "expresspay": {
        "SUCCESSFUL": TransactionStatus.COMPLETED,
        "FAILED": TransactionStatus.FAILED,
        "PENDING": TransactionStatus.PENDING,
    },
    "mobile_money": {
        "SUCCESSFUL": TransactionStatus.COMPLETED,
        "SUCCESS": TransactionStatus.COMPLETED,
        "FAILED": TransactionStatus.FAILED,
        "FAILURE": TransactionStatus.FAILED,
        "PENDING": TransactionStatus.PENDING,
    },
    "hubtel": {
        "COMPLETED": TransactionStatus.COMPLETED,
        "SUCCESS": TransactionStatus.COMPLETED,
        "FAILED": TransactionStatus.FAILED,
        "FAILURE": TransactionStatus.FAILED,
        "PENDING": TransactionStatus.PENDING,
    },
}


def map_webhook_status(method: str, raw_status: Optional[str]) -> TransactionStatus:
    """Provider vocabulary -> internal status; anything unrecognised is processing."""
    vocabulary = _STATUS_VOCABULARY.get(method, {})
    return vocabulary.get(str(raw_status or "").upper(), TransactionStatus.PROCESSING)


def extract_correlation(method: str, payload: Dict[str, Any]) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """
    Pull correlation fields from a provider payload.

    Returns:
        (transaction_id, provider_reference, raw_status)
    """
    status = payload.get("status")
    if method == "expresspay":
        return payload.get("transactionId"), payload.get("merchantReference"), status
    if method == "mobile_money":
        reference = payload.get("reference")
        return reference, reference, status
    if method == "hubtel":
        return payload.get("transactionId"), payload.get("clientReference"), status
    return None, None, status


def apply_webhook_details(transaction: Transaction, payload: Dict[str, Any]) -> None:
    """Copy provider-assigned ids from the payload into the detail block."""
    details = transaction.details
    if isinstance(details, MobileMoneyDetails) and payload.get("transactionId"):
        details.provider_transaction_id = payload["transactionId"]
    elif isinstance(details, HubtelDetails):
        details.hubtel_transaction_id = payload.get("hubtelTransactionId") or details.hubtel_transaction_id
        details.channel = payload.get("channel") or details.channel
    elif isinstance(details, ExpressPayDetails):
        details.authorization_code = payload.get("authorizationCode") or details.authorization_code
        details.card_type = payload.get("cardType") or details.card_type
        details.card_last_four = payload.get("cardLastFour") or details.card_last_four


# ============================================================================
# Refunds
# ============================================================================

def request_refund(transaction: Transaction, amount: Decimal, reason: str) -> Dict[str, Any]:
    """
    Ask the provider to return funds.

    Mock Behavior: always accepted; manual-settlement refunds are paid out
    by finance, so they get a local reference as well.

    Returns:
        Dict with status ("accepted" or "declined") and refund_reference
    """
    return {
        "status": "accepted",
        "refund_reference": generate_reference("RF"),
        "amount": str(amount),
        "currency": transaction.currency,
        "requested_at": int(time.time()),
    }
