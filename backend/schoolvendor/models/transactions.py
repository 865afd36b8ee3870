"""
Pydantic Transaction Model

One payment attempt against an order: provider details, status history,
refunds and the raw webhook log kept for audit.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Optional, Literal, List, Union, Dict, Any
from pydantic import BaseModel, Field, computed_field

from .common import Currency, StatusHistoryEntry, utcnow
from .orders import PaymentMethod


class TransactionStatus(str, Enum):
    INITIATED = "initiated"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    DISPUTED = "disputed"


MANUAL_SETTLEMENT_METHODS = ("bank_transfer", "western_union")

MobileMoneyNetwork = Literal["mtn", "vodafone", "airtel_tigo"]


# ==================== Provider Details (tagged by method) ====================

class ExpressPayDetails(BaseModel):
    """Card gateway checkout."""
    method: Literal["expresspay"] = "expresspay"
    merchant_transaction_id: str
    checkout_url: str
    payment_token: str
    card_type: Optional[str] = None
    card_last_four: Optional[str] = None
    authorization_code: Optional[str] = None

    @property
    def provider_reference(self) -> Optional[str]:
        return self.merchant_transaction_id


class MobileMoneyDetails(BaseModel):
    method: Literal["mobile_money"] = "mobile_money"
    provider: MobileMoneyNetwork = "mtn"
    phone_number: Optional[str] = None
    network_reference: str
    provider_transaction_id: Optional[str] = None

    @property
    def provider_reference(self) -> Optional[str]:
        return self.network_reference


class HubtelDetails(BaseModel):
    """Alternative hosted-checkout gateway."""
    method: Literal["hubtel"] = "hubtel"
    client_reference: str
    checkout_id: str
    hubtel_transaction_id: Optional[str] = None
    channel: Optional[str] = None

    @property
    def provider_reference(self) -> Optional[str]:
        return self.client_reference


class BankTransferDetails(BaseModel):
    method: Literal["bank_transfer"] = "bank_transfer"
    bank_name: str
    account_number: str
    transfer_reference: str
    receipt_number: Optional[str] = None
    transfer_date: Optional[datetime] = None
    deposit_slip_url: Optional[str] = None
    verification_notes: Optional[str] = None

    @property
    def provider_reference(self) -> Optional[str]:
        return self.transfer_reference


class WesternUnionDetails(BaseModel):
    """Wire transfer, confirmed by MTCN and sender identity."""
    method: Literal["western_union"] = "western_union"
    receiver_name: str
    mtcn: Optional[str] = None  # Money Transfer Control Number
    sender_name: Optional[str] = None
    sender_country: Optional[str] = None
    transfer_date: Optional[datetime] = None
    verification_notes: Optional[str] = None

    @property
    def provider_reference(self) -> Optional[str]:
        return self.mtcn


ProviderDetails = Annotated[
    Union[ExpressPayDetails, MobileMoneyDetails, HubtelDetails, BankTransferDetails, WesternUnionDetails],
    Field(discriminator="method"),
]


# ==================== Logs ====================

class RefundRecord(BaseModel):
    amount: Decimal
    reason: str
    status: Literal["pending", "processing", "completed", "failed"] = "pending"
    refund_reference: Optional[str] = None
    actor: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class WebhookEntry(BaseModel):
    """Raw provider callback, kept even when it changes nothing."""
    provider: str
    event: Optional[str] = None
    payload: Dict[str, Any]
    headers: Dict[str, str] = {}
    source_ip: Optional[str] = None
    idempotency_key: str
    duplicate: bool = False
    timestamp: datetime = Field(default_factory=utcnow)


# ==================== Aggregate ====================

class Transaction(BaseModel):
    """
    Transaction aggregate.

    Invariants:
    - total_refunded <= amount
    - remaining_amount = amount - total_refunded >= 0
    - status_history, refunds and webhook_log are append-only
    """
    transaction_id: str
    order_id: str
    user_id: str
    amount: Decimal = Field(gt=0)
    currency: Currency = "GHS"
    payment_method: PaymentMethod
    status: TransactionStatus = TransactionStatus.INITIATED
    status_history: List[StatusHistoryEntry] = []
    details: Optional[ProviderDetails] = None
    payment_reference: Optional[str] = None
    refunds: List[RefundRecord] = []
    total_refunded: Decimal = Decimal("0.00")
    webhook_log: List[WebhookEntry] = []
    verified: bool = False
    verified_at: Optional[datetime] = None
    verified_by: Optional[str] = None
    verification_method: Optional[Literal["automatic", "manual", "webhook"]] = None
    verification_details: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    expires_at: datetime
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def remaining_amount(self) -> Decimal:
        return max(self.amount - self.total_refunded, Decimal("0.00"))

    @property
    def provider_reference(self) -> Optional[str]:
        return self.details.provider_reference if self.details else None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at

    def set_status(self, status: TransactionStatus, note: Optional[str], actor: Optional[str]) -> bool:
        """
        Change status and append to history.

        Returns False (and records nothing) when the status is unchanged.
        """
        if self.status == status:
            return False

        self.status = status
        self.status_history.append(
            StatusHistoryEntry(
                status=status.value,
                note=note or f"Transaction status changed to {status.value}",
                actor=actor
            )
        )
        if status == TransactionStatus.REFUNDED:
            self.total_refunded = self.amount
        self.updated_at = utcnow()
        return True


# ==================== Requests ====================

class InitiatePaymentRequest(BaseModel):
    order_id: str
    payment_method: str


class MobileMoneyDetailsRequest(BaseModel):
    provider: str
    phone_number: str = Field(min_length=1)


class SenderInfo(BaseModel):
    name: str = Field(min_length=1)
    country: str = Field(min_length=1)


class ManualVerificationRequest(BaseModel):
    """Customer-submitted proof for bank transfer or wire transfer."""
    payment_method: Optional[str] = None
    reference: Optional[str] = None
    receipt_number: Optional[str] = None
    receipt_url: Optional[str] = None
    sender_info: Optional[SenderInfo] = None


class AdminVerifyRequest(BaseModel):
    approved: bool
    note: Optional[str] = None


class RefundRequest(BaseModel):
    amount: Decimal = Field(gt=0, decimal_places=2)
    reason: str = Field(min_length=1)
