"""
Typed result values returned by the settlement engine.

Every public engine operation returns one of these instead of raising;
`ok` tells success from failure and `error` names the failure kind.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from backend.app.core.exceptions import ErrorKind, SettlementError
from backend.app.models.billing_enums import WithdrawalStatus
from backend.app.models.order_enums import OrderStatus


@dataclass(frozen=True)
class WalletBalance:
    user_id: str
    available: Decimal
    pending: Decimal


@dataclass(frozen=True)
class CommissionSplit:
    amount: Decimal
    rate: Decimal
    seller_earning: Decimal
    commission_amount: Decimal


@dataclass(frozen=True)
class AddItemsResult:
    ok: bool = True
    added: int = 0
    duplicates_skipped: int = 0
    available: int = 0
    error: Optional[ErrorKind] = None
    message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def failure(cls, exc: SettlementError) -> "AddItemsResult":
        return cls(ok=False, error=exc.kind, message=exc.message, details=exc.details)


@dataclass(frozen=True)
class PurchaseResult:
    ok: bool
    order_id: Optional[int] = None
    status: Optional[OrderStatus] = None
    new_balance: Optional[Decimal] = None
    amount: Optional[Decimal] = None
    seller_earning: Optional[Decimal] = None
    commission_rate: Optional[Decimal] = None
    delivery_item_id: Optional[int] = None
    replayed: bool = False
    error: Optional[ErrorKind] = None
    message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def failure(cls, exc: SettlementError) -> "PurchaseResult":
        return cls(ok=False, error=exc.kind, message=exc.message, details=exc.details)

    def to_record(self) -> Dict[str, Any]:
        """JSON-safe form stored on the idempotency record."""
        return {
            "order_id": self.order_id,
            "status": self.status.value if self.status else None,
            "new_balance": str(self.new_balance),
            "amount": str(self.amount),
            "seller_earning": str(self.seller_earning),
            "commission_rate": str(self.commission_rate),
            "delivery_item_id": self.delivery_item_id,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "PurchaseResult":
        return cls(
            ok=True,
            order_id=record["order_id"],
            status=OrderStatus(record["status"]),
            new_balance=Decimal(record["new_balance"]),
            amount=Decimal(record["amount"]),
            seller_earning=Decimal(record["seller_earning"]),
            commission_rate=Decimal(record["commission_rate"]),
            delivery_item_id=record.get("delivery_item_id"),
            replayed=True,
        )


@dataclass(frozen=True)
class ApprovalResult:
    ok: bool
    order_id: Optional[int] = None
    status: Optional[OrderStatus] = None
    released_amount: Optional[Decimal] = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def failure(cls, exc: SettlementError, order_id: Optional[int] = None) -> "ApprovalResult":
        return cls(ok=False, order_id=order_id, error=exc.kind, message=exc.message, details=exc.details)


@dataclass(frozen=True)
class OrderResult:
    """Outcome of deliver / dispute / refund operations."""
    ok: bool
    order_id: Optional[int] = None
    status: Optional[OrderStatus] = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def failure(cls, exc: SettlementError, order_id: Optional[int] = None) -> "OrderResult":
        return cls(ok=False, order_id=order_id, error=exc.kind, message=exc.message, details=exc.details)


@dataclass(frozen=True)
class TopUpResult:
    ok: bool
    balance: Optional[WalletBalance] = None
    ledger_entry_id: Optional[int] = None
    replayed: bool = False
    error: Optional[ErrorKind] = None
    message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def failure(cls, exc: SettlementError) -> "TopUpResult":
        return cls(ok=False, error=exc.kind, message=exc.message, details=exc.details)


@dataclass(frozen=True)
class WithdrawalResult:
    ok: bool
    withdrawal_id: Optional[int] = None
    status: Optional[WithdrawalStatus] = None
    amount: Optional[Decimal] = None
    balance: Optional[WalletBalance] = None
    replayed: bool = False
    error: Optional[ErrorKind] = None
    message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def failure(cls, exc: SettlementError, withdrawal_id: Optional[int] = None) -> "WithdrawalResult":
        return cls(ok=False, withdrawal_id=withdrawal_id, error=exc.kind, message=exc.message, details=exc.details)


@dataclass(frozen=True)
class IntentResult:
    ok: bool
    token: Optional[str] = None
    product_id: Optional[int] = None
    price_snapshot: Optional[Decimal] = None
    expires_at: Optional[datetime] = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def failure(cls, exc: SettlementError) -> "IntentResult":
        return cls(ok=False, error=exc.kind, message=exc.message, details=exc.details)


@dataclass
class AutoReleaseReport:
    released: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ReconciliationReport:
    user_id: str
    available_balance: Decimal
    pending_balance: Decimal
    ledger_available: Decimal
    ledger_pending: Decimal
    entry_count: int

    @property
    def balanced(self) -> bool:
        return (
            self.available_balance == self.ledger_available
            and self.pending_balance == self.ledger_pending
        )
