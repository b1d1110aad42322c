"""
Billing enumerations for wallets and the ledger.
"""

import enum


class LedgerReason(str, enum.Enum):
    """Why a ledger entry was written."""
    PURCHASE_DEBIT = "purchase-debit"  # Buyer pays for an order
    SALE_CREDIT_PENDING = "sale-credit-pending"  # Seller earning held in escrow
    ESCROW_RELEASE = "escrow-release"  # Pending -> available for the seller
    REFUND = "refund"  # Buyer gets the order amount back
    REFUND_REVERSAL = "refund-reversal"  # Seller's unreleased earning is removed
    TOP_UP = "top-up"  # Funds added through a payment gateway
    WITHDRAWAL = "withdrawal"  # Payout requested; held by the platform until an admin decides
    WITHDRAWAL_REVERSAL = "withdrawal-reversal"  # Rejected payout returned to the wallet


class BalanceBucket(str, enum.Enum):
    """Wallet balance bucket."""
    AVAILABLE = "available"
    PENDING = "pending"


class ReleaseSource(str, enum.Enum):
    """Who triggered the escrow release of an order."""
    BUYER = "buyer"
    AUTO = "auto"
    ADMIN = "admin"


class WithdrawalStatus(str, enum.Enum):
    """
    Withdrawal status enumeration.

    requested -> approved | rejected
    """
    REQUESTED = "requested"
    APPROVED = "approved"  # Paid out by an admin
    REJECTED = "rejected"  # Amount returned to the wallet
