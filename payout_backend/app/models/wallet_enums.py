"""
Wallet and payout enumerations.
"""

import enum


class LedgerEntryType(str, enum.Enum):
    """Ledger entry type enumeration."""
    CREDIT_ELIGIBLE = "credit_eligible"  # Payable in a cycle
    DEBIT_HOLD = "debit_hold"  # Recorded, still inside the hold window
    CREDIT_RELEASE = "credit_release"  # Zeroes a hold when it is promoted
    DEBIT_PAYOUT = "debit_payout"  # Settled to the vendor's bank
    DEBIT_REFUND = "debit_refund"  # Reversed by a refund


class LedgerSource(str, enum.Enum):
    """Revenue source of a ledger entry."""
    EVENT = "event"
    STORE = "store"


class PayoutTier(str, enum.Enum):
    """Payout cadence chosen by the vendor."""
    WEEKLY = "weekly"
    FIVE_DAYS = "5days"
    THREE_DAYS = "3days"
    TWO_DAYS = "2days"
    ONE_DAY = "1day"


class PayoutBatchStatus(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class PayoutBatchOrigin(str, enum.Enum):
    AUTOMATED = "automated"  # Written by the batch processor
    MANUAL = "manual"  # Backfilled after an out-of-band payout


class TransferStatus(str, enum.Enum):
    """Lifecycle of a dispatched bank transfer."""
    IN_FLIGHT = "in_flight"  # Dispatched or outcome unknown, entries locked
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class TransferOutcome(str, enum.Enum):
    """Provider-reported status of a transfer."""
    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"
