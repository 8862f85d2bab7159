"""
Reward Ledger for the earn-rewards mini app

This module provides:
- Accounts with balances and daily activity counters
- Append-only activity log mirroring every balance change
- Calendar-day gates for spin wheel, check-in, ads and tasks
- Withdrawal lifecycle: pending → processing → completed / failed, or cancelled
- Referral attribution and ad-view commissions
- Point swaps debited against the balance
"""

from .models import (
    ActivityType,
    DailyAction,
    WithdrawalStatus,
    Account,
    ActivityEntry,
    WithdrawalRequest,
)
from .service import LedgerService
from .settings import RewardSettings

__all__ = [
    "ActivityType",
    "DailyAction",
    "WithdrawalStatus",
    "Account",
    "ActivityEntry",
    "WithdrawalRequest",
    "LedgerService",
    "RewardSettings",
]
