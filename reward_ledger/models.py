from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class ActivityType(str, Enum):
    AD_VIEW = "ad_view"
    TASK_COMPLETE = "task_complete"
    REFERRAL = "referral"
    BONUS = "bonus"
    WITHDRAWAL = "withdrawal"
    LOGIN = "login"
    SWAP = "swap"
    OTHER = "other"


class DailyAction(str, Enum):
    SPIN_WHEEL = "spin_wheel"
    DAILY_CHECK_IN = "daily_check_in"
    AD_VIEW = "ad_view"
    TASK = "task"


class AccountStatus(str, Enum):
    ACTIVE = "active"
    BAN = "ban"
    SUSPEND = "suspend"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ALLOWED_TRANSITIONS: dict[WithdrawalStatus, frozenset[WithdrawalStatus]] = {
    WithdrawalStatus.PENDING: frozenset({
        WithdrawalStatus.PROCESSING,
        WithdrawalStatus.COMPLETED,
        WithdrawalStatus.FAILED,
        WithdrawalStatus.CANCELLED,
    }),
    WithdrawalStatus.PROCESSING: frozenset({
        WithdrawalStatus.COMPLETED,
        WithdrawalStatus.FAILED,
    }),
    WithdrawalStatus.COMPLETED: frozenset(),
    WithdrawalStatus.FAILED: frozenset(),
    WithdrawalStatus.CANCELLED: frozenset(),
}


class RequestContext(BaseModel):
    """Origin of an authenticated request, copied onto every log entry."""
    ip_address: str = "unknown"
    request_hash: Optional[str] = None


class CreateAccountRequest(BaseModel):
    telegram_id: str = Field(..., min_length=1)
    username: str = ""
    referred_by: Optional[str] = Field(default=None, description="Referral code of the inviting account")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "telegram_id": "123456789",
            "username": "alice",
            "referred_by": "K7Q2M9XA"
        }
    })


class ApplyRewardRequest(BaseModel):
    type: ActivityType
    amount: Decimal
    metadata: dict[str, Any] = Field(default_factory=dict)
    action: Optional[DailyAction] = None
    description: Optional[str] = None


class SpinWheelRequest(BaseModel):
    reward: Decimal


class CompleteTaskRequest(BaseModel):
    reward: Decimal


class SubmitWithdrawalRequest(BaseModel):
    telegram_id: str
    amount: Decimal
    currency: str
    network: str
    address: str
    method: Optional[str] = None
    memo: str = ""

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "telegram_id": "123456789",
            "amount": 1000,
            "currency": "PEPE",
            "network": "bsc-mainnet",
            "address": "0x52908400098527886E0F7030069857D2E4169EE7"
        }
    })


class SwapRequest(BaseModel):
    from_amount: Decimal = Field(..., description="Points debited from the balance")
    to_currency: str
    to_amount: Decimal

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "from_amount": 5000,
            "to_currency": "PEPE",
            "to_amount": 250
        }
    })


class TransitionWithdrawalRequest(BaseModel):
    status: WithdrawalStatus
    transaction_id: Optional[str] = None
    reason: Optional[str] = None
    admin_notes: Optional[str] = None


class AccountStatusUpdate(BaseModel):
    status: AccountStatus
    reason: Optional[str] = None


class Account(BaseModel):
    id: UUID
    telegram_id: str
    username: str = ""
    balance: Decimal = Decimal("0")
    total_earned: Decimal = Decimal("0")
    tasks_completed_today: int = 0
    last_task_timestamp: Optional[datetime] = None
    completed_tasks: list[str] = Field(default_factory=list)
    ads_viewed_today: int = 0
    last_ad_view: Optional[datetime] = None
    total_ads_viewed: int = 0
    last_spin_wheel: Optional[datetime] = None
    total_spins: int = 0
    last_daily_check_in: Optional[datetime] = None
    daily_check_in_streak: int = 0
    daily_check_in_cycle: int = 1
    referral_count: int = 0
    referral_earnings: Decimal = Decimal("0")
    referral_code: str
    referred_by: Optional[str] = None
    status: AccountStatus = AccountStatus.ACTIVE
    ban_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE


class ActivityEntry(BaseModel):
    id: UUID
    telegram_id: str
    type: ActivityType
    description: str = Field(..., max_length=500)
    reward: Decimal = Field(default=Decimal("0"), ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    ip_address: str
    hash: str

    model_config = ConfigDict(from_attributes=True, frozen=True)


class WithdrawalRequest(BaseModel):
    id: UUID
    user_id: str
    telegram_id: str
    username: str = ""
    amount: Decimal = Field(..., gt=0)
    currency: str
    network: str
    address: str
    memo: str = ""
    method: str
    network_fee: Decimal = Decimal("0")
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    admin_notes: Optional[str] = None
    refunded: bool = False
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def total_debit(self) -> Decimal:
        return self.amount + self.network_fee

    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self.status]

    def can_transition_to(self, new_status: WithdrawalStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS[self.status]

    def can_cancel(self) -> bool:
        return self.status == WithdrawalStatus.PENDING


class Eligibility(BaseModel):
    eligible: bool
    next_available_at: Optional[datetime] = None


class EligibilityResponse(Eligibility):
    telegram_id: str
    action: DailyAction
    remaining_today: Optional[int] = None


class AccountBalance(BaseModel):
    telegram_id: str
    balance: Decimal
    total_earned: Decimal
    total_entries: int
    last_activity_at: Optional[datetime] = None


class ReferralInfo(BaseModel):
    referral_code: str
    referral_count: int
    referral_earnings: Decimal
    total_earned: Decimal


class RewardResponse(BaseModel):
    new_balance: Decimal
    log_entry: ActivityEntry
    account: Account
    commission: Optional[ActivityEntry] = None
    message: str


class WithdrawalResponse(BaseModel):
    withdrawal: WithdrawalRequest
    new_balance: Optional[Decimal] = None
    log_entry: Optional[ActivityEntry] = None
    message: str


class SwapResponse(BaseModel):
    transaction_id: str
    from_amount: Decimal
    to_currency: str
    to_amount: Decimal
    exchange_rate: Decimal
    new_balance: Decimal
    log_entry: ActivityEntry
    message: str


class TypeStats(BaseModel):
    count: int
    total_reward: Decimal


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total_count: int
    has_next_page: bool
    has_prev_page: bool


class ActivityHistoryResponse(BaseModel):
    telegram_id: str
    entries: list[ActivityEntry]
    pagination: Pagination
    stats: dict[str, TypeStats]


class WithdrawalStats(BaseModel):
    telegram_id: str
    total_withdrawn: Decimal
    total_requests: int
    status_breakdown: dict[str, int]
    recent_withdrawals: list[WithdrawalRequest]


class BalanceChanged(BaseModel):
    telegram_id: str
    delta: Decimal
    new_balance: Decimal
    reason: ActivityType
    occurred_at: datetime


class WithdrawalStatusChanged(BaseModel):
    withdrawal_id: UUID
    telegram_id: str
    previous_status: WithdrawalStatus
    status: WithdrawalStatus
    occurred_at: datetime
