import functools
import logging
import math
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from typing import Any, Callable, Optional
from uuid import UUID, uuid4

from pydantic import ValidationError

from .eligibility import (
    check_cooldown,
    check_daily_eligibility,
    check_daily_limit,
    count_today,
)
from .models import (
    Account,
    AccountBalance,
    AccountStatus,
    ActivityEntry,
    ActivityHistoryResponse,
    ActivityType,
    BalanceChanged,
    CreateAccountRequest,
    DailyAction,
    Eligibility,
    EligibilityResponse,
    Pagination,
    ReferralInfo,
    RequestContext,
    RewardResponse,
    SubmitWithdrawalRequest,
    SwapRequest,
    SwapResponse,
    TransitionWithdrawalRequest,
    TypeStats,
    WithdrawalRequest,
    WithdrawalResponse,
    WithdrawalStats,
    WithdrawalStatus,
    WithdrawalStatusChanged,
)
from .notifications import EventPublisher
from .settings import RewardSettings
from .storage import DuplicateKeyError, InMemoryStorage, StorageError
from .validators import generate_unique_referral_code, is_valid_address

logger = logging.getLogger(__name__)


class LedgerServiceError(Exception):
    code = "LEDGER_ERROR"


class NotFoundError(LedgerServiceError):
    code = "NOT_FOUND"


class AccountNotFoundError(NotFoundError):
    pass


class WithdrawalNotFoundError(NotFoundError):
    pass


class InvalidInputError(LedgerServiceError):
    code = "INVALID_INPUT"


class InvalidAddressError(InvalidInputError):
    code = "INVALID_ADDRESS"


class InvalidNetworkError(InvalidInputError):
    code = "INVALID_NETWORK"


class InsufficientActivityError(InvalidInputError):
    def __init__(self, message: str, code: str, required: int, current: int):
        super().__init__(message)
        self.code = code
        self.required = required
        self.current = current


class AlreadyClaimedError(LedgerServiceError):
    code = "ALREADY_CLAIMED"

    def __init__(self, message: str, next_available_at: Optional[datetime] = None):
        super().__init__(message)
        self.next_available_at = next_available_at


class InsufficientBalanceError(LedgerServiceError):
    code = "INSUFFICIENT_BALANCE"


class AccountInactiveError(LedgerServiceError):
    code = "ACCOUNT_INACTIVE"


class InvalidStateTransitionError(LedgerServiceError):
    code = "INVALID_TRANSITION"


class ConflictError(LedgerServiceError):
    code = "CONFLICT"


class IdempotencyConflictError(ConflictError):
    code = "DUPLICATE_REQUEST"


class UpstreamError(LedgerServiceError):
    code = "UPSTREAM"


def _translates_storage_errors(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except DuplicateKeyError as e:
            if e.key == "hash":
                raise IdempotencyConflictError(f"Request {e.value} was already processed") from e
            raise ConflictError(str(e)) from e
        except StorageError as e:
            raise UpstreamError(f"Document store failure in {method.__name__}") from e
    return wrapper


def _floor(value: Decimal) -> Decimal:
    return value.to_integral_value(rounding=ROUND_FLOOR)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerService:
    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        settings: Optional[RewardSettings] = None,
        publisher: Optional[EventPublisher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or RewardSettings()
        self.publisher = publisher or EventPublisher()
        self.clock = clock or _utcnow

    def update_settings(self, updates: dict[str, Any]) -> RewardSettings:
        try:
            settings = RewardSettings.model_validate({**self.settings.model_dump(), **updates})
        except ValidationError as e:
            raise InvalidInputError(str(e)) from e
        self.settings = settings
        logger.info("Reward settings updated: %s", sorted(updates))
        return settings

    # Accounts

    @_translates_storage_errors
    def create_account(self, request: CreateAccountRequest, context: Optional[RequestContext] = None) -> Account:
        settings = self.settings
        if not settings.allow_user_registration:
            raise InvalidInputError("User registration is currently disabled")
        if self.storage.get_account(request.telegram_id):
            raise ConflictError(f"User {request.telegram_id} already registered")

        try:
            referral_code = generate_unique_referral_code(self.storage.referral_code_exists)
        except ValueError as e:
            raise ConflictError(str(e)) from e

        referrer = None
        if request.referred_by:
            referrer = self.storage.find_account_by_referral_code(request.referred_by.strip().upper())
            if referrer is None:
                logger.info("Ignoring unknown referral code %r for %s", request.referred_by, request.telegram_id)

        with self._request_hash(context):
            now = self.clock()
            bonus = settings.new_user_bonus
            account = Account(
                id=uuid4(),
                telegram_id=request.telegram_id,
                username=request.username,
                balance=bonus,
                total_earned=bonus,
                referral_code=referral_code,
                referred_by=referrer["referral_code"] if referrer else None,
                created_at=now,
                updated_at=now,
            )
            self.storage.insert_account(account.model_dump())
            logger.info("Created account %s with referral code %s", account.telegram_id, referral_code)

            if bonus > 0:
                self._log(
                    account.telegram_id, ActivityType.BONUS, bonus,
                    description="Welcome bonus",
                    metadata={"bonus_type": "new_user"},
                    context=context, now=now,
                )
                self._publish_balance(account.telegram_id, bonus, account.balance, ActivityType.BONUS, now)

            if referrer:
                self._attribute_referral(referrer["telegram_id"], account, context, now)
        return account

    def _attribute_referral(self, referrer_id: str, referred: Account, context: Optional[RequestContext], now: datetime) -> None:
        bonus = self.settings.referral_bonus

        def mutate(doc: dict) -> None:
            doc["referral_count"] += 1
            if bonus > 0:
                doc["balance"] += bonus
                doc["total_earned"] += bonus
                doc["referral_earnings"] += bonus
            doc["updated_at"] = now

        updated = self.storage.update_account_if(referrer_id, lambda doc: True, mutate)
        if updated is None:
            logger.warning("Referrer %s vanished before attribution of %s", referrer_id, referred.telegram_id)
            return
        if bonus > 0:
            self._log(
                referrer_id, ActivityType.REFERRAL, bonus,
                description=f"Referral bonus for inviting {referred.username or referred.telegram_id}",
                metadata={"referred_telegram_id": referred.telegram_id},
                context=context, now=now, secondary=True,
            )
            self._publish_balance(referrer_id, bonus, updated["balance"], ActivityType.REFERRAL, now)

    def get_account(self, telegram_id: str) -> Account:
        doc = self.storage.get_account(telegram_id)
        if not doc:
            raise AccountNotFoundError(f"User {telegram_id} not found")
        return Account(**doc)

    def get_balance(self, telegram_id: str) -> AccountBalance:
        account = self.get_account(telegram_id)
        entries = self.storage.find_activities(telegram_id)
        last_entry = max(entries, key=lambda e: e["timestamp"]) if entries else None
        return AccountBalance(
            telegram_id=telegram_id,
            balance=account.balance,
            total_earned=account.total_earned,
            total_entries=len(entries),
            last_activity_at=last_entry["timestamp"] if last_entry else None,
        )

    def get_referral_info(self, telegram_id: str) -> ReferralInfo:
        account = self.get_account(telegram_id)
        return ReferralInfo(
            referral_code=account.referral_code,
            referral_count=account.referral_count,
            referral_earnings=account.referral_earnings,
            total_earned=account.total_earned,
        )

    @_translates_storage_errors
    def set_account_status(self, telegram_id: str, status: AccountStatus, reason: Optional[str] = None) -> Account:
        self.get_account(telegram_id)
        now = self.clock()

        def mutate(doc: dict) -> None:
            doc["status"] = status
            doc["ban_reason"] = None if status == AccountStatus.ACTIVE else reason
            doc["updated_at"] = now

        updated = self.storage.update_account_if(telegram_id, lambda doc: True, mutate)
        if updated is None:
            raise AccountNotFoundError(f"User {telegram_id} not found")
        logger.info("Account %s set to %s (%s)", telegram_id, status.value, reason)
        return Account(**updated)

    @_translates_storage_errors
    def delete_account(self, telegram_id: str) -> None:
        if not self.storage.delete_account(telegram_id):
            raise AccountNotFoundError(f"User {telegram_id} not found")
        logger.info("Account %s deleted by admin", telegram_id)

    # Daily gate

    def check_daily_eligibility(self, telegram_id: str, action: DailyAction) -> EligibilityResponse:
        account = self.get_account(telegram_id)
        now = self.clock()
        result = self._eligibility(account.model_dump(), action, now)
        return EligibilityResponse(
            telegram_id=telegram_id,
            action=action,
            eligible=result.eligible,
            next_available_at=result.next_available_at,
            remaining_today=self._remaining_today(account.model_dump(), action, now),
        )

    def _eligibility(self, doc: dict, action: DailyAction, now: datetime) -> Eligibility:
        settings = self.settings
        tz = settings.timezone
        if action == DailyAction.SPIN_WHEEL:
            return check_daily_eligibility(doc["last_spin_wheel"], now, tz)
        if action == DailyAction.DAILY_CHECK_IN:
            return check_daily_eligibility(doc["last_daily_check_in"], now, tz)
        if action == DailyAction.TASK:
            return check_daily_limit(
                doc["tasks_completed_today"], settings.daily_task_limit,
                doc["last_task_timestamp"], now, tz,
            )
        limit = check_daily_limit(
            doc["ads_viewed_today"], settings.ads_watch_limit, doc["last_ad_view"], now, tz,
        )
        if not limit.eligible:
            return limit
        return check_cooldown(doc["last_ad_view"], now, settings.min_watch_time)

    def _remaining_today(self, doc: dict, action: DailyAction, now: datetime) -> Optional[int]:
        tz = self.settings.timezone
        if action == DailyAction.TASK:
            done = count_today(doc["tasks_completed_today"], doc["last_task_timestamp"], now, tz)
            return max(0, self.settings.daily_task_limit - done)
        if action == DailyAction.AD_VIEW:
            done = count_today(doc["ads_viewed_today"], doc["last_ad_view"], now, tz)
            return max(0, self.settings.ads_watch_limit - done)
        return None

    def _stamp(self, doc: dict, action: DailyAction, now: datetime) -> None:
        tz = self.settings.timezone
        if action == DailyAction.SPIN_WHEEL:
            doc["last_spin_wheel"] = now
            doc["total_spins"] += 1
        elif action == DailyAction.DAILY_CHECK_IN:
            doc["last_daily_check_in"] = now
            doc["daily_check_in_streak"] += 1
            doc["daily_check_in_cycle"] = doc["daily_check_in_streak"] // self.settings.check_in_cycle_days + 1
        elif action == DailyAction.TASK:
            doc["tasks_completed_today"] = count_today(
                doc["tasks_completed_today"], doc["last_task_timestamp"], now, tz) + 1
            doc["last_task_timestamp"] = now
        else:
            doc["ads_viewed_today"] = count_today(doc["ads_viewed_today"], doc["last_ad_view"], now, tz) + 1
            doc["last_ad_view"] = now
            doc["total_ads_viewed"] += 1

    # Rewards

    @_translates_storage_errors
    def apply_reward(
        self,
        telegram_id: str,
        activity_type: ActivityType,
        amount: Decimal,
        metadata: Optional[dict[str, Any]] = None,
        action: Optional[DailyAction] = None,
        description: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> RewardResponse:
        try:
            activity_type = ActivityType(activity_type)
            action = DailyAction(action) if action is not None else None
            amount = Decimal(amount)
        except (ValueError, TypeError, InvalidOperation) as e:
            raise InvalidInputError(f"Invalid reward request: {e}") from e
        return self._apply_reward(
            telegram_id, activity_type, amount, metadata or {},
            action=action, description=description, context=context,
        )

    def _apply_reward(
        self,
        telegram_id: str,
        activity_type: ActivityType,
        amount: Decimal,
        metadata: dict[str, Any],
        action: Optional[DailyAction] = None,
        description: Optional[str] = None,
        context: Optional[RequestContext] = None,
        extra_guard: Optional[Callable[[dict], bool]] = None,
        extra_mutation: Optional[Callable[[dict], None]] = None,
        enrich: Optional[Callable[[dict], dict[str, Any]]] = None,
    ) -> RewardResponse:
        if not amount.is_finite() or amount < 0:
            raise InvalidInputError(f"Invalid reward amount: {amount}")
        if action == DailyAction.SPIN_WHEEL and amount not in self.settings.spin_rewards:
            raise InvalidInputError(f"Invalid reward amount: {amount}")
        self.get_account(telegram_id)

        with self._request_hash(context):
            now = self.clock()

            def guard(doc: dict) -> bool:
                if extra_guard is not None and not extra_guard(doc):
                    return False
                return action is None or self._eligibility(doc, action, now).eligible

            def mutate(doc: dict) -> None:
                doc["balance"] += amount
                doc["total_earned"] += amount
                doc["updated_at"] = now
                if action is not None:
                    self._stamp(doc, action, now)
                if extra_mutation is not None:
                    extra_mutation(doc)

            updated = self.storage.update_account_if(telegram_id, guard, mutate)
            if updated is None:
                self._raise_gate_failure(telegram_id, action, now)

            if enrich is not None:
                metadata = {**metadata, **enrich(updated)}
            entry = self._log(
                telegram_id, activity_type, amount,
                description=description or f"Earned {amount} from {activity_type.value}",
                metadata=metadata, context=context, now=now,
            )
        logger.info("Credited %s to %s (%s), balance %s", amount, telegram_id, activity_type.value, updated["balance"])
        self._publish_balance(telegram_id, amount, updated["balance"], activity_type, now)
        return RewardResponse(
            new_balance=updated["balance"],
            log_entry=entry,
            account=Account(**updated),
            message=f"{amount} has been added to your balance",
        )

    def _raise_gate_failure(self, telegram_id: str, action: Optional[DailyAction], now: datetime):
        doc = self.storage.get_account(telegram_id)
        if doc is None:
            raise AccountNotFoundError(f"User {telegram_id} not found")
        if action is None:
            raise AlreadyClaimedError("Reward already claimed")

        result = self._eligibility(doc, action, now)
        if result.eligible:
            message = "Reward already claimed"
        elif action == DailyAction.SPIN_WHEEL:
            message = "Spin wheel already used today"
        elif action == DailyAction.DAILY_CHECK_IN:
            message = "Daily check-in already claimed today"
        elif action == DailyAction.TASK:
            message = f"Daily task limit of {self.settings.daily_task_limit} reached"
        elif self._remaining_today(doc, action, now) == 0:
            message = f"Daily ad limit of {self.settings.ads_watch_limit} reached"
        else:
            wait = math.ceil((result.next_available_at - now).total_seconds())
            message = f"Please wait {wait} more seconds before watching another ad"
        logger.info("%s rejected for %s: %s", action.value, telegram_id, message)
        raise AlreadyClaimedError(message, result.next_available_at)

    @_translates_storage_errors
    def spin_wheel(self, telegram_id: str, reward: Decimal, context: Optional[RequestContext] = None) -> RewardResponse:
        reward = Decimal(reward)
        response = self._apply_reward(
            telegram_id, ActivityType.BONUS, reward,
            {"spin_type": "lucky_wheel", "reward": str(reward)},
            action=DailyAction.SPIN_WHEEL,
            description="Lucky spin wheel completed",
            context=context,
            enrich=lambda doc: {"spin_number": doc["total_spins"]},
        )
        response.message = f"Spin complete! +{reward}"
        return response

    @_translates_storage_errors
    def daily_check_in(self, telegram_id: str, context: Optional[RequestContext] = None) -> RewardResponse:
        settings = self.settings
        account = self.get_account(telegram_id)
        streak = account.daily_check_in_streak
        day_in_cycle = streak % settings.check_in_cycle_days + 1
        cycle_multiplier = 1 + (account.daily_check_in_cycle - 1) * Decimal("0.1")
        daily_bonus = day_in_cycle * settings.check_in_daily_step
        reward = _floor((settings.check_in_base_reward + daily_bonus) * cycle_multiplier)

        response = self._apply_reward(
            telegram_id, ActivityType.BONUS, reward,
            metadata={
                "check_in_type": "daily",
                "streak": streak + 1,
                "day_in_cycle": day_in_cycle,
                "cycle_multiplier": str(cycle_multiplier),
            },
            action=DailyAction.DAILY_CHECK_IN,
            description=f"Daily check-in completed (Day {streak + 1})",
            context=context,
            extra_guard=lambda doc: doc["daily_check_in_streak"] == streak,
        )
        response.message = f"Daily check-in complete! +{reward}"
        return response

    @_translates_storage_errors
    def watch_ad(self, telegram_id: str, context: Optional[RequestContext] = None) -> RewardResponse:
        settings = self.settings
        reward = _floor(settings.default_ads_reward * settings.ads_reward_multiplier)
        response = self._apply_reward(
            telegram_id, ActivityType.AD_VIEW, reward, {},
            action=DailyAction.AD_VIEW,
            description=f"Watched ads and earned {reward}",
            context=context,
        )

        referred_by = response.account.referred_by
        commission = _floor(reward * settings.referral_commission_rate)
        if referred_by and commission > 0:
            response.commission = self._pay_commission(response.account, response.log_entry, commission)
        return response

    def _pay_commission(
        self,
        account: Account,
        source: ActivityEntry,
        commission: Decimal,
    ) -> Optional[ActivityEntry]:
        referrer = self.storage.find_account_by_referral_code(account.referred_by)
        if referrer is None or referrer["status"] != AccountStatus.ACTIVE:
            return None
        now = self.clock()

        def mutate(doc: dict) -> None:
            doc["balance"] += commission
            doc["total_earned"] += commission
            doc["referral_earnings"] += commission
            doc["updated_at"] = now

        updated = self.storage.update_account_if(
            referrer["telegram_id"], lambda doc: doc["status"] == AccountStatus.ACTIVE, mutate,
        )
        if updated is None:
            return None
        entry = self._log(
            referrer["telegram_id"], ActivityType.REFERRAL, commission,
            description=f"Earned {commission} commission from {account.username or account.telegram_id}'s ad view",
            metadata={"source_telegram_id": account.telegram_id, "source_entry_id": str(source.id)},
            context=RequestContext(ip_address=source.ip_address, request_hash=f"ref_{source.hash}"),
            now=now,
        )
        self._publish_balance(referrer["telegram_id"], commission, updated["balance"], ActivityType.REFERRAL, now)
        return entry

    @_translates_storage_errors
    def complete_task(
        self,
        telegram_id: str,
        task_id: str,
        reward: Decimal,
        context: Optional[RequestContext] = None,
    ) -> RewardResponse:
        reward = Decimal(reward)
        if reward <= 0:
            raise InvalidInputError(f"Invalid reward amount: {reward}")
        account = self.get_account(telegram_id)
        if task_id in account.completed_tasks:
            raise AlreadyClaimedError(f"Task {task_id} already completed")

        def add_task(doc: dict) -> None:
            doc["completed_tasks"].append(task_id)

        return self._apply_reward(
            telegram_id, ActivityType.TASK_COMPLETE, reward,
            {"task_id": task_id},
            action=DailyAction.TASK,
            description=f"Completed task {task_id}",
            context=context,
            extra_guard=lambda doc: task_id not in doc["completed_tasks"],
            extra_mutation=add_task,
        )

    # Swaps

    @_translates_storage_errors
    def swap(self, telegram_id: str, request: SwapRequest, context: Optional[RequestContext] = None) -> SwapResponse:
        """Convert points into another currency.

        The balance is debited with a guarded update and the ``swap`` entry is
        written afterwards; if that write fails the debit is credited back.
        """
        from_amount = request.from_amount
        to_amount = request.to_amount
        to_currency = request.to_currency.strip().upper()
        if not from_amount.is_finite() or not to_amount.is_finite() or to_amount <= 0 or not to_currency:
            raise InvalidInputError("Missing required fields (from_amount, to_currency, to_amount)")
        minimum = self.settings.min_swap_amount
        if from_amount <= 0 or from_amount < minimum:
            raise InvalidInputError(f"Minimum swap amount is {minimum} points")

        account = self.get_account(telegram_id)
        if not account.is_active():
            raise AccountInactiveError("Account is not active. Cannot perform swap.")

        with self._request_hash(context):
            now = self.clock()

            def guard(doc: dict) -> bool:
                return doc["status"] == AccountStatus.ACTIVE and doc["balance"] >= from_amount

            def debit(doc: dict) -> None:
                doc["balance"] -= from_amount
                doc["updated_at"] = now

            updated = self.storage.update_account_if(telegram_id, guard, debit)
            if updated is None:
                latest = self.get_account(telegram_id)
                if not latest.is_active():
                    raise AccountInactiveError("Account is not active. Cannot perform swap.")
                raise InsufficientBalanceError(
                    f"Insufficient balance. You have {latest.balance} points but need {from_amount} points"
                )

            transaction_id = f"TXN{uuid4().hex[:12].upper()}"
            exchange_rate = to_amount / from_amount
            try:
                entry = self._log(
                    telegram_id, ActivityType.SWAP, Decimal("0"),
                    description=f"Swapped {from_amount} points to {to_amount} {to_currency}",
                    metadata={
                        "transaction_id": transaction_id,
                        "from_amount": str(from_amount),
                        "to_currency": to_currency,
                        "to_amount": str(to_amount),
                        "exchange_rate": str(exchange_rate),
                        "remaining_balance": str(updated["balance"]),
                    },
                    context=context, now=now,
                )
            except StorageError:
                self.storage.update_account_if(
                    telegram_id, lambda doc: True,
                    lambda doc: doc.update(balance=doc["balance"] + from_amount, updated_at=now),
                )
                logger.warning("Swap %s for %s rolled back after a failed log write", transaction_id, telegram_id)
                raise

        logger.info("Swap %s: %s swapped %s points to %s %s", transaction_id, telegram_id, from_amount, to_amount, to_currency)
        self._publish_balance(telegram_id, -from_amount, updated["balance"], ActivityType.SWAP, now)
        return SwapResponse(
            transaction_id=transaction_id,
            from_amount=from_amount,
            to_currency=to_currency,
            to_amount=to_amount,
            exchange_rate=exchange_rate,
            new_balance=updated["balance"],
            log_entry=entry,
            message="Swap completed successfully",
        )

    # Withdrawals

    @_translates_storage_errors
    def submit_withdrawal(
        self,
        request: SubmitWithdrawalRequest,
        context: Optional[RequestContext] = None,
    ) -> WithdrawalResponse:
        settings = self.settings
        amount = request.amount
        currency = request.currency.strip().upper()
        network = request.network.strip()
        address = request.address.strip()

        if not amount.is_finite() or amount <= 0:
            raise InvalidInputError("Withdrawal amount must be positive")
        if network not in settings.supported_networks:
            raise InvalidNetworkError(
                f"Network {network} is not supported. Supported networks: {', '.join(settings.supported_networks)}"
            )
        if currency not in settings.supported_currencies:
            raise InvalidInputError(f"Currency {currency} is not supported")
        if not is_valid_address(address):
            raise InvalidAddressError(f"Invalid address format. Address: {address}")
        minimum = settings.minimum_for(currency)
        if minimum is not None and amount < minimum:
            raise InvalidInputError(f"Minimum withdrawal amount for {currency} is {minimum}")

        account = self.get_account(request.telegram_id)
        self._check_withdrawal_activity(account.telegram_id)
        with self._request_hash(context):
            fee = settings.fee_for(currency)
            total = amount + fee
            now = self.clock()

            def mutate(doc: dict) -> None:
                doc["balance"] -= total
                doc["updated_at"] = now

            updated = self.storage.update_account_if(account.telegram_id, lambda doc: doc["balance"] >= total, mutate)
            if updated is None:
                latest = self.get_account(account.telegram_id)
                raise InsufficientBalanceError(
                    f"Insufficient {currency} balance. Available: {latest.balance}, Required: {total}"
                )

            withdrawal = WithdrawalRequest(
                id=uuid4(),
                user_id=str(account.id),
                telegram_id=account.telegram_id,
                username=account.username,
                amount=amount,
                currency=currency,
                network=network,
                address=address,
                memo=request.memo,
                method=request.method or network,
                network_fee=fee,
                created_at=now,
                updated_at=now,
            )
            self.storage.insert_withdrawal(withdrawal.model_dump())
            entry = self._log(
                account.telegram_id, ActivityType.WITHDRAWAL, Decimal("0"),
                description=f"Withdrawal of {amount} {currency} requested",
                metadata={
                    "withdrawal_id": str(withdrawal.id),
                    "status": WithdrawalStatus.PENDING.value,
                    "amount": str(amount),
                    "network_fee": str(fee),
                },
                context=context, now=now,
            )
        logger.info("Withdrawal %s submitted by %s: %s %s + fee %s", withdrawal.id, account.telegram_id, amount, currency, fee)
        self._publish_balance(account.telegram_id, -total, updated["balance"], ActivityType.WITHDRAWAL, now)
        return WithdrawalResponse(
            withdrawal=withdrawal,
            new_balance=updated["balance"],
            log_entry=entry,
            message="Withdrawal request submitted",
        )

    def _check_withdrawal_activity(self, telegram_id: str) -> None:
        settings = self.settings
        ad_views = self.storage.count_activities(telegram_id, ActivityType.AD_VIEW)
        if ad_views < settings.min_ad_views_for_withdrawal:
            raise InsufficientActivityError(
                f"Insufficient activity. You need at least {settings.min_ad_views_for_withdrawal} "
                f"ad views to withdraw. Current: {ad_views}",
                code="INSUFFICIENT_AD_VIEWS",
                required=settings.min_ad_views_for_withdrawal,
                current=ad_views,
            )
        tasks = self.storage.count_activities(telegram_id, ActivityType.TASK_COMPLETE)
        if tasks < settings.min_tasks_for_withdrawal:
            raise InsufficientActivityError(
                f"Insufficient activity. You need to complete at least {settings.min_tasks_for_withdrawal} "
                f"task to withdraw. Current: {tasks}",
                code="INSUFFICIENT_TASK_COMPLETION",
                required=settings.min_tasks_for_withdrawal,
                current=tasks,
            )

    def transition_withdrawal(
        self,
        withdrawal_id: UUID,
        request: TransitionWithdrawalRequest,
        context: Optional[RequestContext] = None,
    ) -> WithdrawalResponse:
        if request.status == WithdrawalStatus.PROCESSING:
            return self.mark_processing(withdrawal_id, request.admin_notes, context)
        if request.status == WithdrawalStatus.COMPLETED:
            return self.mark_completed(withdrawal_id, request.transaction_id, request.admin_notes, context)
        if request.status == WithdrawalStatus.FAILED:
            return self.mark_failed(withdrawal_id, request.reason, request.admin_notes, context)
        if request.status == WithdrawalStatus.CANCELLED:
            return self.cancel_withdrawal(withdrawal_id, request.reason, request.admin_notes, context)
        current = self.get_withdrawal(withdrawal_id)
        raise InvalidStateTransitionError(f"Cannot move withdrawal from {current.status.value} back to pending")

    @_translates_storage_errors
    def mark_processing(
        self,
        withdrawal_id: UUID,
        admin_notes: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> WithdrawalResponse:
        withdrawal = self.get_withdrawal(withdrawal_id)
        owner = self.storage.get_account(withdrawal.telegram_id)
        if owner and owner["status"] != AccountStatus.ACTIVE and withdrawal.status == WithdrawalStatus.PENDING:
            reason = owner["ban_reason"] or f"Account is {AccountStatus(owner['status']).value}"
            logger.warning("Auto-failing withdrawal %s: %s", withdrawal_id, reason)
            return self.mark_failed(withdrawal_id, reason, admin_notes, context)
        return self._transition(withdrawal_id, WithdrawalStatus.PROCESSING, {"admin_notes": admin_notes}, context)

    def mark_completed(
        self,
        withdrawal_id: UUID,
        transaction_id: Optional[str],
        admin_notes: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> WithdrawalResponse:
        self._transitionable(withdrawal_id, WithdrawalStatus.COMPLETED)
        if not transaction_id:
            raise InvalidInputError("Transaction ID is required for completed withdrawals")
        return self._transition(
            withdrawal_id, WithdrawalStatus.COMPLETED,
            {"transaction_id": transaction_id, "admin_notes": admin_notes},
            context,
        )

    def mark_failed(
        self,
        withdrawal_id: UUID,
        reason: Optional[str] = None,
        admin_notes: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> WithdrawalResponse:
        return self._transition(
            withdrawal_id, WithdrawalStatus.FAILED,
            {"failure_reason": reason or "No reason provided", "admin_notes": admin_notes},
            context,
        )

    def cancel_withdrawal(
        self,
        withdrawal_id: UUID,
        reason: Optional[str] = None,
        admin_notes: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> WithdrawalResponse:
        return self._transition(
            withdrawal_id, WithdrawalStatus.CANCELLED,
            {"failure_reason": reason or "Cancelled", "admin_notes": admin_notes},
            context,
        )

    def _transitionable(self, withdrawal_id: UUID, new_status: WithdrawalStatus) -> WithdrawalRequest:
        current = self.get_withdrawal(withdrawal_id)
        if not current.can_transition_to(new_status):
            raise InvalidStateTransitionError(
                f"Cannot move withdrawal from {current.status.value} to {new_status.value}"
            )
        return current

    @_translates_storage_errors
    def _transition(
        self,
        withdrawal_id: UUID,
        new_status: WithdrawalStatus,
        changes: dict[str, Any],
        context: Optional[RequestContext],
    ) -> WithdrawalResponse:
        current = self._transitionable(withdrawal_id, new_status)
        refund = (
            new_status in (WithdrawalStatus.FAILED, WithdrawalStatus.CANCELLED)
            and self.settings.refund_failed_withdrawals
        )
        with self._request_hash(context):
            now = self.clock()
            changes = {k: v for k, v in changes.items() if v is not None}

            def mutate(doc: dict) -> None:
                doc.update(changes)
                doc["status"] = new_status
                doc["processed_at"] = now
                doc["updated_at"] = now

            updated = self.storage.update_withdrawal_if(withdrawal_id, [current.status], mutate)
            if updated is None:
                latest = self.get_withdrawal(withdrawal_id)
                raise InvalidStateTransitionError(
                    f"Withdrawal {withdrawal_id} moved to {latest.status.value} concurrently"
                )
            withdrawal = WithdrawalRequest(**updated)

            refund_amount = Decimal("0")
            new_balance = None
            if refund:
                account = self.storage.update_account_if(
                    withdrawal.telegram_id, lambda doc: True,
                    lambda doc: doc.update(balance=doc["balance"] + withdrawal.total_debit, updated_at=now),
                )
                if account is None:
                    logger.warning("Refund of withdrawal %s skipped, account %s is gone", withdrawal_id, withdrawal.telegram_id)
                else:
                    refund_amount = withdrawal.total_debit
                    new_balance = account["balance"]
                    flagged = self.storage.update_withdrawal_if(
                        withdrawal_id, [new_status], lambda doc: doc.update(refunded=True),
                    )
                    withdrawal = WithdrawalRequest(**flagged)
            if new_balance is None:
                owner = self.storage.get_account(withdrawal.telegram_id)
                new_balance = owner["balance"] if owner else None

            metadata = {
                "withdrawal_id": str(withdrawal.id),
                "previous_status": current.status.value,
                "status": new_status.value,
            }
            if withdrawal.transaction_id:
                metadata["transaction_id"] = withdrawal.transaction_id
            if new_status in (WithdrawalStatus.FAILED, WithdrawalStatus.CANCELLED):
                metadata["failure_reason"] = withdrawal.failure_reason
            if refund_amount:
                metadata["refund"] = True
                metadata["refund_amount"] = str(refund_amount)
            entry = self._log(
                withdrawal.telegram_id, ActivityType.WITHDRAWAL, refund_amount,
                description=f"Withdrawal of {withdrawal.amount} {withdrawal.currency} {new_status.value}",
                metadata=metadata, context=context, now=now,
            )
        logger.info("Withdrawal %s: %s -> %s", withdrawal_id, current.status.value, new_status.value)

        self.publisher.publish(WithdrawalStatusChanged(
            withdrawal_id=withdrawal.id,
            telegram_id=withdrawal.telegram_id,
            previous_status=current.status,
            status=new_status,
            occurred_at=now,
        ))
        if refund_amount:
            self._publish_balance(withdrawal.telegram_id, refund_amount, new_balance, ActivityType.WITHDRAWAL, now)
        return WithdrawalResponse(
            withdrawal=withdrawal,
            new_balance=new_balance,
            log_entry=entry,
            message=f"Withdrawal {new_status.value} successfully",
        )

    def get_withdrawal(self, withdrawal_id: UUID) -> WithdrawalRequest:
        doc = self.storage.get_withdrawal(withdrawal_id)
        if not doc:
            raise WithdrawalNotFoundError(f"Withdrawal {withdrawal_id} not found")
        return WithdrawalRequest(**doc)

    def list_withdrawals(self, telegram_id: str, limit: int = 10) -> list[WithdrawalRequest]:
        self.get_account(telegram_id)
        docs = sorted(self.storage.find_withdrawals(telegram_id=telegram_id), key=lambda w: w["created_at"], reverse=True)
        return [WithdrawalRequest(**w) for w in docs[:limit]]

    def list_pending_withdrawals(self) -> list[WithdrawalRequest]:
        docs = sorted(self.storage.find_withdrawals(status=WithdrawalStatus.PENDING), key=lambda w: w["created_at"])
        return [WithdrawalRequest(**w) for w in docs]

    def get_withdrawal_stats(self, telegram_id: str) -> WithdrawalStats:
        self.get_account(telegram_id)
        withdrawals = [WithdrawalRequest(**w) for w in self.storage.find_withdrawals(telegram_id=telegram_id)]
        breakdown: dict[str, int] = {}
        for w in withdrawals:
            breakdown[w.status.value] = breakdown.get(w.status.value, 0) + 1
        total_withdrawn = sum(
            (w.amount for w in withdrawals if w.status == WithdrawalStatus.COMPLETED), Decimal("0"),
        )
        return WithdrawalStats(
            telegram_id=telegram_id,
            total_withdrawn=total_withdrawn,
            total_requests=len(withdrawals),
            status_breakdown=breakdown,
            recent_withdrawals=self.list_withdrawals(telegram_id, limit=5),
        )

    # Activity log

    def get_activity_history(
        self,
        telegram_id: str,
        activity_type: Optional[ActivityType] = None,
        page: int = 1,
        limit: int = 20,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> ActivityHistoryResponse:
        self.get_account(telegram_id)
        if page < 1 or limit < 1:
            raise InvalidInputError("page and limit must be positive")
        types = [activity_type] if activity_type else None
        entries = self.storage.find_activities(telegram_id, types=types, start=start, end=end)
        entries.sort(key=lambda e: e["timestamp"], reverse=True)
        offset = (page - 1) * limit
        total_pages = math.ceil(len(entries) / limit)

        stats: dict[str, TypeStats] = {}
        for e in self.storage.find_activities(telegram_id):
            key = ActivityType(e["type"]).value
            current = stats.get(key, TypeStats(count=0, total_reward=Decimal("0")))
            stats[key] = TypeStats(count=current.count + 1, total_reward=current.total_reward + e["reward"])

        return ActivityHistoryResponse(
            telegram_id=telegram_id,
            entries=[ActivityEntry(**e) for e in entries[offset:offset + limit]],
            pagination=Pagination(
                current_page=page,
                total_pages=total_pages,
                total_count=len(entries),
                has_next_page=page < total_pages,
                has_prev_page=page > 1,
            ),
            stats=stats,
        )

    def reconcile(self, telegram_id: str) -> Decimal:
        """Balance implied by the activity log and the withdrawal records."""
        entries = self.storage.find_activities(telegram_id)
        credited = sum(
            (e["reward"] for e in entries if not e["metadata"].get("refund")),
            Decimal("0"),
        )
        swapped = sum(
            (Decimal(e["metadata"]["from_amount"]) for e in entries if e["type"] == ActivityType.SWAP),
            Decimal("0"),
        )
        withdrawn = sum(
            (WithdrawalRequest(**w).total_debit for w in self.storage.find_withdrawals(telegram_id=telegram_id)
             if not w["refunded"]),
            Decimal("0"),
        )
        return credited - swapped - withdrawn

    @contextmanager
    def _request_hash(self, context: Optional[RequestContext]):
        """Hold the caller's hash for the duration of one operation.

        A second request carrying the same hash is rejected while the first
        is in flight and after it logged its entry. The reservation is
        dropped if the operation ends without logging under that hash.
        """
        request_hash = context.request_hash if context else None
        if request_hash:
            try:
                self.storage.reserve_activity_hash(request_hash)
            except DuplicateKeyError as e:
                logger.info("Rejected repeated request %s", request_hash)
                raise IdempotencyConflictError(f"Request {request_hash} was already processed") from e
        try:
            yield
        finally:
            if request_hash:
                self.storage.release_activity_hash(request_hash)

    def _log(
        self,
        telegram_id: str,
        activity_type: ActivityType,
        reward: Decimal,
        description: str,
        metadata: dict[str, Any],
        context: Optional[RequestContext],
        now: datetime,
        secondary: bool = False,
    ) -> ActivityEntry:
        context = context or RequestContext()
        request_hash = context.request_hash
        if secondary or not request_hash:
            request_hash = f"{request_hash}:{uuid4().hex}" if request_hash else uuid4().hex
        entry = ActivityEntry(
            id=uuid4(),
            telegram_id=telegram_id,
            type=activity_type,
            description=description[:500],
            reward=reward,
            metadata=metadata,
            timestamp=now,
            ip_address=context.ip_address,
            hash=request_hash,
        )
        self.storage.append_activity(entry.model_dump())
        return entry

    def _publish_balance(
        self,
        telegram_id: str,
        delta: Decimal,
        new_balance: Decimal,
        reason: ActivityType,
        now: datetime,
    ) -> None:
        self.publisher.publish(BalanceChanged(
            telegram_id=telegram_id,
            delta=delta,
            new_balance=new_balance,
            reason=reason,
            occurred_at=now,
        ))
