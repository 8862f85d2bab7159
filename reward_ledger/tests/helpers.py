from datetime import datetime, timedelta, timezone
from decimal import Decimal

from reward_ledger.models import ActivityType, CreateAccountRequest
from reward_ledger.service import LedgerService
from reward_ledger.settings import RewardSettings

START = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
VALID_ADDRESS = "0x52908400098527886E0F7030069857D2E4169EE7"


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_service(clock: FakeClock = None, storage=None, **overrides) -> LedgerService:
    settings = {
        "new_user_bonus": Decimal("0"),
        "min_ad_views_for_withdrawal": 0,
        "min_tasks_for_withdrawal": 0,
        "min_watch_time": 0,
    }
    settings.update(overrides)
    return LedgerService(storage=storage, settings=RewardSettings(**settings), clock=clock or FakeClock())


def make_account(service: LedgerService, telegram_id: str = "1001", balance=0, **kwargs):
    account = service.create_account(CreateAccountRequest(telegram_id=telegram_id, **kwargs))
    if balance:
        service.apply_reward(telegram_id, ActivityType.BONUS, Decimal(balance), {"source": "seed"})
    return account
