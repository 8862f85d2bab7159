from decimal import Decimal
from functools import lru_cache
from typing import Optional

import pytz
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    env: str = "production"
    log_level: str = "INFO"
    reference_timezone: str = "UTC"
    api_root_path: str = ""
    cors_origins: list[str] = ["*"]

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_app_settings() -> AppSettings:
    return AppSettings()


class RewardSettings(BaseModel):
    """Configuration snapshot handed to the ledger.

    Built once at startup and replaced as a whole through
    ``LedgerService.update_settings``; operations never read global state.
    """

    reference_timezone: str = "UTC"

    spin_rewards: list[Decimal] = Field(
        default_factory=lambda: [Decimal(v) for v in (50, 100, 200, 500, 1000)]
    )

    default_ads_reward: Decimal = Field(default=Decimal("50"), ge=1, le=1000)
    ads_reward_multiplier: Decimal = Field(default=Decimal("1.0"), ge=Decimal("0.1"), le=10)
    ads_watch_limit: int = Field(default=10, ge=1, le=100)
    min_watch_time: int = Field(default=30, ge=0, description="Seconds between two ad views")
    referral_commission_rate: Decimal = Field(default=Decimal("0.10"), ge=0, le=1)

    daily_task_limit: int = Field(default=100, ge=1)
    check_in_base_reward: Decimal = Decimal("100")
    check_in_daily_step: Decimal = Decimal("10")
    check_in_cycle_days: int = Field(default=30, ge=1)

    new_user_bonus: Decimal = Field(default=Decimal("250"), ge=0)
    referral_bonus: Decimal = Field(default=Decimal("0"), ge=0)
    allow_user_registration: bool = True

    supported_networks: list[str] = Field(
        default_factory=lambda: ["eth-main", "sepolia", "bsc-mainnet", "bsc-testnet"]
    )
    min_withdrawals: dict[str, Decimal] = Field(
        default_factory=lambda: {"USDT": Decimal("0.1"), "PEPE": Decimal("1")}
    )
    network_fees: dict[str, Decimal] = Field(
        default_factory=lambda: {"USDT": Decimal("0.03"), "PEPE": Decimal("1")}
    )
    min_ad_views_for_withdrawal: int = Field(default=10, ge=0)
    min_tasks_for_withdrawal: int = Field(default=1, ge=0)
    refund_failed_withdrawals: bool = True

    min_swap_amount: Decimal = Field(default=Decimal("1000"), ge=0)

    @field_validator("reference_timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        if value not in pytz.all_timezones_set:
            raise ValueError(f"Unknown timezone: {value}")
        return value

    @field_validator("min_withdrawals", "network_fees")
    @classmethod
    def _upper_currency_keys(cls, value: dict[str, Decimal]) -> dict[str, Decimal]:
        return {k.upper(): v for k, v in value.items()}

    @property
    def timezone(self):
        return pytz.timezone(self.reference_timezone)

    @property
    def supported_currencies(self) -> set[str]:
        return set(self.min_withdrawals) | set(self.network_fees)

    def fee_for(self, currency: str) -> Decimal:
        return self.network_fees.get(currency.upper(), Decimal("0"))

    def minimum_for(self, currency: str) -> Optional[Decimal]:
        return self.min_withdrawals.get(currency.upper())

    @classmethod
    def from_app_settings(cls, app_settings: AppSettings, **overrides) -> "RewardSettings":
        return cls(reference_timezone=app_settings.reference_timezone, **overrides)
