import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Plan:
    key: str
    label: str
    price_kopeks: int
    months: int


_PLAN_MONTHS: Dict[str, int] = {
    "M1": 1,
    "M3": 3,
    "M6": 6,
    "M12": 12,
}


class Settings(BaseSettings):

    BOT_TOKEN: str
    BOT_USERNAME: Optional[str] = None
    ADMIN_IDS: str = ""
    SUPPORT_USERNAME: str = "@support"

    ADMIN_NOTIFICATIONS_ENABLED: bool = False
    ADMIN_NOTIFICATIONS_CHAT_ID: Optional[str] = None
    ADMIN_NOTIFICATIONS_TOPIC_ID: Optional[int] = None

    DATABASE_URL: Optional[str] = None

    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "vpn_shop"
    POSTGRES_USER: str = "vpn_shop"
    POSTGRES_PASSWORD: str = "secure_password_123"

    SQLITE_PATH: str = "./data/bot.db"
    SQLITE_BUSY_TIMEOUT_MS: int = 5000

    DATABASE_MODE: str = "auto"

    REDIS_URL: str = "redis://localhost:6379/0"

    # Тарифы, цены в копейках
    PLAN_M1_PRICE: int = 10000
    PLAN_M3_PRICE: int = 27000
    PLAN_M6_PRICE: int = 52000
    PLAN_M12_PRICE: int = 100000

    TOPUP_AMOUNTS: str = "10000,27000,52000,100000"
    TOPUP_MIN_AMOUNT_KOPEKS: int = 100
    TOPUP_MAX_AMOUNT_KOPEKS: int = 10000000
    TOPUP_PENDING_TIMEOUT_SECONDS: int = 180
    TOPUP_CLEANER_INTERVAL_SECONDS: int = 60

    PLATEGA_ENABLED: bool = False
    PLATEGA_MERCHANT_ID: Optional[str] = None
    PLATEGA_SECRET: Optional[str] = None
    PLATEGA_BASE_URL: str = "https://app.platega.io"
    PLATEGA_PAYMENT_METHOD: int = 2
    PLATEGA_RETURN_URL: Optional[str] = None
    PLATEGA_FAILED_URL: Optional[str] = None
    PLATEGA_CURRENCY: str = "RUB"
    PLATEGA_WEBHOOK_PATH: str = "/payment/postback"

    PAYMENT_CALLBACK_URL: Optional[str] = None

    PANEL_1_API_URL: Optional[str] = None
    PANEL_1_TOKEN: Optional[str] = None
    PANEL_2_API_URL: Optional[str] = None
    PANEL_2_TOKEN: Optional[str] = None
    PANEL_2_PUBLIC_SUB_BASE: Optional[str] = None
    PANEL_VLESS_FLOW: str = "xtls-rprx-vision"
    PANEL_INBOUNDS: str = "VLESS TCP REALITY"
    PANEL_REQUEST_TIMEOUT: int = 15

    REFERRAL_BONUS_PERCENT: int = 20
    REFERRAL_TRIAL_DAYS: int = 3

    EXPIRY_CHECK_INTERVAL_SECONDS: int = 3600
    EXPIRED_REMINDER_INTERVAL_DAYS: int = 3

    WEB_HOST: str = "0.0.0.0"
    WEB_PORT: int = 8080
    ADMIN_API_TOKEN: Optional[str] = None

    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "logs/bot.log"
    PAYMENT_LOG_FILE: str = "logs/payments.log"

    DEBUG: bool = False

    @field_validator('LOG_FILE', 'PAYMENT_LOG_FILE', mode='before')
    @classmethod
    def ensure_log_dir(cls, v):
        log_path = Path(v)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        return str(log_path)

    @field_validator('REFERRAL_BONUS_PERCENT')
    @classmethod
    def validate_referral_percent(cls, v: int) -> int:
        if v < 0 or v > 100:
            raise ValueError("REFERRAL_BONUS_PERCENT должен быть в диапазоне 0..100")
        return v

    def get_database_url(self) -> str:
        if self.DATABASE_URL and self.DATABASE_URL.strip():
            return self.DATABASE_URL

        mode = self.DATABASE_MODE.lower()

        if mode == "sqlite":
            return self._get_sqlite_url()
        elif mode == "postgresql":
            return self._get_postgresql_url()
        if os.getenv("DOCKER_ENV") == "true" or os.path.exists("/.dockerenv"):
            return self._get_postgresql_url()
        return self._get_sqlite_url()

    def _get_sqlite_url(self) -> str:
        sqlite_path = Path(self.SQLITE_PATH)
        sqlite_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite+aiosqlite:///{sqlite_path.absolute()}"

    def _get_postgresql_url(self) -> str:
        return (f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
                f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}")

    def is_sqlite(self) -> bool:
        """Проверяет, используется ли SQLite"""
        return "sqlite" in self.get_database_url()

    def is_admin(self, user_id: int) -> bool:
        return user_id in self.get_admin_ids()

    def get_admin_ids(self) -> List[int]:
        if not self.ADMIN_IDS or not self.ADMIN_IDS.strip():
            return []
        try:
            return [int(x.strip()) for x in self.ADMIN_IDS.split(',') if x.strip()]
        except ValueError:
            logger.warning("Некорректное значение ADMIN_IDS: %s", self.ADMIN_IDS)
            return []

    def get_admin_notifications_chat_id(self) -> Optional[int]:
        if not self.ADMIN_NOTIFICATIONS_CHAT_ID:
            return None
        try:
            return int(self.ADMIN_NOTIFICATIONS_CHAT_ID)
        except (ValueError, TypeError):
            logger.warning(
                "Некорректное значение ADMIN_NOTIFICATIONS_CHAT_ID: %s",
                self.ADMIN_NOTIFICATIONS_CHAT_ID,
            )
            return None

    def is_admin_notifications_enabled(self) -> bool:
        return self.ADMIN_NOTIFICATIONS_ENABLED and self.get_admin_notifications_chat_id() is not None

    def get_plans(self) -> List[Plan]:
        return [
            Plan(
                key=key,
                label=f"{months} мес.",
                price_kopeks=getattr(self, f"PLAN_{key}_PRICE"),
                months=months,
            )
            for key, months in _PLAN_MONTHS.items()
        ]

    def get_plan(self, plan_key: Optional[str]) -> Optional[Plan]:
        for plan in self.get_plans():
            if plan.key == plan_key:
                return plan
        return None

    def get_topup_amounts(self) -> List[int]:
        amounts = []
        for raw in (self.TOPUP_AMOUNTS or "").split(","):
            raw = raw.strip()
            if not raw:
                continue
            try:
                amount = int(raw)
            except ValueError:
                logger.warning("Некорректная сумма в TOPUP_AMOUNTS: %s", raw)
                continue
            if amount > 0:
                amounts.append(amount)
        return amounts

    def is_platega_enabled(self) -> bool:
        return (
            self.PLATEGA_ENABLED
            and self.PLATEGA_MERCHANT_ID is not None
            and self.PLATEGA_SECRET is not None
        )

    def get_platega_return_url(self) -> Optional[str]:
        if self.PLATEGA_RETURN_URL:
            return self.PLATEGA_RETURN_URL
        if self.PAYMENT_CALLBACK_URL:
            return f"{self.PAYMENT_CALLBACK_URL.rstrip('/')}/payment-success"
        return None

    def get_platega_failed_url(self) -> Optional[str]:
        if self.PLATEGA_FAILED_URL:
            return self.PLATEGA_FAILED_URL
        if self.PAYMENT_CALLBACK_URL:
            return f"{self.PAYMENT_CALLBACK_URL.rstrip('/')}/payment-failed"
        return None

    def get_manual_payment_url(self, order_id: str) -> str:
        base = (self.PAYMENT_CALLBACK_URL or "http://localhost").rstrip("/")
        return f"{base}/payment/manual/{order_id}"

    def get_panel_2_token(self) -> Optional[str]:
        return self.PANEL_2_TOKEN or self.PANEL_1_TOKEN

    def get_panel_inbounds(self) -> List[str]:
        return [item.strip() for item in self.PANEL_INBOUNDS.split(",") if item.strip()]

    def format_price(self, price_kopeks: int) -> str:
        sign = "-" if price_kopeks < 0 else ""
        rubles, kopeks = divmod(abs(price_kopeks), 100)

        if kopeks:
            value = f"{sign}{rubles}.{kopeks:02d}".rstrip("0").rstrip(".")
            return f"{value} ₽"

        return f"{sign}{rubles} ₽"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


settings = Settings()
