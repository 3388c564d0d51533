import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from vpn_shop.config import settings
from vpn_shop.external.panel_api import (
    PanelAPI,
    PanelAPIError,
    PanelAccountExists,
    PanelAccountNotFound,
)
from vpn_shop.utils.dates import from_epoch_seconds, period_days

logger = logging.getLogger(__name__)

_SUB_TOKEN_RE = re.compile(r"/sub/(.+)$")


def build_account_name(telegram_id: int, subscription_type: str, subscription_id: int) -> str:
    return f"{telegram_id}_{subscription_type}_{subscription_id}"


def rewrite_panel_url(url: Optional[str], public_base: Optional[str]) -> Optional[str]:
    """Переносит токен подписки второй панели на публичный адрес.

    ``https://panel2:8000/sub/abc`` + ``https://vpn.example:8888`` →
    ``https://vpn.example:8888/sub/abc``. Без токена или базы URL не меняется.
    """

    if not url or not public_base:
        return url

    match = _SUB_TOKEN_RE.search(url)
    if not match:
        return url

    return f"{public_base.rstrip('/')}/sub/{match.group(1)}"


@dataclass(slots=True)
class AccountSpec:
    account_name: str
    expire_at: datetime
    note: Optional[str] = None


@dataclass(slots=True)
class ProvisioningResult:
    subscription_url: Optional[str] = None
    subscription_url_2: Optional[str] = None

    @property
    def has_any_url(self) -> bool:
        return bool(self.subscription_url or self.subscription_url_2)

    @property
    def is_complete(self) -> bool:
        return bool(self.subscription_url and self.subscription_url_2)


@dataclass(slots=True)
class ExtensionResult:
    # None: панель не настроена и пропущена
    panel_1: Optional[bool] = None
    panel_2: Optional[bool] = None

    @property
    def any_failed(self) -> bool:
        return self.panel_1 is False or self.panel_2 is False


PanelFactory = Callable[[str, str, Optional[str]], PanelAPI]


def _default_panel_factory(name: str, base_url: str, token: Optional[str]) -> PanelAPI:
    return PanelAPI(name, base_url, token, timeout=settings.PANEL_REQUEST_TIMEOUT)


class ProvisioningService:
    """Создание и продление VPN-аккаунтов на двух независимых панелях."""

    def __init__(self, panel_factory: Optional[PanelFactory] = None):
        self._panel_factory = panel_factory or _default_panel_factory

    def _panel_configs(self) -> List[Tuple[str, Optional[str], Optional[str]]]:
        return [
            ("panel-1", settings.PANEL_1_API_URL, settings.PANEL_1_TOKEN),
            ("panel-2", settings.PANEL_2_API_URL, settings.get_panel_2_token()),
        ]

    async def _create_on_panel(
        self,
        name: str,
        base_url: Optional[str],
        token: Optional[str],
        spec: AccountSpec,
    ) -> Optional[str]:
        if not base_url:
            logger.info("⏭ %s не настроена, пропускаем создание %s", name, spec.account_name)
            return None

        async with self._panel_factory(name, base_url, token) as panel:
            try:
                user = await panel.create_user(
                    username=spec.account_name,
                    expire_at=spec.expire_at,
                    inbounds=settings.get_panel_inbounds(),
                    vless_flow=settings.PANEL_VLESS_FLOW,
                    note=spec.note,
                )
            except PanelAccountExists:
                logger.info("♻️ %s: аккаунт %s уже существует, берём его ссылку", name, spec.account_name)
                user = await panel.get_user(spec.account_name)
                if user is None:
                    raise PanelAPIError(f"{spec.account_name} exists but cannot be fetched")

        if not user.subscription_url:
            logger.warning("⚠️ %s не вернула ссылку подписки для %s", name, spec.account_name)
        return user.subscription_url

    async def _extend_on_panel(
        self,
        name: str,
        base_url: Optional[str],
        token: Optional[str],
        account_name: str,
        duration_days: int,
        target_end: Optional[datetime] = None,
    ) -> Optional[bool]:
        if not base_url:
            logger.info("⏭ %s не настроена, пропускаем продление %s", name, account_name)
            return None

        async with self._panel_factory(name, base_url, token) as panel:
            days = duration_days
            if target_end is not None:
                days = await self._days_until_target(panel, name, account_name, duration_days, target_end)
            await panel.extend_user(account_name, days)
        return True

    @staticmethod
    async def _days_until_target(
        panel: PanelAPI,
        name: str,
        account_name: str,
        duration_days: int,
        target_end: datetime,
    ) -> int:
        """Панель прибавляет дни к своему сроку; истёкший срок догоняем до target_end."""

        user = await panel.get_user(account_name)
        if user is None or not user.expire:
            return duration_days

        panel_expire = from_epoch_seconds(user.expire)
        if panel_expire >= datetime.utcnow():
            return duration_days

        days = max(duration_days, period_days(panel_expire, target_end))
        logger.info(
            "⏳ %s: аккаунт %s истёк %s, продлеваем на %s дн.",
            name,
            account_name,
            panel_expire,
            days,
        )
        return days

    async def create_on_both_panels(self, spec: AccountSpec) -> ProvisioningResult:
        (name_1, url_1, token_1), (name_2, url_2, token_2) = self._panel_configs()

        outcomes = await asyncio.gather(
            self._create_on_panel(name_1, url_1, token_1, spec),
            self._create_on_panel(name_2, url_2, token_2, spec),
            return_exceptions=True,
        )

        urls: List[Optional[str]] = []
        for name, outcome in zip((name_1, name_2), outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "❌ Не удалось создать аккаунт %s на %s: %s",
                    spec.account_name,
                    name,
                    outcome,
                )
                urls.append(None)
            else:
                urls.append(outcome)

        result = ProvisioningResult(
            subscription_url=urls[0],
            subscription_url_2=rewrite_panel_url(urls[1], settings.PANEL_2_PUBLIC_SUB_BASE),
        )
        logger.info(
            "🔗 Аккаунт %s: панель 1 %s, панель 2 %s",
            spec.account_name,
            "✅" if result.subscription_url else "❌",
            "✅" if result.subscription_url_2 else "❌",
        )
        return result

    async def extend_on_both_panels(
        self,
        account_name: str,
        duration_days: int,
        target_end: Optional[datetime] = None,
    ) -> ExtensionResult:
        (name_1, url_1, token_1), (name_2, url_2, token_2) = self._panel_configs()

        outcomes = await asyncio.gather(
            self._extend_on_panel(name_1, url_1, token_1, account_name, duration_days, target_end),
            self._extend_on_panel(name_2, url_2, token_2, account_name, duration_days, target_end),
            return_exceptions=True,
        )

        flags: List[Optional[bool]] = []
        for name, outcome in zip((name_1, name_2), outcomes):
            if isinstance(outcome, PanelAccountNotFound):
                logger.error("❌ %s: аккаунт %s не найден, продление невозможно", name, account_name)
                flags.append(False)
            elif isinstance(outcome, BaseException):
                logger.error("❌ Не удалось продлить %s на %s: %s", account_name, name, outcome)
                flags.append(False)
            else:
                flags.append(outcome)

        return ExtensionResult(panel_1=flags[0], panel_2=flags[1])
