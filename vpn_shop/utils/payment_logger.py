"""Отдельный файл логов для платежей.

Записи модулей пополнений, Platega и кредитования дублируются в
payments.log, чтобы разбирать спорные оплаты без общего шума.
"""

import logging
from typing import Iterable, Optional

PAYMENT_LOGGER_PREFIXES = (
    "vpn_shop.services.payment_service",
    "vpn_shop.services.platega_service",
    "vpn_shop.services.credit_service",
    "vpn_shop.services.referral_service",
    "vpn_shop.database.crud.topup",
    "vpn_shop.webserver.payments",
)


class PaymentLogFilter(logging.Filter):

    def __init__(self, prefixes: Iterable[str] = PAYMENT_LOGGER_PREFIXES):
        super().__init__()
        self.prefixes = tuple(prefixes)

    def filter(self, record: logging.LogRecord) -> bool:
        return record.name.startswith(self.prefixes)


def configure_payment_logger(
    handler: logging.Handler,
    formatter: Optional[logging.Formatter] = None,
    level: int = logging.INFO,
) -> logging.Handler:
    """Вешает handler на корневой логгер, пропуская только платёжные записи."""

    handler.setLevel(level)
    handler.addFilter(PaymentLogFilter())
    if formatter:
        handler.setFormatter(formatter)
    logging.getLogger().addHandler(handler)
    return handler
