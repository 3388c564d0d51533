import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, DefaultDict, List, Optional, Type

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DomainEvent:
    pass


@dataclass(frozen=True)
class TopUpCredited(DomainEvent):
    topup_id: int
    user_id: int
    amount_kopeks: int


@dataclass(frozen=True)
class TopUpFailed(DomainEvent):
    topup_id: int
    user_id: int
    amount_kopeks: int


@dataclass(frozen=True)
class TopUpTimedOut(DomainEvent):
    topup_id: int
    user_id: int
    amount_kopeks: int


@dataclass(frozen=True)
class ReferralBonusCredited(DomainEvent):
    code_owner_id: int
    activator_id: int
    topup_id: int
    bonus_amount_kopeks: int


@dataclass(frozen=True)
class RenewalDue(DomainEvent):
    subscription_id: int
    user_id: int
    subscription_type: str
    days_left: int
    end_date: Optional[datetime] = None


@dataclass(frozen=True)
class SubscriptionExpired(DomainEvent):
    subscription_id: int
    user_id: int
    subscription_type: str
    end_date: Optional[datetime] = None


EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventBus:
    """Внутрипроцессная доставка доменных событий подписчикам.

    Обработчики вызываются последовательно в порядке подписки; исключение
    одного обработчика логируется и не мешает остальным.
    """

    def __init__(self):
        self._handlers: DefaultDict[Type[DomainEvent], List[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: Type[DomainEvent], handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: Type[DomainEvent], handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)

    async def publish(self, event: DomainEvent) -> None:
        handlers = list(self._handlers.get(type(event), ()))
        if not handlers:
            logger.debug("Нет подписчиков на %s", type(event).__name__)
            return

        for handler in handlers:
            try:
                await handler(event)
            except Exception as error:
                logger.error(
                    "❌ Ошибка обработчика %s для события %s: %s",
                    getattr(handler, "__qualname__", handler),
                    event,
                    error,
                    exc_info=True,
                )
