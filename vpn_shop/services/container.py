from dataclasses import dataclass
from typing import Optional

from aiogram import Bot
from sqlalchemy.ext.asyncio import async_sessionmaker

from vpn_shop.services.admin_notification_service import AdminNotificationService
from vpn_shop.services.credit_service import CreditService
from vpn_shop.services.event_bus import EventBus
from vpn_shop.services.monitoring_service import MonitoringService
from vpn_shop.services.notification_service import NotificationService
from vpn_shop.services.payment_service import PaymentService
from vpn_shop.services.platega_service import PlategaService
from vpn_shop.services.promocode_service import PromoCodeService
from vpn_shop.services.provisioning_service import ProvisioningService
from vpn_shop.services.referral_service import ReferralBonusService
from vpn_shop.services.subscription_purchase_service import SubscriptionPurchaseService
from vpn_shop.services.user_service import UserService


@dataclass
class ServiceContainer:
    event_bus: EventBus
    users: UserService
    credit: CreditService
    purchases: SubscriptionPurchaseService
    payments: PaymentService
    referrals: ReferralBonusService
    promocodes: PromoCodeService
    monitoring: MonitoringService
    notifications: Optional[NotificationService] = None
    admin_notifications: Optional[AdminNotificationService] = None


def build_services(
    bot: Optional[Bot] = None,
    session_factory: Optional[async_sessionmaker] = None,
    provisioning: Optional[ProvisioningService] = None,
    platega_service: Optional[PlategaService] = None,
) -> ServiceContainer:
    event_bus = EventBus()

    credit = CreditService(event_bus, session_factory=session_factory)
    purchases = SubscriptionPurchaseService(
        provisioning=provisioning,
        session_factory=session_factory,
    )
    referrals = ReferralBonusService(event_bus, session_factory=session_factory)
    referrals.register()

    notifications = None
    admin_notifications = None
    if bot is not None:
        notifications = NotificationService(bot, event_bus, session_factory=session_factory)
        notifications.register()
        admin_notifications = AdminNotificationService(bot, event_bus, session_factory=session_factory)
        admin_notifications.register()

    return ServiceContainer(
        event_bus=event_bus,
        users=UserService(session_factory=session_factory),
        credit=credit,
        purchases=purchases,
        payments=PaymentService(
            credit,
            platega_service=platega_service,
            session_factory=session_factory,
        ),
        referrals=referrals,
        promocodes=PromoCodeService(purchases, session_factory=session_factory),
        monitoring=MonitoringService(credit, event_bus, session_factory=session_factory),
        notifications=notifications,
        admin_notifications=admin_notifications,
    )
