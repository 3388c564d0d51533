from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func


Base = declarative_base()


class TopUpStatus(Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"


class SubscriptionType(Enum):
    FREE = "FREE"
    M1 = "M1"
    M3 = "M3"
    M6 = "M6"
    M12 = "M12"
    PROMO = "PROMO"


class AdminPromoType(Enum):
    BALANCE = "BALANCE"
    DAYS = "DAYS"


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("balance_kopeks >= 0", name="ck_users_balance_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    telegram_id = Column(BigInteger, unique=True, index=True, nullable=False)
    chat_id = Column(BigInteger, nullable=True)
    account_name = Column(String(255), nullable=True)
    balance_kopeks = Column(Integer, nullable=False, default=0)
    promo_code = Column(String(32), unique=True, nullable=True, index=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    subscriptions = relationship("Subscription", back_populates="user")
    topups = relationship("TopUp", back_populates="user")

    @property
    def balance_rubles(self) -> float:
        return self.balance_kopeks / 100

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<User(id={self.id}, telegram_id={self.telegram_id}, balance={self.balance_kopeks})>"


class TopUp(Base):
    __tablename__ = "topups"
    __table_args__ = (
        CheckConstraint("amount_kopeks > 0", name="ck_topups_amount_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount_kopeks = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=TopUpStatus.PENDING.value, index=True)
    order_id = Column(String(64), unique=True, nullable=False, index=True)
    bill_id = Column(String(255), nullable=True, index=True)
    payment_url = Column(Text, nullable=True)
    credited = Column(Boolean, nullable=False, default=False)
    credited_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="topups")

    @property
    def is_fallback(self) -> bool:
        return bool(self.bill_id and self.bill_id.startswith("fallback-"))

    @property
    def amount_rubles(self) -> float:
        return self.amount_kopeks / 100

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return (
            f"<TopUp(id={self.id}, user_id={self.user_id}, amount={self.amount_kopeks}, "
            f"status={self.status}, credited={self.credited})>"
        )


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String(20), nullable=False)

    start_date = Column(DateTime, nullable=False, default=func.now())
    end_date = Column(DateTime, nullable=True)

    subscription_url = Column(Text, nullable=True)
    subscription_url_2 = Column(Text, nullable=True)

    notified_3_days = Column(Boolean, nullable=False, default=False)
    notified_1_day = Column(Boolean, nullable=False, default=False)
    last_expired_reminder_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="subscriptions")

    @property
    def is_free(self) -> bool:
        return self.type == SubscriptionType.FREE.value

    @property
    def is_active(self) -> bool:
        if self.end_date is None:
            return True
        return self.end_date > datetime.utcnow()

    @property
    def has_urls(self) -> bool:
        return bool(self.subscription_url or self.subscription_url_2)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, type={self.type}, "
            f"end_date={self.end_date})>"
        )


class PromoActivation(Base):
    """Активация реферального кода: один активатор привязан к одному владельцу."""

    __tablename__ = "promo_activations"

    id = Column(Integer, primary_key=True, index=True)
    code_owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    activator_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    created_at = Column(DateTime, default=func.now())


class ReferralBonus(Base):
    __tablename__ = "referral_bonuses"
    __table_args__ = (
        UniqueConstraint(
            "topup_id",
            "code_owner_id",
            "activator_id",
            name="uq_referral_bonus_topup_owner_activator",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    code_owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    activator_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    topup_id = Column(
        Integer,
        ForeignKey("topups.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    amount_kopeks = Column(Integer, nullable=False)
    bonus_amount_kopeks = Column(Integer, nullable=False)
    credited = Column(Boolean, nullable=False, default=False)
    credited_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=func.now())


class AdminPromo(Base):
    __tablename__ = "admin_promos"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(32), unique=True, nullable=False, index=True)
    type = Column(String(20), nullable=False)
    amount_kopeks = Column(Integer, nullable=False, default=0)
    days = Column(Integer, nullable=False, default=0)
    is_reusable = Column(Boolean, nullable=False, default=False)
    use_count = Column(Integer, nullable=False, default=0)
    used_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    used_at = Column(DateTime, nullable=True)
    custom_name = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=func.now())

    activations = relationship(
        "AdminPromoActivation",
        back_populates="promo",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_exhausted(self) -> bool:
        return not self.is_reusable and self.used_by_id is not None

    def describe(self) -> Optional[str]:
        if self.type == AdminPromoType.BALANCE.value:
            return f"{self.amount_kopeks / 100:g} ₽ на баланс"
        if self.type == AdminPromoType.DAYS.value:
            return f"{self.days} дн. подписки"
        return None


class AdminPromoActivation(Base):
    __tablename__ = "admin_promo_activations"
    __table_args__ = (
        UniqueConstraint("promo_id", "user_id", name="uq_admin_promo_activation"),
    )

    id = Column(Integer, primary_key=True, index=True)
    promo_id = Column(
        Integer,
        ForeignKey("admin_promos.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=func.now())

    promo = relationship("AdminPromo", back_populates="activations")
