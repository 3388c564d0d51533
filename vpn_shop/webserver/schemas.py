from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from vpn_shop.database.models import AdminPromoType


class TopUpSchema(BaseModel):
    id: int
    user_id: int
    amount_kopeks: int
    status: str
    order_id: str
    bill_id: Optional[str] = None
    payment_url: Optional[str] = None
    credited: bool
    credited_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class TopUpActionResponse(BaseModel):
    topup_id: int
    status: str
    changed: bool


class TopUpDeleteResponse(BaseModel):
    topup_id: int
    removed_bonuses: int


class PromoCreateRequest(BaseModel):
    type: AdminPromoType
    amount_kopeks: int = Field(default=0, ge=0)
    days: int = Field(default=0, ge=0)
    is_reusable: bool = False
    code: Optional[str] = Field(default=None, max_length=32)
    custom_name: Optional[str] = Field(default=None, max_length=255)

    @model_validator(mode="after")
    def check_value(self) -> "PromoCreateRequest":
        if self.type == AdminPromoType.BALANCE and self.amount_kopeks <= 0:
            raise ValueError("amount_kopeks must be positive for balance promo")
        if self.type == AdminPromoType.DAYS and self.days <= 0:
            raise ValueError("days must be positive for days promo")
        return self


class PromoSchema(BaseModel):
    id: int
    code: str
    type: str
    amount_kopeks: int
    days: int
    is_reusable: bool
    use_count: int
    custom_name: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ReferralStatsSchema(BaseModel):
    user_id: int
    activations: int
    bonuses_count: int
    total_bonus_kopeks: int
    total_referred_topups_kopeks: int
