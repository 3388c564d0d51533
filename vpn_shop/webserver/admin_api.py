from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

from vpn_shop.config import settings
from vpn_shop.services.container import ServiceContainer
from vpn_shop.services.credit_service import CreditStatus, TransitionStatus
from vpn_shop.webserver.schemas import (
    PromoCreateRequest,
    PromoSchema,
    ReferralStatsSchema,
    TopUpActionResponse,
    TopUpDeleteResponse,
    TopUpSchema,
)


logger = logging.getLogger(__name__)

api_key_header_scheme = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_api_token(
    request: Request,
    api_key_header: str | None = Security(api_key_header_scheme),
) -> str:
    api_key = api_key_header

    if not api_key:
        authorization = request.headers.get("Authorization")
        if authorization:
            scheme, _, credentials = authorization.partition(" ")
            if scheme.lower() == "bearer" and credentials:
                api_key = credentials

    expected = settings.ADMIN_API_TOKEN
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API is disabled",
        )

    if not api_key or not hmac.compare_digest(api_key.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )

    return api_key


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def create_admin_router() -> APIRouter:
    router = APIRouter(prefix="/admin", dependencies=[Depends(require_api_token)])

    @router.get("/topups/{topup_id}", response_model=TopUpSchema)
    async def get_topup(
        topup_id: int,
        services: ServiceContainer = Depends(get_services),
    ) -> TopUpSchema:
        topup = await services.payments.get_topup(topup_id)
        if not topup:
            raise HTTPException(status.HTTP_404_NOT_FOUND, "TopUp not found")
        return TopUpSchema.model_validate(topup)

    @router.post("/topups/{topup_id}/approve", response_model=TopUpActionResponse)
    async def approve_topup(
        topup_id: int,
        services: ServiceContainer = Depends(get_services),
    ) -> TopUpActionResponse:
        result = await services.credit.resolve_success(topup_id)
        if result.status == CreditStatus.NOT_FOUND:
            raise HTTPException(status.HTTP_404_NOT_FOUND, "TopUp not found")
        logger.info("👮 API: подтверждение пополнения #%s (%s)", topup_id, result.status.value)
        return TopUpActionResponse(
            topup_id=topup_id,
            status=result.status.value,
            changed=result.credited,
        )

    @router.post("/topups/{topup_id}/fail", response_model=TopUpActionResponse)
    async def fail_topup(
        topup_id: int,
        services: ServiceContainer = Depends(get_services),
    ) -> TopUpActionResponse:
        result = await services.credit.resolve_failure(topup_id)
        if result.status == TransitionStatus.NOT_FOUND:
            raise HTTPException(status.HTTP_404_NOT_FOUND, "TopUp not found")
        logger.info("👮 API: отклонение пополнения #%s (%s)", topup_id, result.status.value)
        return TopUpActionResponse(
            topup_id=topup_id,
            status=result.status.value,
            changed=result.changed,
        )

    @router.delete("/topups/{topup_id}", response_model=TopUpDeleteResponse)
    async def delete_topup(
        topup_id: int,
        services: ServiceContainer = Depends(get_services),
    ) -> TopUpDeleteResponse:
        removed = await services.credit.delete_topup(topup_id)
        if removed is None:
            raise HTTPException(status.HTTP_404_NOT_FOUND, "TopUp not found")
        return TopUpDeleteResponse(topup_id=topup_id, removed_bonuses=removed)

    @router.post("/promos", response_model=PromoSchema, status_code=status.HTTP_201_CREATED)
    async def create_promo(
        payload: PromoCreateRequest,
        services: ServiceContainer = Depends(get_services),
    ) -> PromoSchema:
        try:
            promo = await services.promocodes.create_admin_promo(
                payload.type,
                amount_kopeks=payload.amount_kopeks,
                days=payload.days,
                is_reusable=payload.is_reusable,
                code=payload.code,
                custom_name=payload.custom_name,
            )
        except ValueError as error:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, str(error)) from error
        return PromoSchema.model_validate(promo)

    @router.delete("/promos/{promo_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_promo(
        promo_id: int,
        services: ServiceContainer = Depends(get_services),
    ) -> None:
        if not await services.promocodes.delete_admin_promo(promo_id):
            raise HTTPException(status.HTTP_404_NOT_FOUND, "Promo not found")

    @router.get("/users/{user_id}/referral-stats", response_model=ReferralStatsSchema)
    async def referral_stats(
        user_id: int,
        services: ServiceContainer = Depends(get_services),
    ) -> ReferralStatsSchema:
        stats = await services.referrals.get_referral_stats(user_id)
        return ReferralStatsSchema(user_id=user_id, **stats)

    return router
