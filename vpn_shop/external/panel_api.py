import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import aiohttp

from vpn_shop.utils.dates import to_epoch_seconds

logger = logging.getLogger(__name__)


@dataclass
class PanelUser:
    username: str
    subscription_url: Optional[str]
    status: Optional[str] = None
    expire: Optional[int] = None


class PanelAPIError(Exception):
    def __init__(self, message: str, status_code: int = None, response_data: dict = None):
        self.message = message
        self.status_code = status_code
        self.response_data = response_data
        super().__init__(self.message)


class PanelAccountNotFound(PanelAPIError):
    pass


class PanelAccountExists(PanelAPIError):
    pass


class PanelAPI:
    """HTTP-клиент панели управления VPN-аккаунтами (Marzban-совместимый API)."""

    def __init__(self, name: str, base_url: str, token: Optional[str], timeout: int = 15):
        self.name = name
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None

    def _prepare_headers(self) -> Dict[str, str]:
        headers = {
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        return headers

    async def __aenter__(self):
        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            headers=self._prepare_headers(),
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.close()
            self.session = None

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None,
    ) -> Dict:
        if not self.session:
            raise PanelAPIError("Session not initialized. Use async context manager.")

        url = f"{self.base_url}{endpoint}"

        try:
            kwargs: Dict[str, Any] = {'url': url, 'params': params}
            if data is not None:
                kwargs['json'] = data

            async with self.session.request(method, **kwargs) as response:
                response_text = await response.text()

                try:
                    response_data = json.loads(response_text) if response_text else {}
                except json.JSONDecodeError:
                    response_data = {'raw_response': response_text}

                if not isinstance(response_data, dict):
                    response_data = {'response': response_data}

                if response.status == 404:
                    raise PanelAccountNotFound(
                        response_data.get('detail') or 'not found',
                        response.status,
                        response_data,
                    )
                if response.status == 409:
                    raise PanelAccountExists(
                        response_data.get('detail') or 'already exists',
                        response.status,
                        response_data,
                    )
                if response.status >= 400:
                    error_message = response_data.get('detail') or f'HTTP {response.status}'
                    logger.error(
                        "❌ Панель %s: ошибка %s: %s",
                        self.name,
                        response.status,
                        response_text[:500],
                    )
                    raise PanelAPIError(str(error_message), response.status, response_data)

                return response_data

        except aiohttp.ClientError as e:
            logger.error("❌ Панель %s: запрос не выполнен: %s", self.name, e)
            raise PanelAPIError(f"Request failed: {str(e)}")

    @staticmethod
    def _parse_user(data: Dict) -> PanelUser:
        return PanelUser(
            username=data.get('username', ''),
            subscription_url=data.get('subscription_url'),
            status=data.get('status'),
            expire=data.get('expire'),
        )

    async def create_user(
        self,
        username: str,
        expire_at: datetime,
        inbounds: List[str],
        vless_flow: Optional[str] = None,
        note: Optional[str] = None,
    ) -> PanelUser:
        data = {
            'username': username,
            'status': 'active',
            'expire': to_epoch_seconds(expire_at),
            'proxies': {'vless': {'flow': vless_flow} if vless_flow else {}},
            'inbounds': {'vless': inbounds},
            'data_limit': 0,
            'data_limit_reset_strategy': 'no_reset',
        }
        if note:
            data['note'] = note

        response = await self._make_request('POST', '/users', data)
        return self._parse_user(response)

    async def get_user(self, username: str) -> Optional[PanelUser]:
        try:
            response = await self._make_request('GET', f'/users/{username}')
        except PanelAccountNotFound:
            return None
        return self._parse_user(response)

    async def extend_user(self, username: str, days: int) -> Dict:
        return await self._make_request(
            'POST',
            f'/users/{username}/extend',
            params={'days': days},
        )
