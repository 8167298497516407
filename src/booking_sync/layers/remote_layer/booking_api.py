"""
予約APIクライアント - サーバー側予約エンドポイントとの通信
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from ...core.errors import NetworkError, ServerRejection
from ...core.models import (
    AvailabilityQuery, BookingIntent, DateAlternative, RemoteBooking,
    ResourceAlternative, ResourceSearchQuery,
)

logger = logging.getLogger(__name__)


class BookingApiClient(ABC):
    """予約APIのインターフェース"""

    @abstractmethod
    async def commit_booking(self, intent: BookingIntent) -> str:
        """予約確定（サーバー側IDを返す）"""

    @abstractmethod
    async def check_conflicts(self, query: AvailabilityQuery) -> List[RemoteBooking]:
        """競合する確定済み予約の取得"""

    @abstractmethod
    async def suggest_alternative_dates(self, query: AvailabilityQuery) -> List[DateAlternative]:
        """代替日程の提案（先頭が最優先）"""

    @abstractmethod
    async def search_alternative_resources(self, query: ResourceSearchQuery) -> List[ResourceAlternative]:
        """代替リソースの検索"""


@dataclass
class ApiEndpoints:
    """エンドポイントのパス"""
    commit: str = "/api/bookings"
    check_conflicts: str = "/api/bookings/check-conflicts"
    suggest_alternatives: str = "/api/bookings/suggest-alternatives"
    search_alternatives: str = "/api/homestays/search-alternatives"


class HttpBookingApiClient(BookingApiClient):
    """aiohttpによる予約APIクライアント"""

    def __init__(self,
                 base_url: str,
                 endpoints: Optional[ApiEndpoints] = None,
                 timeout_seconds: float = 30.0,
                 auth_token: Optional[str] = None,
                 session: Optional[aiohttp.ClientSession] = None):
        self.base_url = base_url.rstrip('/')
        self.endpoints = endpoints or ApiEndpoints()
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.auth_token = auth_token
        self._session = session
        self._owns_session = session is None

        # 統計情報
        self.total_requests = 0
        self.total_failures = 0

    async def __aenter__(self) -> 'HttpBookingApiClient':
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {'Content-Type': 'application/json'}
            if self.auth_token:
                headers['Authorization'] = f"Bearer {self.auth_token}"
            self._session = aiohttp.ClientSession(headers=headers, timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def _post_json(self, path: str, payload: Dict[str, Any]) -> Any:
        """JSON POST（通信失敗はNetworkError、非2xxはServerRejection）"""
        url = f"{self.base_url}{path}"
        self.total_requests += 1

        try:
            session = self._get_session()
            async with session.post(url, json=payload) as response:
                if not 200 <= response.status < 300:
                    body = await response.text()
                    self.total_failures += 1
                    raise ServerRejection(response.status, body)

                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    self.total_failures += 1
                    raise ServerRejection(response.status, f"invalid JSON response: {e}") from e

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.total_failures += 1
            raise NetworkError(f"POST {path} failed: {e.__class__.__name__}: {e}") from e

    @staticmethod
    def _expect_list(data: Any, path: str) -> List[Dict[str, Any]]:
        if not isinstance(data, list):
            raise ServerRejection(200, f"expected a JSON array from {path}")
        return data

    async def commit_booking(self, intent: BookingIntent) -> str:
        data = await self._post_json(self.endpoints.commit, intent.to_api())
        remote_id = None
        if isinstance(data, dict):
            remote_id = data.get('id') or data.get('remoteId')
        if not remote_id:
            raise ServerRejection(200, "commit response did not include a booking id")

        logger.info(f"Booking committed: {intent.id} -> {remote_id}")
        return str(remote_id)

    async def check_conflicts(self, query: AvailabilityQuery) -> List[RemoteBooking]:
        path = self.endpoints.check_conflicts
        records = self._expect_list(await self._post_json(path, query.to_api()), path)
        try:
            return [RemoteBooking.from_api(record) for record in records]
        except (KeyError, TypeError, ValueError) as e:
            raise ServerRejection(200, f"malformed conflict record: {e}") from e

    async def suggest_alternative_dates(self, query: AvailabilityQuery) -> List[DateAlternative]:
        path = self.endpoints.suggest_alternatives
        records = self._expect_list(await self._post_json(path, query.to_api()), path)
        try:
            return [DateAlternative.from_api(record) for record in records]
        except (KeyError, TypeError, ValueError) as e:
            raise ServerRejection(200, f"malformed date alternative: {e}") from e

    async def search_alternative_resources(self, query: ResourceSearchQuery) -> List[ResourceAlternative]:
        path = self.endpoints.search_alternatives
        records = self._expect_list(await self._post_json(path, query.to_api()), path)
        try:
            return [ResourceAlternative.from_api(record) for record in records]
        except (KeyError, TypeError, ValueError) as e:
            raise ServerRejection(200, f"malformed resource alternative: {e}") from e

    def get_statistics(self) -> Dict[str, Any]:
        total = self.total_requests
        return {
            "total_requests": total,
            "failed_requests": self.total_failures,
            "success_rate": ((total - self.total_failures) / total * 100) if total > 0 else 0.0,
        }
