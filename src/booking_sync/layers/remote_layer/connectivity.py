"""
接続状態監視 - オンライン/オフライン遷移の通知
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

import aiohttp

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], None]


class ConnectivityMonitor(ABC):
    """接続状態のインターフェース"""

    @property
    @abstractmethod
    def is_online(self) -> bool:
        """現在オンラインかどうか"""

    @abstractmethod
    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        """遷移通知の購読（戻り値は購読解除関数）"""


class ManualConnectivity(ConnectivityMonitor):
    """ホストアプリから状態を設定する接続監視"""

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners: List[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_online(self, online: bool):
        """状態設定（変化したときのみ通知）"""
        if online == self._online:
            return

        self._online = online
        if online:
            logger.info("Connection restored")
        else:
            logger.info("Connection lost, bookings will be queued offline")

        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception as e:
                logger.error(f"Connectivity listener failed: {e}")


class HttpConnectivityProbe(ManualConnectivity):
    """ヘルスチェックURLを定期的に叩いて接続状態を判定"""

    def __init__(self,
                 health_url: str,
                 interval_seconds: float = 30.0,
                 timeout_seconds: float = 5.0,
                 initial_online: bool = False):
        super().__init__(online=initial_online)
        self.health_url = health_url
        self.interval_seconds = interval_seconds
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._task: Optional[asyncio.Task] = None

    async def probe(self) -> bool:
        """1回分の疎通確認"""
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(self.health_url) as response:
                    online = response.status < 500
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Connectivity probe failed: {e}")
            online = False

        self.set_online(online)
        return online

    async def start(self):
        if self._task is None:
            await self.probe()
            self._task = asyncio.create_task(self._probe_loop())

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def _probe_loop(self):
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.probe()
