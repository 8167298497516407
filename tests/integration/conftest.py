"""
統合テスト共通フィクスチャ
予約API・時計・ストレージのテスト用実装
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from booking_sync.core.errors import PersistenceError
from booking_sync.core.models import (
    AvailabilityQuery, BookingIntent, BookingRequest, DateAlternative, GuestDetails,
    RemoteBooking, ResourceAlternative, ResourceSearchQuery,
)
from booking_sync.layers.remote_layer.booking_api import BookingApiClient
from booking_sync.layers.remote_layer.connectivity import ManualConnectivity
from booking_sync.layers.storage_layer.intent_store import IntentStore
from booking_sync.layers.storage_layer.key_value_store import InMemoryKeyValueStore


BASE_TIME = datetime(2025, 5, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """テスト用の手動時計"""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class FakeBookingApi(BookingApiClient):
    """テスト用予約API"""

    def __init__(self):
        self.commit_attempts: List[BookingIntent] = []
        self.commit_errors: List[Exception] = []
        self.commit_delay = 0.0
        self.commit_delays: Dict[str, float] = {}

        self.remote_bookings: List[RemoteBooking] = []
        self.conflict_error: Optional[Exception] = None
        self.date_alternatives: List[DateAlternative] = []
        self.resource_alternatives: List[ResourceAlternative] = []
        self.alternatives_error: Optional[Exception] = None

        self.date_queries: List[AvailabilityQuery] = []
        self.resource_queries: List[ResourceSearchQuery] = []

    async def commit_booking(self, intent: BookingIntent) -> str:
        self.commit_attempts.append(intent)
        delay = self.commit_delays.get(intent.resource_id, self.commit_delay)
        if delay:
            await asyncio.sleep(delay)
        if self.commit_errors:
            raise self.commit_errors.pop(0)
        return f"remote-{len(self.commit_attempts)}"

    async def check_conflicts(self, query: AvailabilityQuery) -> List[RemoteBooking]:
        if self.conflict_error:
            raise self.conflict_error
        return [b for b in self.remote_bookings if b.resource_id == query.resource_id]

    async def suggest_alternative_dates(self, query: AvailabilityQuery) -> List[DateAlternative]:
        self.date_queries.append(query)
        if self.alternatives_error:
            raise self.alternatives_error
        return list(self.date_alternatives)

    async def search_alternative_resources(self, query: ResourceSearchQuery) -> List[ResourceAlternative]:
        self.resource_queries.append(query)
        if self.alternatives_error:
            raise self.alternatives_error
        return list(self.resource_alternatives)


class FlakyKeyValueStore(InMemoryKeyValueStore):
    """書き込み失敗を切り替えられるストア"""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        super().__init__(initial)
        self.fail_writes = False
        self.write_count = 0

    async def set(self, key: str, value: str) -> None:
        self.write_count += 1
        if self.fail_writes:
            raise PersistenceError("disk full")
        await super().set(key, value)


def make_request(**overrides) -> BookingRequest:
    values = dict(
        resource_id="homestay-r",
        user_id="user-1",
        check_in=datetime(2025, 6, 1, tzinfo=timezone.utc),
        check_out=datetime(2025, 6, 5, tzinfo=timezone.utc),
        guests=2,
        total_amount=400.0,
        currency="USD",
        guest_details=GuestDetails(name="Aiko Tanaka", email="aiko@example.com", phone="+81-90-0000-0000"),
    )
    values.update(overrides)
    return BookingRequest(**values)


def make_remote(**overrides) -> RemoteBooking:
    values = dict(
        remote_id="remote-existing",
        resource_id="homestay-r",
        check_in=datetime(2025, 6, 3, tzinfo=timezone.utc),
        check_out=datetime(2025, 6, 6, tzinfo=timezone.utc),
        guests=1,
        created_at=BASE_TIME + timedelta(hours=1),
        max_guests=None,
        current_price=None,
    )
    values.update(overrides)
    return RemoteBooking(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def api():
    return FakeBookingApi()


@pytest.fixture
def connectivity():
    return ManualConnectivity(online=True)


@pytest.fixture
def backend():
    return FlakyKeyValueStore()


@pytest.fixture
async def store(backend, clock):
    intent_store = IntentStore(backend, clock=clock)
    await intent_store.initialize()
    return intent_store
