"""データモデル定義"""

import uuid
from dataclasses import dataclass, field, asdict, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Any, Union


def utc_now() -> datetime:
    """現在時刻（UTC, aware）"""
    return datetime.now(timezone.utc)


def parse_instant(value: Union[str, datetime]) -> datetime:
    """ISO文字列またはdatetimeをaware UTCのdatetimeに正規化"""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        dt = datetime.fromisoformat(text)
    else:
        raise TypeError(f"Unsupported instant value: {type(value)}")

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _optional_instant(value: Optional[Union[str, datetime]]) -> Optional[datetime]:
    return parse_instant(value) if value else None


class IntentStatus(Enum):
    """予約インテントのステータス"""
    PENDING = "pending"
    SYNCING = "syncing"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (IntentStatus.CONFIRMED, IntentStatus.FAILED)


# 許可されるステータス遷移
ALLOWED_TRANSITIONS: Dict[IntentStatus, frozenset] = {
    IntentStatus.PENDING: frozenset({IntentStatus.SYNCING}),
    IntentStatus.SYNCING: frozenset({
        IntentStatus.SYNCING,      # 解決済みリビジョンの保存
        IntentStatus.CONFIRMED,
        IntentStatus.PENDING,
        IntentStatus.FAILED,
    }),
    IntentStatus.CONFIRMED: frozenset(),
    IntentStatus.FAILED: frozenset(),
}


class ConflictType(Enum):
    """競合タイプ"""
    DATE_OVERLAP = "date_overlap"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    PRICING_CHANGED = "pricing_changed"


class ResolutionHint(Enum):
    """解決ヒント（検出時に算出される参考値）"""
    KEEP_LOCAL = "keep_local"
    KEEP_REMOTE = "keep_remote"
    MANUAL_REVIEW = "manual_review"


@dataclass
class GuestDetails:
    """宿泊者の連絡先"""
    name: str
    email: str
    phone: str
    special_requests: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_api(self) -> Dict[str, Any]:
        payload = {'name': self.name, 'email': self.email, 'phone': self.phone}
        if self.special_requests:
            payload['specialRequests'] = self.special_requests
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GuestDetails':
        return cls(
            name=data['name'],
            email=data['email'],
            phone=data['phone'],
            special_requests=data.get('special_requests'),
        )


@dataclass
class BookingRequest:
    """キュー投入前の予約内容（ID・ステータスなし）"""
    resource_id: str
    user_id: str
    check_in: datetime
    check_out: datetime
    guests: int
    total_amount: float
    currency: str
    guest_details: GuestDetails

    def __post_init__(self):
        self.check_in = parse_instant(self.check_in)
        self.check_out = parse_instant(self.check_out)

        if self.check_out <= self.check_in:
            raise ValueError("check_out must be later than check_in")
        if self.guests < 1:
            raise ValueError("guests must be at least 1")
        if self.total_amount < 0:
            raise ValueError("total_amount must not be negative")


@dataclass
class BookingIntent:
    """オフライン予約インテント（同期の作業単位）"""
    id: str
    resource_id: str
    user_id: str
    check_in: datetime
    check_out: datetime
    guests: int
    total_amount: float
    currency: str
    guest_details: GuestDetails
    status: IntentStatus
    created_at: datetime
    retry_count: int = 0
    last_error: Optional[str] = None
    remote_id: Optional[str] = None
    next_attempt_at: Optional[datetime] = None

    @classmethod
    def create(cls, request: BookingRequest, created_at: Optional[datetime] = None) -> 'BookingIntent':
        """新規インテント作成（IDはここでのみ採番）"""
        return cls(
            id=str(uuid.uuid4()),
            resource_id=request.resource_id,
            user_id=request.user_id,
            check_in=request.check_in,
            check_out=request.check_out,
            guests=request.guests,
            total_amount=request.total_amount,
            currency=request.currency,
            guest_details=request.guest_details,
            status=IntentStatus.PENDING,
            created_at=created_at or utc_now(),
        )

    def is_due(self, now: datetime) -> bool:
        """バックオフ待ちでなければTrue"""
        return self.next_attempt_at is None or self.next_attempt_at <= now

    def revised(self, **changes) -> 'BookingIntent':
        return replace(self, **changes)

    def to_request(self) -> BookingRequest:
        """予約内容のみ（ID・ステータスなし）"""
        return BookingRequest(
            resource_id=self.resource_id,
            user_id=self.user_id,
            check_in=self.check_in,
            check_out=self.check_out,
            guests=self.guests,
            total_amount=self.total_amount,
            currency=self.currency,
            guest_details=self.guest_details,
        )

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換（ローカル永続化用）"""
        data = asdict(self)
        data['check_in'] = self.check_in.isoformat()
        data['check_out'] = self.check_out.isoformat()
        data['created_at'] = self.created_at.isoformat()
        data['next_attempt_at'] = self.next_attempt_at.isoformat() if self.next_attempt_at else None
        data['status'] = self.status.value
        data['guest_details'] = self.guest_details.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BookingIntent':
        return cls(
            id=data['id'],
            resource_id=data['resource_id'],
            user_id=data['user_id'],
            check_in=parse_instant(data['check_in']),
            check_out=parse_instant(data['check_out']),
            guests=int(data['guests']),
            total_amount=float(data['total_amount']),
            currency=data['currency'],
            guest_details=GuestDetails.from_dict(data['guest_details']),
            status=IntentStatus(data['status']),
            created_at=parse_instant(data['created_at']),
            retry_count=int(data.get('retry_count', 0)),
            last_error=data.get('last_error'),
            remote_id=data.get('remote_id'),
            next_attempt_at=_optional_instant(data.get('next_attempt_at')),
        )

    def to_api(self) -> Dict[str, Any]:
        """予約確定APIのリクエストボディ"""
        return {
            'resourceId': self.resource_id,
            'userId': self.user_id,
            'checkIn': self.check_in.isoformat(),
            'checkOut': self.check_out.isoformat(),
            'guests': self.guests,
            'totalAmount': self.total_amount,
            'currency': self.currency,
            'guestDetails': self.guest_details.to_api(),
            'offlineId': self.id,
        }


@dataclass
class RemoteBooking:
    """サーバー側で確定済みの競合予約"""
    remote_id: str
    resource_id: str
    check_in: datetime
    check_out: datetime
    guests: int
    created_at: datetime
    max_guests: Optional[int] = None
    current_price: Optional[float] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'RemoteBooking':
        """APIレスポンス（camelCase）から変換"""
        max_guests = data.get('maxGuests')
        for nested_key in ('resource', 'homestay'):
            nested = data.get(nested_key)
            if max_guests is None and isinstance(nested, dict):
                max_guests = nested.get('maxGuests')

        current_price = data.get('currentPrice')
        return cls(
            remote_id=str(data.get('id', '')),
            resource_id=str(data.get('resourceId') or data.get('homestayId') or ''),
            check_in=parse_instant(data['checkIn']),
            check_out=parse_instant(data['checkOut']),
            guests=int(data.get('guests', 0)),
            created_at=parse_instant(data['createdAt']),
            max_guests=int(max_guests) if max_guests is not None else None,
            current_price=float(current_price) if current_price is not None else None,
        )


@dataclass
class ConflictRecord:
    """競合レコード（永続化しない）"""
    intent_id: str
    remote: RemoteBooking
    conflict_type: ConflictType
    resolution_hint: ResolutionHint

    def summary(self) -> str:
        return (f"{self.conflict_type.value} with remote {self.remote.remote_id} "
                f"(hint: {self.resolution_hint.value})")


@dataclass
class AvailabilityQuery:
    """競合チェック・代替日程提案の問い合わせ"""
    resource_id: str
    check_in: datetime
    check_out: datetime
    guests: int

    @classmethod
    def from_intent(cls, intent: BookingIntent) -> 'AvailabilityQuery':
        return cls(intent.resource_id, intent.check_in, intent.check_out, intent.guests)

    def to_api(self) -> Dict[str, Any]:
        return {
            'resourceId': self.resource_id,
            'checkIn': self.check_in.isoformat(),
            'checkOut': self.check_out.isoformat(),
            'guests': self.guests,
        }


@dataclass
class ResourceSearchQuery:
    """代替リソース検索の問い合わせ"""
    check_in: datetime
    check_out: datetime
    guests: int
    exclude_resource_id: str

    @classmethod
    def from_intent(cls, intent: BookingIntent) -> 'ResourceSearchQuery':
        return cls(intent.check_in, intent.check_out, intent.guests, intent.resource_id)

    def to_api(self) -> Dict[str, Any]:
        return {
            'checkIn': self.check_in.isoformat(),
            'checkOut': self.check_out.isoformat(),
            'guests': self.guests,
            'excludeResourceId': self.exclude_resource_id,
        }


@dataclass
class DateAlternative:
    """代替日程の候補"""
    check_in: datetime
    check_out: datetime
    total_amount: float

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'DateAlternative':
        return cls(
            check_in=parse_instant(data['checkIn']),
            check_out=parse_instant(data['checkOut']),
            total_amount=float(data['totalAmount']),
        )


@dataclass
class ResourceAlternative:
    """代替リソースの候補"""
    resource_id: str
    estimated_price: float

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'ResourceAlternative':
        return cls(
            resource_id=str(data.get('resourceId') or data['id']),
            estimated_price=float(data['estimatedPrice']),
        )


@dataclass
class SyncPassResult:
    """同期パスの実行結果"""
    started_at: datetime
    finished_at: Optional[datetime] = None
    confirmed: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    outcomes: Dict[str, IntentStatus] = field(default_factory=dict)

    @property
    def processed(self) -> int:
        return self.confirmed + self.retried + self.failed

    @property
    def duration_seconds(self) -> float:
        if not self.finished_at:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def record(self, intent_id: str, status: IntentStatus):
        self.outcomes[intent_id] = status
        if status == IntentStatus.CONFIRMED:
            self.confirmed += 1
        elif status == IntentStatus.FAILED:
            self.failed += 1
        else:
            self.retried += 1

    def summary(self) -> str:
        return (f"Sync pass: {self.confirmed} confirmed, {self.retried} retried, "
                f"{self.failed} failed, {self.skipped} skipped")


def intents_to_json_ready(intents: List[BookingIntent]) -> List[Dict[str, Any]]:
    return [intent.to_dict() for intent in intents]
