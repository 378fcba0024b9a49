"""Channel adapter contract and the value objects adapters format onto the wire."""

import base64
import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Any

from ratewise.config import settings
from ratewise.services.channel_registry import ChannelView


class AdapterError(Exception):
    """Channel config is missing something the adapter needs; not retryable."""


@dataclass(frozen=True)
class WireRate:
    """One converted rate ready to be formatted for a channel."""

    room_type_id: str
    rate_plan_id: str | None
    date: str  # YYYY-MM-DD, hotel-local
    amount: Decimal
    currency: str  # wire label, ISO-4217 uppercase
    decimals: int = 2
    available: bool = True
    occupancy: int = 2


@dataclass(frozen=True)
class WireAvailability:
    room_type_id: str
    date: str
    available: int
    stop_sell: bool = False
    closed_to_arrival: bool = False
    closed_to_departure: bool = False
    min_stay: int = 1
    max_stay: int = 30

    @classmethod
    def from_snapshot(cls, snapshot: dict) -> "WireAvailability":
        return cls(
            room_type_id=snapshot["roomTypeId"],
            date=snapshot["date"],
            available=int(snapshot["available"]),
            stop_sell=bool(snapshot.get("stopSell")),
            closed_to_arrival=bool(snapshot.get("closedToArrival")),
            closed_to_departure=bool(snapshot.get("closedToDeparture")),
            min_stay=int(snapshot.get("minStay", 1)),
            max_stay=int(snapshot.get("maxStay", 30)),
        )


@dataclass(frozen=True)
class ChannelRequest:
    method: str
    url: str
    headers: dict[str, str] = field(repr=False)
    body: dict
    content: bytes = field(repr=False, default=b"")


def wire_amount(amount: Decimal, decimals: int) -> str:
    """Fixed-scale decimal string at the channel precision, e.g. "94.50" or "12346"."""
    quantized = amount.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_EVEN)
    return format(quantized, "f")


def basic_auth(credentials: dict) -> str:
    username = credentials.get("username")
    password = credentials.get("password")
    if not username or password is None:
        raise AdapterError("Basic auth needs username and password")
    token = base64.b64encode(f"{username}:{password}".encode()).decode()
    return f"Basic {token}"


def bearer_auth(credentials: dict) -> str:
    api_key = credentials.get("api_key") or credentials.get("apiKey")
    if not api_key:
        raise AdapterError("Bearer auth needs an api_key")
    return f"Bearer {api_key}"


def encode_body(body: dict) -> bytes:
    return json.dumps(body, separators=(",", ":"), sort_keys=False).encode()


class ChannelAdapter(ABC):
    """Formats events for one OTA and signs the request.

    Adapters are stateless; everything channel-specific comes from the
    ChannelView passed in.
    """

    name: str = "base"
    rate_precision: int | None = None  # None keeps the currency's precision

    def property_ref(self, channel: ChannelView) -> str:
        creds = channel.credentials or {}
        ref = creds.get("hotel_code") or creds.get("property_id") or creds.get("hotelCode") or creds.get("propertyId")
        return str(ref or channel.hotel_id)

    def precision(self, decimals: int) -> int:
        return self.rate_precision if self.rate_precision is not None else decimals

    @abstractmethod
    def format_rates(self, channel: ChannelView, rates: list[WireRate]) -> dict:
        ...

    def format_availability(self, channel: ChannelView, rows: list[WireAvailability]) -> dict:
        return {
            "hotelId": self.property_ref(channel),
            "availability": [
                {
                    "date": row.date,
                    "roomTypeId": row.room_type_id,
                    "available": row.available,
                    "stopSell": row.stop_sell,
                    "closedToArrival": row.closed_to_arrival,
                    "closedToDeparture": row.closed_to_departure,
                    "minStay": row.min_stay,
                    "maxStay": row.max_stay,
                }
                for row in rows
            ],
        }

    def format_booking_ack(self, channel: ChannelView, payload: dict) -> dict:
        return {
            "hotelId": self.property_ref(channel),
            "bookingId": payload.get("channelBookingId"),
            "status": payload.get("status"),
            "sequence": payload.get("sequence"),
        }

    @abstractmethod
    def authorization(self, credentials: dict, content: bytes) -> dict[str, str]:
        """Auth headers for a request body."""

    def build_request(self, channel: ChannelView, endpoint: str, body: dict, credentials: dict | None = None) -> ChannelRequest:
        url = channel.endpoint(endpoint)
        if not url:
            raise AdapterError(f"No {endpoint} endpoint configured for {channel.channel_id}")
        content = encode_body(body)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": settings.channel_user_agent,
            **self.authorization(credentials or channel.credentials or {}, content),
        }
        return ChannelRequest("POST", url, headers, body, content)

    def parse_inbound(self, raw: dict[str, Any]) -> dict:
        """Normalise a channel callback into the ChannelEventIn shape."""
        return dict(raw)


class SignedJsonMixin:
    """HMAC-SHA256 over ``{timestamp}.{body}``; sent as X-Signature / X-Timestamp."""

    def signature_headers(self, secret: str, content: bytes, timestamp: int) -> dict[str, str]:
        message = f"{timestamp}.".encode() + content
        digest = hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()
        return {"X-Timestamp": str(timestamp), "X-Signature": f"sha256={digest}"}

    @staticmethod
    def verify(secret: str, content: bytes, timestamp: str, signature: str) -> bool:
        expected = hmac.new(secret.encode(), f"{timestamp}.".encode() + content, hashlib.sha256).hexdigest()
        return hmac.compare_digest(f"sha256={expected}", signature)
