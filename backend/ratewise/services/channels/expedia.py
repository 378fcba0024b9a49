"""Expedia adapter: flat rate updates with taxes and fees, Bearer auth."""

from ratewise.services.channel_registry import ChannelView
from ratewise.services.channels.base import ChannelAdapter, WireRate, bearer_auth, wire_amount


class ExpediaAdapter(ChannelAdapter):
    name = "expedia"

    def format_rates(self, channel: ChannelView, rates: list[WireRate]) -> dict:
        return {
            "propertyId": self.property_ref(channel),
            "rateUpdates": [
                {
                    "date": r.date,
                    "roomTypeId": r.room_type_id,
                    "ratePlanId": r.rate_plan_id,
                    "currency": r.currency,
                    "baseRate": wire_amount(r.amount, self.precision(r.decimals)),
                    "taxesAndFees": 0,
                }
                for r in rates
            ],
        }

    def authorization(self, credentials: dict, content: bytes) -> dict[str, str]:
        return {"Authorization": bearer_auth(credentials)}

    def parse_inbound(self, raw: dict) -> dict:
        kinds = {"BOOKED": "new_booking", "MODIFIED": "modification", "CANCELLED": "cancellation"}
        stay = raw.get("stayDates") or {}
        return {
            "channel": self.name,
            "kind": kinds.get(str(raw.get("eventType", "BOOKED")).upper(), raw.get("eventType")),
            "channel_booking_id": str(raw["confirmationId"]),
            "room_type_id": raw.get("roomTypeId"),
            "stay": {"check_in": stay["checkIn"], "check_out": stay["checkOut"]} if stay else None,
            "guest": {"name": raw.get("guestName"), "email": raw.get("guestEmail")},
            "rooms": raw.get("roomCount", 1),
            "amount": raw.get("totalAmount"),
            "currency": raw.get("currencyCode"),
            "old_values": raw.get("previousValues"),
            "sequence": raw.get("version", 0),
        }
