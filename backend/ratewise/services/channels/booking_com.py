"""Booking.com adapter: rates grouped per date and room type, Basic auth."""

from ratewise.services.channel_registry import ChannelView
from ratewise.services.channels.base import ChannelAdapter, WireRate, basic_auth, wire_amount

STATUS_KINDS = {"new": "new_booking", "modified": "modification", "cancelled": "cancellation"}


class BookingComAdapter(ChannelAdapter):
    name = "booking_com"

    def format_rates(self, channel: ChannelView, rates: list[WireRate]) -> dict:
        grouped: dict[tuple[str, str], list[WireRate]] = {}
        for rate in rates:
            grouped.setdefault((rate.date, rate.room_type_id), []).append(rate)
        return {
            "hotel_id": self.property_ref(channel),
            "rates": [
                {
                    "date": day,
                    "room_type": room_type,
                    "rates": [
                        {
                            "rate_plan": r.rate_plan_id,
                            "currency": r.currency,
                            "amount": wire_amount(r.amount, self.precision(r.decimals)),
                            "occupancy": r.occupancy,
                        }
                        for r in group
                    ],
                }
                for (day, room_type), group in grouped.items()
            ],
        }

    def authorization(self, credentials: dict, content: bytes) -> dict[str, str]:
        return {"Authorization": basic_auth(credentials)}

    def parse_inbound(self, raw: dict) -> dict:
        previous = raw.get("previous") or {}
        return {
            "channel": self.name,
            "kind": STATUS_KINDS.get(raw.get("status", "new"), raw.get("status")),
            "channel_booking_id": str(raw["reservation_id"]),
            "room_type_id": raw.get("room_type_id"),
            "stay": {"check_in": raw["checkin"], "check_out": raw["checkout"]} if raw.get("checkin") else None,
            "guest": raw.get("guest"),
            "rooms": raw.get("number_of_rooms", 1),
            "amount": raw.get("total_price"),
            "currency": raw.get("currency"),
            "old_values": {
                "room_type_id": previous.get("room_type_id"),
                "check_in": previous.get("checkin"),
                "check_out": previous.get("checkout"),
                "rooms": previous.get("number_of_rooms"),
            } if previous else None,
            "sequence": raw.get("sequence", 0),
        }
