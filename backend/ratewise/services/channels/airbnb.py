"""Airbnb adapter: calendar entries priced in whole units, Bearer auth."""

from ratewise.services.channel_registry import ChannelView
from ratewise.services.channels.base import ChannelAdapter, WireAvailability, WireRate, bearer_auth, wire_amount


class AirbnbAdapter(ChannelAdapter):
    name = "airbnb"
    rate_precision = 0

    def format_rates(self, channel: ChannelView, rates: list[WireRate]) -> dict:
        return {
            "listingId": self.property_ref(channel),
            "calendar": [
                {
                    "date": r.date,
                    "available": r.available,
                    "price": {"amount": wire_amount(r.amount, self.precision(r.decimals)), "currency": r.currency},
                }
                for r in rates
            ],
        }

    def format_availability(self, channel: ChannelView, rows: list[WireAvailability]) -> dict:
        return {
            "listingId": self.property_ref(channel),
            "calendar": [
                {
                    "date": row.date,
                    "available": row.available > 0 and not row.stop_sell,
                    "min_nights": row.min_stay,
                    "max_nights": row.max_stay,
                    "closed_to_arrival": row.closed_to_arrival,
                    "closed_to_departure": row.closed_to_departure,
                }
                for row in rows
            ],
        }

    def authorization(self, credentials: dict, content: bytes) -> dict[str, str]:
        return {"Authorization": bearer_auth(credentials)}
