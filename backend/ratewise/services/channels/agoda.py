"""Agoda adapter: PascalCase rate updates, Basic auth."""

from ratewise.services.channel_registry import ChannelView
from ratewise.services.channels.base import ChannelAdapter, WireRate, basic_auth, wire_amount


class AgodaAdapter(ChannelAdapter):
    name = "agoda"

    def format_rates(self, channel: ChannelView, rates: list[WireRate]) -> dict:
        return {
            "HotelCode": self.property_ref(channel),
            "RateUpdates": [
                {
                    "Date": r.date,
                    "RoomTypeCode": r.room_type_id,
                    "RatePlanCode": r.rate_plan_id,
                    "Currency": r.currency,
                    "Rate": wire_amount(r.amount, self.precision(r.decimals)),
                    "ExtraPersonRate": 0,
                }
                for r in rates
            ],
        }

    def authorization(self, credentials: dict, content: bytes) -> dict[str, str]:
        return {"Authorization": basic_auth(credentials)}
