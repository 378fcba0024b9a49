"""Generic adapter for channels that accept the plain rate list."""

from ratewise.services.calendar import utcnow
from ratewise.services.channel_registry import ChannelView
from ratewise.services.channels.base import (
    AdapterError,
    ChannelAdapter,
    SignedJsonMixin,
    WireRate,
    basic_auth,
    bearer_auth,
    wire_amount,
)


class GenericAdapter(SignedJsonMixin, ChannelAdapter):
    """HMAC-SHA256 when a signing secret is configured, else Bearer on api_key, else Basic."""

    name = "generic"

    def format_rates(self, channel: ChannelView, rates: list[WireRate]) -> dict:
        return {
            "hotelId": self.property_ref(channel),
            "rates": [
                {
                    "date": r.date,
                    "roomTypeId": r.room_type_id,
                    "ratePlanId": r.rate_plan_id,
                    "currency": r.currency,
                    "amount": wire_amount(r.amount, self.precision(r.decimals)),
                }
                for r in rates
            ],
        }

    def authorization(self, credentials: dict, content: bytes) -> dict[str, str]:
        secret = credentials.get("hmac_secret")
        if secret:
            headers = self.signature_headers(secret, content, int(utcnow().timestamp()))
            if credentials.get("api_key"):
                headers["X-Api-Key"] = credentials["api_key"]
            return headers
        if credentials.get("api_key") or credentials.get("apiKey"):
            return {"Authorization": bearer_auth(credentials)}
        if credentials.get("username"):
            return {"Authorization": basic_auth(credentials)}
        raise AdapterError("Generic channel needs an api_key, hmac_secret or username/password")
