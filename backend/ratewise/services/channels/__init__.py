from ratewise.services.channels.agoda import AgodaAdapter
from ratewise.services.channels.airbnb import AirbnbAdapter
from ratewise.services.channels.base import AdapterError, ChannelAdapter, ChannelRequest, WireAvailability, WireRate
from ratewise.services.channels.booking_com import BookingComAdapter
from ratewise.services.channels.expedia import ExpediaAdapter
from ratewise.services.channels.generic import GenericAdapter

ADAPTERS: dict[str, ChannelAdapter] = {
    adapter.name: adapter
    for adapter in (BookingComAdapter(), ExpediaAdapter(), AirbnbAdapter(), AgodaAdapter(), GenericAdapter())
}


def get_adapter(name: str) -> ChannelAdapter:
    return ADAPTERS.get(name) or ADAPTERS["generic"]


__all__ = [
    "ADAPTERS",
    "AdapterError",
    "ChannelAdapter",
    "ChannelRequest",
    "WireAvailability",
    "WireRate",
    "get_adapter",
]
