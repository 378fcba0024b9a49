from ratewise.models.rates import (
    DemandForecast,
    DynamicRule,
    PromoCode,
    RateOverride,
    RatePlan,
    RoomType,
    SeasonalRate,
)
from ratewise.models.availability import AvailabilityRow
from ratewise.models.events import EventEnvelope
from ratewise.models.channels import ChannelCall, ChannelConfig
from ratewise.models.reconciliation import ChannelBooking, InboundOperation, ReconciliationRecord
from ratewise.models.exchange import ExchangeRate
from ratewise.models.alerts import SupervisionAlert

__all__ = [
    "AvailabilityRow",
    "ChannelBooking",
    "ChannelCall",
    "ChannelConfig",
    "DemandForecast",
    "DynamicRule",
    "EventEnvelope",
    "ExchangeRate",
    "InboundOperation",
    "PromoCode",
    "RateOverride",
    "RatePlan",
    "ReconciliationRecord",
    "RoomType",
    "SeasonalRate",
    "SupervisionAlert",
]
