"""Exchange rates. Append-only; a newer row supersedes an older one."""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Index, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ratewise.database import Base, UTCDateTime
from ratewise.services.calendar import utcnow


class ExchangeRate(Base):
    __tablename__ = "exchange_rates"
    __table_args__ = (Index("idx_exchange_rates_pair", "from_currency", "to_currency", "as_of"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    from_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    to_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(24, 12), nullable=False)
    source: Mapped[str] = mapped_column(String(30), nullable=False)
    as_of: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
