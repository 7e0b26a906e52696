from sqlalchemy import Boolean, Column, DateTime, Float, String
from sqlalchemy.sql import func

from fleetline.database import Base


class CarrierPosition(Base):
    """Latest known fix per carrier. Upserted in place, never historized."""

    __tablename__ = "carrier_positions"

    carrier_id = Column(String(64), primary_key=True)
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)
    heading = Column(Float, nullable=True)
    speed = Column(Float, nullable=True)
    is_online = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    created_at = Column(DateTime(timezone=True), server_default=func.now())
