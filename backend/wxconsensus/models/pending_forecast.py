from sqlalchemy import Column, DateTime, Float, Index, Integer, String, UniqueConstraint
from wxconsensus.db.base import Base

class PendingForecast(Base):
    __tablename__ = "pending_forecasts"
    id = Column(Integer, primary_key=True, autoincrement=True)
    location_id = Column(Integer, nullable=False)
    model_key = Column(String(64), nullable=False)
    metric_key = Column(String(64), nullable=False)
    target_time = Column(DateTime, nullable=False)        # naive UTC, top of hour
    forecasted_value = Column(Float, nullable=False)
    forecast_lead_time_hours = Column(Integer, nullable=False)
    generation_time = Column(DateTime, nullable=True)
    __table_args__ = (
        UniqueConstraint("location_id", "model_key", "metric_key", "target_time", name="uq_pending_point"),
        Index("ix_pending_forecasts_target_time", "target_time"),
    )
