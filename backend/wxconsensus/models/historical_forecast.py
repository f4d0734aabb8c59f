from sqlalchemy import Column, DateTime, Float, Index, Integer, String
from wxconsensus.db.base import Base

class HistoricalForecast(Base):
    __tablename__ = "historical_forecasts"
    id = Column(Integer, primary_key=True, autoincrement=True)
    location_id = Column(Integer, nullable=False)
    model_key = Column(String(64), nullable=False)
    metric_key = Column(String(64), nullable=False)
    target_time = Column(DateTime, nullable=False)
    forecast_lead_time_hours = Column(Integer, nullable=False)
    forecasted_value = Column(Float, nullable=False)
    actual_value = Column(Float, nullable=False)
    error = Column(Float, nullable=False)
    __table_args__ = (Index("ix_historical_forecasts_loc_time", "location_id", "target_time"),)
