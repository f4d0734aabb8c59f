from sqlalchemy import Column, DateTime, Float, Integer, UniqueConstraint
from wxconsensus.db.base import Base

class ActualWeather(Base):
    __tablename__ = "actual_weather"
    id = Column(Integer, primary_key=True, autoincrement=True)
    location_id = Column(Integer, nullable=False)
    time = Column(DateTime, nullable=False)               # naive UTC, top of hour
    temperature_2m = Column(Float, nullable=True)
    rain = Column(Float, nullable=True)
    snowfall = Column(Float, nullable=True)               # cm
    wind_speed_10m = Column(Float, nullable=True)
    wind_gusts_10m = Column(Float, nullable=True)
    cloud_cover = Column(Float, nullable=True)
    visibility = Column(Float, nullable=True)             # statute miles
    __table_args__ = (UniqueConstraint("location_id", "time", name="uq_actual_hour"),)
