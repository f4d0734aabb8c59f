from sqlalchemy import Column, Float, Integer, PrimaryKeyConstraint, String
from wxconsensus.db.base import Base

class AccuracyScoreCell(Base):
    __tablename__ = "accuracy_scores"

    location_id = Column(Integer, nullable=False)
    model_key = Column(String(64), nullable=False)
    metric_key = Column(String(64), nullable=False)
    interval_key = Column(String(8), nullable=False)     # "24h" | "48h" | "5d"

    location_name = Column(String, nullable=True)
    model_name = Column(String, nullable=True)
    mean_absolute_error = Column(Float, nullable=False, default=0.0)
    hours_tracked = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        PrimaryKeyConstraint("location_id", "model_key", "metric_key", "interval_key", name="pk_accuracy_scores"),
    )
