from .pending_forecast import PendingForecast
from .actual_weather import ActualWeather
from .historical_forecast import HistoricalForecast
from .accuracy_score import AccuracyScoreCell
from .leader_lease import LeaderLease


__all__ = ["PendingForecast", "ActualWeather", "HistoricalForecast", "AccuracyScoreCell", "LeaderLease"]
