"""Background services: warming and popularity analytics."""

from .analytics import PopularityAnalytics, popularity_score
from .periodic import PeriodicTask
from .warming import WarmingScheduler

__all__ = ["PeriodicTask", "PopularityAnalytics", "WarmingScheduler", "popularity_score"]
