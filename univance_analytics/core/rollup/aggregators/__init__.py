from .base import FamilyAggregatorProtocol, Summary
from .badge import BadgeAggregator
from .point import PointAggregator
from .task import TaskAggregator
from .user import UserAggregator

__all__ = [
    "FamilyAggregatorProtocol",
    "Summary",
    "UserAggregator",
    "TaskAggregator",
    "PointAggregator",
    "BadgeAggregator",
]
