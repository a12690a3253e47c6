"""
Knowledge graph data models.
"""

from .decision import (
    ACTIVE_DECISION_STATUSES,
    ConflictType,
    Decision,
    DecisionConflict,
    DecisionStatus,
)
from .topic import Topic, TopicTrend

__all__ = [
    'ACTIVE_DECISION_STATUSES',
    'ConflictType',
    'Decision',
    'DecisionConflict',
    'DecisionStatus',
    'Topic',
    'TopicTrend',
]
