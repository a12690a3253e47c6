"""
Knowledge graph over processed content.

Topics cluster related content items; decisions extracted by the analysis
stage are compared pairwise to surface conflicts. Everything here is a
best-effort consumer of the content pipeline.
"""

from .errors import (
    ClusteringError,
    ConflictDetectionError,
    KnowledgeGraphError,
    TopicNamingError,
)
from .models import (
    ACTIVE_DECISION_STATUSES,
    ConflictType,
    Decision,
    DecisionConflict,
    DecisionStatus,
    Topic,
    TopicTrend,
)

__version__ = '0.1.0'

__all__ = [
    'ACTIVE_DECISION_STATUSES',
    'ClusteringError',
    'ConflictDetectionError',
    'ConflictType',
    'Decision',
    'DecisionConflict',
    'DecisionStatus',
    'KnowledgeGraphError',
    'Topic',
    'TopicNamingError',
    'TopicTrend',
]
