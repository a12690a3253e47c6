"""
Knowledge graph errors.

The builder catches every KnowledgeGraphError, logs it and degrades the
feature; none of them reach content item processing.
"""

from content_pipeline.errors import ContentPipelineError


class KnowledgeGraphError(ContentPipelineError):
    """Base class for knowledge graph failures."""

    pass


class ClusteringError(KnowledgeGraphError):
    """Topic clustering could not complete."""

    pass


class TopicNamingError(KnowledgeGraphError):
    """AI-assisted topic naming failed (the cluster is still persisted)."""

    pass


class ConflictDetectionError(KnowledgeGraphError):
    """Decision conflict detection could not complete."""

    pass
