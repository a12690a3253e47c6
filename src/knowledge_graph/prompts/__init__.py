"""
Prompt templates for topic naming and conflict classification.
"""

from .conflict_prompts import ConflictClassification, build_conflict_prompt
from .topic_prompts import TopicName, build_topic_name_prompt

__all__ = [
    'ConflictClassification',
    'TopicName',
    'build_conflict_prompt',
    'build_topic_name_prompt',
]
