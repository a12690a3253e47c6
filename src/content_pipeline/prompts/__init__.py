"""
Prompt templates and structured-output models.
"""

from .analyze_content import AnalysisResult, build_analysis_prompt

__all__ = ['AnalysisResult', 'build_analysis_prompt']
