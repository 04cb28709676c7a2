"""
Analysis collaborators: remote HTTP service and local text files.
"""

from .analysis_client import HttpAnalysisClient, read_local_file
from .local_analyzer import TextFileAnalyzer

__all__ = [
    "HttpAnalysisClient",
    "TextFileAnalyzer",
    "read_local_file",
]
