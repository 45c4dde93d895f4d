"""
Database models
"""
from .analysis_job import AnalysisJob
from .queued_job import QueuedJob, QueueState

__all__ = ["AnalysisJob", "QueuedJob", "QueueState"]
