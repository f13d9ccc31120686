"""
Refresh Jobs

Background job orchestration and in-memory job state.
"""

from .orchestrator import JobOrchestrator
from .state import JobState, JobStatus, JobStore, JobType

__all__ = [
    "JobOrchestrator",
    "JobState",
    "JobStatus",
    "JobStore",
    "JobType",
]
