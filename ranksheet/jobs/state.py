"""
Job Tracking

Track refresh jobs from submission to completion. Jobs live in memory,
are mutated only by their owning task, and are pruned a retention window
after they finish. Readers always receive copies.
"""

import asyncio
import copy
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    """Job status states."""
    QUEUED = "QUEUED"         # Created, task not started
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"   # Every keyword refreshed
    PARTIAL = "PARTIAL"       # Some keywords failed or were skipped
    FAILED = "FAILED"         # Systemic failure

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.PARTIAL, JobStatus.FAILED)


class JobType(Enum):
    REFRESH_ALL = "refresh_all"
    REFRESH_ONE = "refresh_one"
    RETRY_FAILED = "retry_failed"


@dataclass
class JobState:
    """Refresh job data model."""
    id: str
    type: JobType
    status: JobStatus
    created_at: datetime

    # Progress tracking
    keywords_total: int = 0
    keywords_done: int = 0
    succeeded: int = 0
    skipped: List[str] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    # Timing
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None

    # Systemic failure
    error_message: Optional[str] = None

    # Submission parameters
    params: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "keywordsTotal": self.keywords_total,
            "keywordsDone": self.keywords_done,
            "succeeded": self.succeeded,
            "skipped": list(self.skipped),
            "errors": [dict(e) for e in self.errors],
            "createdAt": self.created_at.isoformat(),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "durationSeconds": self.duration_seconds,
            "errorMessage": self.error_message,
            "params": dict(self.params),
        }


class JobStore:
    """
    In-memory job registry.

    All mutation goes through update(), which holds an asyncio.Lock so a
    reader never observes a half-applied change.
    """

    def __init__(
        self,
        retention_seconds: int = 6 * 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._jobs: Dict[str, JobState] = {}
        self._finished_at: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def create(self, job_type: JobType, params: Optional[Dict[str, Any]] = None) -> JobState:
        job = JobState(
            id=f"job_{uuid.uuid4().hex[:16]}",
            type=job_type,
            status=JobStatus.QUEUED,
            created_at=datetime.utcnow(),
            params=dict(params or {}),
        )
        async with self._lock:
            self._prune()
            self._jobs[job.id] = job
        logger.info(f"Created job {job.id} ({job_type.value})")
        return copy.deepcopy(job)

    async def get(self, job_id: str) -> Optional[JobState]:
        """Point-in-time copy of a job, or None when unknown or pruned."""
        async with self._lock:
            self._prune()
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    async def update(self, job_id: str, mutate: Callable[[JobState], None]) -> JobState:
        """Apply mutate to the job atomically. Returns a copy of the result."""
        async with self._lock:
            job = self._jobs[job_id]
            mutate(job)
            if job.status.is_terminal and job_id not in self._finished_at:
                self._finished_at[job_id] = self._clock()
            return copy.deepcopy(job)

    def _prune(self):
        cutoff = self._clock() - self.retention_seconds
        expired = [jid for jid, at in self._finished_at.items() if at <= cutoff]
        for job_id in expired:
            self._jobs.pop(job_id, None)
            self._finished_at.pop(job_id, None)
        if expired:
            logger.debug(f"Pruned {len(expired)} finished jobs")
