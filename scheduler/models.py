"""
Data models for jobs and job runs.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional, Dict, Any

# Job statuses
PENDING = 'pending'
SCHEDULED = 'scheduled'
RUNNING = 'running'
SUCCESS = 'success'
FAILED = 'failed'

JOB_STATUSES = (PENDING, SCHEDULED, RUNNING, SUCCESS, FAILED)
RUN_STATUSES = (RUNNING, SUCCESS, FAILED)
TERMINAL_RUN_STATUSES = (SUCCESS, FAILED)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Job:
    """A named shell command bound to a worktree, optionally on a cron schedule"""
    id: int
    worktree_path: str
    name: str
    command: str
    cron: Optional[str]  # None for manual-only jobs
    status: str  # one of JOB_STATUSES
    last_run: Optional[datetime]
    next_run: Optional[datetime]  # informational only
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: tuple) -> 'Job':
        """Create from database row"""
        return cls(
            id=row[0],
            worktree_path=row[1],
            name=row[2],
            command=row[3],
            cron=row[4] or None,
            status=row[5],
            last_run=_parse_timestamp(row[6]),
            next_run=_parse_timestamp(row[7]),
            created_at=_parse_timestamp(row[8]),
            updated_at=_parse_timestamp(row[9])
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dict"""
        data = asdict(self)
        for key in ('last_run', 'next_run', 'created_at', 'updated_at'):
            data[key] = _format_timestamp(data[key])
        return data


@dataclass
class JobRun:
    """One execution attempt of a job"""
    id: int
    job_id: int
    started_at: datetime
    finished_at: Optional[datetime]  # None while running
    exit_code: Optional[int]  # None while running, -1 for signal/spawn failures
    stdout: str
    stderr: str
    status: str  # one of RUN_STATUSES

    @classmethod
    def from_row(cls, row: tuple) -> 'JobRun':
        """Create from database row"""
        return cls(
            id=row[0],
            job_id=row[1],
            started_at=_parse_timestamp(row[2]),
            finished_at=_parse_timestamp(row[3]),
            exit_code=row[4],
            stdout=row[5],
            stderr=row[6],
            status=row[7]
        )

    @property
    def is_finished(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    @property
    def elapsed_seconds(self) -> Optional[float]:
        """Run duration in seconds, or None while running"""
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dict"""
        data = asdict(self)
        data['started_at'] = _format_timestamp(self.started_at)
        data['finished_at'] = _format_timestamp(self.finished_at)
        return data
