"""
job_store.py
-------------
Persisted job state. The only state shared between batch invocations.

Jobs are stored as plain dicts (ProcessingJob.to_dict) and every read
returns a fresh ProcessingJob, so a running batch never sees another
writer's changes except through the store.

Store rules:
    - CANCELLED is sticky: save() refuses to overwrite a cancelled job, so
      an in-flight batch stops at its next commit.
    - create_exclusive() is a conditional insert: it fails while the user
      owns a non-terminal job.
    - claim() hands a job to exactly one invocation per cursor position.
    - cancel() is a locked read-modify-write, so it never overwrites a
      concurrent commit with an older snapshot.
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List

from core.exceptions import ActiveJobExistsError
from jobs.models import JobStatus, ProcessingJob

logger = logging.getLogger(__name__)


class JobStore(ABC):
    """
    Abstract job store.

    Subclasses implement raw dict storage; the store rules live here. All
    public methods hold one store-wide lock.
    """

    def __init__(self):
        self._lock = threading.RLock()

    # -------------------------------------------------------------------------
    # ABSTRACT METHODS: implement in each backend
    # -------------------------------------------------------------------------

    @abstractmethod
    def _read(self, job_id: str) -> Dict[str, Any] | None:
        ...

    @abstractmethod
    def _write(self, data: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def _read_all(self) -> List[Dict[str, Any]]:
        ...

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def get(self, job_id: str) -> ProcessingJob | None:
        with self._lock:
            data = self._read(job_id)
        return ProcessingJob.from_dict(data) if data else None

    def save(self, job: ProcessingJob) -> bool:
        """
        Persists `job`.

        Returns:
            False when the stored job is CANCELLED and `job` is not, in
            which case nothing is written.
        """
        with self._lock:
            stored = self._read(job.id)
            if stored and stored["status"] == JobStatus.CANCELLED.value and job.status != JobStatus.CANCELLED:
                logger.info(f"Job {job.id} is cancelled; discarding {job.status.value} update.")
                return False
            self._write(job.to_dict())
            return True

    def create_exclusive(self, job: ProcessingJob) -> ProcessingJob:
        """
        Inserts `job` unless its user already owns a non-terminal job.

        Raises:
            ActiveJobExistsError: The existing job is left untouched.
        """
        with self._lock:
            active = self.find_active(job.user_id)
            if active is not None:
                raise ActiveJobExistsError(job.user_id, active.id)
            self._write(job.to_dict())
        return job

    def claim(self, job_id: str, cursor: int, now: datetime, lease_seconds: float) -> ProcessingJob | None:
        """
        Marks a job RUNNING for the invocation that will process `cursor`.

        Returns None (claim refused) when the job is missing or terminal,
        when `cursor` is not the job's persisted cursor, or when another
        invocation holds a RUNNING lease younger than `lease_seconds`.
        """
        with self._lock:
            data = self._read(job_id)
            if not data:
                return None
            job = ProcessingJob.from_dict(data)

            if job.status.is_terminal:
                return None
            if cursor != job.cursor:
                logger.info(f"Job {job_id}: stale trigger for cursor {cursor} (persisted cursor {job.cursor}).")
                return None
            if job.status == JobStatus.RUNNING and (now - job.updated_at).total_seconds() < lease_seconds:
                logger.info(f"Job {job_id}: already running at cursor {cursor}.")
                return None

            job.status = JobStatus.RUNNING
            job.updated_at = now
            self._write(job.to_dict())
            return job

    def cancel(self, job_id: str, now: datetime) -> ProcessingJob | None:
        """
        Moves a non-terminal job to CANCELLED in one locked step. A terminal
        job is returned unchanged. Returns None for an unknown id.
        """
        with self._lock:
            data = self._read(job_id)
            if not data:
                return None
            job = ProcessingJob.from_dict(data)
            if job.status.is_terminal:
                return job

            job.status = JobStatus.CANCELLED
            job.updated_at = now
            job.completed_at = now
            self._write(job.to_dict())
            return job

    def find_active(self, user_id: str) -> ProcessingJob | None:
        """Returns the user's non-terminal job, if any."""
        with self._lock:
            for data in self._read_all():
                if data["user_id"] == user_id and not JobStatus(data["status"]).is_terminal:
                    return ProcessingJob.from_dict(data)
        return None

    def list_jobs(self, user_id: str | None = None, status: JobStatus | None = None) -> List[ProcessingJob]:
        """Returns matching jobs, newest first."""
        with self._lock:
            rows = self._read_all()
        jobs = [ProcessingJob.from_dict(d) for d in rows]
        if user_id is not None:
            jobs = [j for j in jobs if j.user_id == user_id]
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs


class InMemoryJobStore(JobStore):
    """Dict-backed store for tests and single-process use."""

    def __init__(self):
        super().__init__()
        self._jobs: Dict[str, Dict[str, Any]] = {}

    def _read(self, job_id: str) -> Dict[str, Any] | None:
        data = self._jobs.get(job_id)
        return json.loads(json.dumps(data)) if data else None

    def _write(self, data: Dict[str, Any]) -> None:
        self._jobs[data["id"]] = json.loads(json.dumps(data))

    def _read_all(self) -> List[Dict[str, Any]]:
        return [json.loads(json.dumps(d)) for d in self._jobs.values()]


class FileJobStore(JobStore):
    """
    One JSON file per job under `directory`. Used by the CLI so state
    survives between invocations.

    Writes go through a temp file and os.replace, so a reader never sees a
    half-written job. The lock is per process.
    """

    def __init__(self, directory: str):
        super().__init__()
        self.directory = directory
        os.makedirs(directory, exist_ok=True)

    def _path(self, job_id: str) -> str:
        return os.path.join(self.directory, f"{job_id}.json")

    def _read(self, job_id: str) -> Dict[str, Any] | None:
        path = self._path(job_id)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write(self, data: Dict[str, Any]) -> None:
        path = self._path(data["id"])
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, path)

    def _read_all(self) -> List[Dict[str, Any]]:
        rows = []
        for name in sorted(os.listdir(self.directory)):
            if name.endswith(".json"):
                with open(os.path.join(self.directory, name), "r", encoding="utf-8") as f:
                    rows.append(json.load(f))
        return rows
