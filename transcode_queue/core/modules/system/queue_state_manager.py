"""
Queue state persistence for resume after restart.

Two files are written into the queue's root directory:
- ``.tq_state.json``: the full job snapshot, profile name and profile config
- ``.tq_queue``: a human readable list where completed entries start with ``# ``

On load, jobs that were mid-flight or failed go back to Pending with their
progress rewound; Done and Skipped markers survive.
"""

import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ....utils.logging import get_logger
from ..exceptions import QueueStateError
from ..processing.job_model import Job, JobQueue, JobStatus

logger = get_logger("queue_state")

STATE_FILE_NAME = ".tq_state.json"
QUEUE_FILE_NAME = ".tq_queue"
QUEUE_FILE_HEADER = "# transcode-queue - lines with # prefix are completed"
SKIPPED_SUFFIX = " (skipped - output exists)"
STATE_VERSION = 1

RESUMABLE_STATUSES = (JobStatus.RUNNING, JobStatus.CALIBRATING, JobStatus.FAILED)


@dataclass
class QueueState:
    """Serializable snapshot of a queue."""
    jobs: List[Job]
    profile_name: str
    root_path: Path
    profile_config: Optional[Dict[str, Any]] = None
    saved_at: Optional[float] = field(default=None, compare=False)

    @staticmethod
    def state_path(root: Path) -> Path:
        return Path(root) / STATE_FILE_NAME

    @staticmethod
    def exists(root: Path) -> bool:
        return QueueState.state_path(root).exists()

    @classmethod
    def from_queue(cls, jobs: JobQueue, profile_name: str, root_path: Path,
                   profile_config: Optional[Dict[str, Any]] = None) -> "QueueState":
        return cls(jobs.snapshot(), profile_name, Path(root_path), profile_config)

    def to_job_queue(self) -> JobQueue:
        return JobQueue(self.jobs)

    def _state_to_dict(self) -> Dict[str, Any]:
        return {
            'version': STATE_VERSION,
            'jobs': [job.to_dict() for job in self.jobs],
            'selected_profile': self.profile_name,
            'root_path': str(self.root_path),
            'profile_config': self.profile_config,
            'saved_at': time.time(),
        }

    def save(self, root: Path):
        """Write the snapshot to ``root``. Raises QueueStateError on failure."""
        path = self.state_path(root)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(self._state_to_dict(), f, indent=2)
            tmp_path.replace(path)
        except (OSError, TypeError, ValueError) as e:
            raise QueueStateError(f"Failed to save queue state to {path}: {e}") from e
        logger.debug(f"State saved to {path}")

    @classmethod
    def load(cls, root: Path) -> "QueueState":
        """
        Read the snapshot from ``root`` and prepare it for resuming.

        Raises:
            QueueStateError: missing, unreadable or malformed state file
        """
        path = cls.state_path(root)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            jobs = [Job.from_dict(item) for item in data['jobs']]
            state = cls(
                jobs=jobs,
                profile_name=data['selected_profile'],
                root_path=Path(data.get('root_path') or root),
                profile_config=data.get('profile_config'),
                saved_at=data.get('saved_at'),
            )
        except FileNotFoundError as e:
            raise QueueStateError(f"No queue state found in {root}") from e
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise QueueStateError(f"Failed to load queue state from {path}: {e}") from e

        resumed = 0
        for job in state.jobs:
            if job.status in RESUMABLE_STATUSES:
                job.requeue()
                resumed += 1
        logger.info(f"Loaded {len(state.jobs)} job(s) from {path}"
                    + (f", {resumed} reset to pending" if resumed else ""))
        return state

    def requeue_all(self, preserve_markers: bool = False):
        for job in self.jobs:
            job.requeue(preserve_markers)

    def save_queue_status(self, root: Path):
        path = Path(root) / QUEUE_FILE_NAME
        lines = [QUEUE_FILE_HEADER]
        for job in self.jobs:
            name = job.input_path.name
            if job.status == JobStatus.DONE:
                lines.append(f"# {name}")
            elif job.status == JobStatus.SKIPPED:
                lines.append(f"# {name}{SKIPPED_SUFFIX}")
            else:
                lines.append(name)
        try:
            path.write_text("\n".join(lines) + "\n", encoding='utf-8')
        except OSError as e:
            raise QueueStateError(f"Failed to write {path}: {e}") from e

    def load_queue_status(self, root: Path) -> int:
        """Apply completion markers from ``.tq_queue`` to unfinished jobs. Returns how many."""
        path = Path(root) / QUEUE_FILE_NAME
        if not path.exists():
            return 0

        try:
            content = path.read_text(encoding='utf-8')
        except OSError as e:
            raise QueueStateError(f"Failed to read {path}: {e}") from e

        completed = {}
        for line in content.splitlines():
            line = line.strip()
            if not line.startswith('#') or line == QUEUE_FILE_HEADER:
                continue
            name = line[1:].strip()
            status = JobStatus.DONE
            if name.endswith(SKIPPED_SUFFIX.strip()):
                name = name[:-len(SKIPPED_SUFFIX.strip())].strip()
                status = JobStatus.SKIPPED
            completed[name] = status

        marked = 0
        for job in self.jobs:
            status = completed.get(job.input_path.name)
            if status is not None and not job.status.is_terminal:
                job.status = status
                if status == JobStatus.DONE:
                    job.progress_pct = 100.0
                marked += 1
        return marked
