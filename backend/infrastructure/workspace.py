import logging
import shutil
from pathlib import Path
from threading import Lock
from typing import Dict, List

from backend.domain.models import WorkspaceEntry

logger = logging.getLogger(__name__)

_PREFIX = "job-"


class WorkspaceManager:
    """
    Per-job scratch directories under one shared root.

    Each job gets its own ``job-<id>`` directory; entries never overlap, so the
    lock only guards the bookkeeping dict, not the filesystem.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self._entries: Dict[str, WorkspaceEntry] = {}
        self._lock = Lock()

    def open(self) -> None:
        """Create the root if needed and sweep directories left by a previous process."""
        self.root.mkdir(parents=True, exist_ok=True)
        for stale in self.root.glob(f"{_PREFIX}*"):
            if stale.is_dir():
                logger.info("Removing stale workspace %s", stale)
                shutil.rmtree(stale, ignore_errors=True)

    def allocate(self, job_id: str) -> WorkspaceEntry:
        path = self.root / f"{_PREFIX}{job_id}"
        with self._lock:
            if job_id in self._entries:
                raise ValueError(f"Workspace already allocated for job {job_id}")
            # exist_ok=False: a leftover directory must never be reused
            path.mkdir(parents=True)
            entry = WorkspaceEntry(job_id=job_id, path=path)
            self._entries[job_id] = entry
        return entry

    def release(self, entry: WorkspaceEntry) -> None:
        """Remove the entry and everything beneath it. Never raises."""
        with self._lock:
            self._entries.pop(entry.job_id, None)
        try:
            shutil.rmtree(entry.path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to remove workspace %s: %s", entry.path, exc)

    def active(self) -> List[WorkspaceEntry]:
        with self._lock:
            return list(self._entries.values())

    def close(self) -> None:
        """Release every entry still outstanding (process shutdown)."""
        for entry in self.active():
            self.release(entry)
