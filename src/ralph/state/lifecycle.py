from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any

from ralph.config import RalphError
from ralph.state.task_spec import TASK_SPEC_FILENAME, TaskSpec

logger = logging.getLogger(__name__)

POINTER_FILENAME = ".last-branch"
JOURNAL_FILENAME = "progress.txt"
ARCHIVE_DIRNAME = "archive"
BRANCH_PREFIX = "ralph/"
JOURNAL_TITLE = "# Ralph Progress Log"

LifecycleEventHook = Callable[[dict[str, Any]], None]


class LifecycleIOError(RalphError):
    """Raised when the run directory cannot be updated safely."""

    label = "lifecycle"


@contextmanager
def _lifecycle_io(action: str) -> Iterator[None]:
    try:
        yield
    except OSError as exc:
        raise LifecycleIOError(f"{action}: {exc}") from exc


def _local_now() -> datetime:
    return datetime.now().astimezone()


def should_archive(persisted_branch: str, new_branch: str, task_spec_exists: bool) -> bool:
    return bool(persisted_branch) and persisted_branch != new_branch and task_spec_exists


def archive_directory_name(branch: str, today: date) -> str:
    folder = branch.removeprefix(BRANCH_PREFIX)
    return f"{today.strftime('%Y-%m-%d')}-{folder}"


def journal_header(started_at: datetime) -> str:
    # RFC 1123, e.g. "Mon, 02 Jan 2006 15:04:05 MST"
    stamp = started_at.strftime("%a, %d %b %Y %H:%M:%S %Z").rstrip()
    return f"{JOURNAL_TITLE}\nStarted: {stamp}\n---\n"


def atomic_write_text(path: Path, content: str) -> None:
    """Replace ``path`` with ``content`` so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    ) as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())
        temp_path = Path(handle.name)
    try:
        os.replace(temp_path, path)
    except OSError:
        temp_path.unlink(missing_ok=True)
        raise


class RunPointerStore:
    """Flat-file persistence for the branch of the last run that began."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def read(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return ""
        except (OSError, UnicodeDecodeError) as exc:
            raise LifecycleIOError(f"reading {self.path.name}: {exc}") from exc

    def write(self, branch: str) -> None:
        with _lifecycle_io(f"saving branch to {self.path.name}"):
            atomic_write_text(self.path, branch)


@dataclass(frozen=True, slots=True)
class LifecyclePreparation:
    previous_branch: str
    current_branch: str
    archived_to: Path | None
    pointer_updated: bool
    journal_created: bool


class RunLifecycleManager:
    def __init__(
        self,
        run_directory: Path,
        *,
        pointer_store: RunPointerStore | None = None,
        clock: Callable[[], datetime] | None = None,
        event_hook: LifecycleEventHook | None = None,
    ) -> None:
        self.run_directory = run_directory
        self.pointer_store = pointer_store or RunPointerStore(run_directory / POINTER_FILENAME)
        self.clock = clock or _local_now
        self.event_hook = event_hook

    @property
    def task_spec_path(self) -> Path:
        return self.run_directory / TASK_SPEC_FILENAME

    @property
    def journal_path(self) -> Path:
        return self.run_directory / JOURNAL_FILENAME

    @property
    def archive_root(self) -> Path:
        return self.run_directory / ARCHIVE_DIRNAME

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    def prepare(self, task_spec: TaskSpec) -> LifecyclePreparation:
        """Reconcile the run directory with ``task_spec`` before the first iteration."""
        previous_branch = self.pointer_store.read()
        new_branch = task_spec.branch_name

        archived_to: Path | None = None
        if should_archive(previous_branch, new_branch, self.task_spec_path.exists()):
            archived_to = self.archive_previous_run(previous_branch)

        pointer_updated = False
        if new_branch:
            self.pointer_store.write(new_branch)
            pointer_updated = True
            self._emit({"event": "pointer_updated", "branch": new_branch})

        journal_created = self.ensure_journal()
        return LifecyclePreparation(
            previous_branch=previous_branch,
            current_branch=new_branch,
            archived_to=archived_to,
            pointer_updated=pointer_updated,
            journal_created=journal_created,
        )

    def archive_previous_run(self, previous_branch: str) -> Path:
        folder = self.archive_root / archive_directory_name(previous_branch, self.clock().date())
        self._emit({"event": "archive_start", "branch": previous_branch})
        logger.debug("Archiving %s into %s", previous_branch, folder)

        with _lifecycle_io(f"archiving previous run {previous_branch}"):
            folder.mkdir(parents=True, exist_ok=True)
            shutil.copy2(self.task_spec_path, folder / TASK_SPEC_FILENAME)
            if self.journal_path.exists():
                shutil.copy2(self.journal_path, folder / JOURNAL_FILENAME)

        self.reset_journal()
        self._emit({"event": "archive_complete", "branch": previous_branch, "path": str(folder)})
        return folder

    def ensure_journal(self) -> bool:
        """Create the journal with its header if missing. Returns True when created."""
        if self.journal_path.exists():
            return False
        self._write_journal_header()
        self._emit({"event": "journal_created", "path": str(self.journal_path)})
        return True

    def reset_journal(self) -> None:
        self._write_journal_header()

    def _write_journal_header(self) -> None:
        with _lifecycle_io(f"initializing {JOURNAL_FILENAME}"):
            atomic_write_text(self.journal_path, journal_header(self.clock()))
