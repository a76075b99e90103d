"""
Per-stack outcomes and the run summary built from them.
"""
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import FrozenSet, List, Optional

from stackbackup.utils import format_bytes, format_duration, local_now


class Outcome(Enum):
    """Final result of processing one stack. Exactly one per stack per run."""
    SUCCEEDED = 'succeeded'
    SKIPPED_NO_DESCRIPTOR = 'skipped_no_descriptor'
    SKIPPED_NO_DATA_MOUNT = 'skipped_no_data_mount'
    SKIPPED_EMPTY_DATA_DIR = 'skipped_empty_data_dir'
    SKIPPED_NOT_RUNNING = 'skipped_not_running'
    FAILED_TO_STOP = 'failed_to_stop'
    FAILED_TO_ARCHIVE = 'failed_to_archive'
    FAILED_TO_RESTART = 'failed_to_restart'

    @property
    def is_success(self):
        return self is Outcome.SUCCEEDED

    @property
    def is_skip(self):
        return self.value.startswith('skipped_')

    @property
    def is_failure(self):
        return self.value.startswith('failed_')

    @property
    def label(self):
        return self.value.replace('_', ' ')


@dataclass
class StackResult:
    stack: str
    outcome: Outcome
    captured_services: FrozenSet[str] = frozenset()
    archive_path: Optional[Path] = None
    archive_size: int = 0
    error: Optional[str] = None
    duration: float = 0.0
    last_state: Optional[str] = None


@dataclass
class RunSummary:
    """Aggregated outcomes of one backup run."""
    hostname: str
    run_kind: str = 'backup'
    timestamp: Optional[str] = None
    results: List[StackResult] = field(default_factory=list)
    started_at: object = field(default_factory=local_now)
    finished_at: object = None
    log_file: Optional[str] = None

    def add(self, result: StackResult):
        self.results.append(result)

    def finish(self):
        self.finished_at = local_now()

    @property
    def backed_up(self):
        return sum(1 for r in self.results if r.outcome.is_success)

    @property
    def skipped(self):
        return sum(1 for r in self.results if r.outcome.is_skip)

    @property
    def failed(self):
        return sum(1 for r in self.results if r.outcome.is_failure)

    @property
    def total(self):
        return len(self.results)

    @property
    def total_bytes(self):
        return sum(r.archive_size for r in self.results if r.outcome.is_success)

    @property
    def failed_results(self):
        return [r for r in self.results if r.outcome.is_failure]

    @property
    def status(self):
        return 'failure' if self.failed else 'success'

    @property
    def exit_code(self):
        return 1 if self.failed else 0

    @property
    def duration(self):
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def log_lines(self):
        """Plain-text lines describing the run, for the run log."""
        lines = [
            '========================================',
            f"Backup Summary ({self.hostname})",
            '========================================',
            f"Successfully backed up: {self.backed_up}",
            f"Skipped: {self.skipped}",
            f"Failed: {self.failed}",
            f"Total stacks: {self.total}",
            f"Total archive size: {format_bytes(self.total_bytes)}",
        ]
        if self.duration is not None:
            lines.append(f"Duration: {format_duration(self.duration)}")
        for r in self.results:
            detail = f" ({r.error})" if r.error else ''
            lines.append(f"  {r.stack}: {r.outcome.label}{detail}")
        return lines
