"""
Backup run driver.

A run goes through three phases while holding the run lock:

  Phase 0: pre-flight checks (nothing is touched if they fail)
  Phase 1: process stacks sequentially (capture -> stop -> archive -> restart)
  Phase 2: finalize: log the summary and send the notification

`dry_run` walks the same stacks without taking the lock or touching them.
"""
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from stackbackup.archive import ArchiveBuilder
from stackbackup.compose import ComposeRuntime
from stackbackup.errors import RuntimeAdapterError
from stackbackup.locking import run_lock
from stackbackup.notifications import Notifier
from stackbackup.orchestrator import StackBackupOrchestrator, failure_outcome_for
from stackbackup.preflight import run_preflight
from stackbackup.stacks import discover_stacks
from stackbackup.summary import RunSummary, StackResult
from stackbackup.utils import filename_timestamp, format_bytes, get_dir_size, get_logger

logger = get_logger(__name__)


@dataclass
class DryRunEntry:
    stack: str
    would_backup: bool
    reason: Optional[str] = None
    size_bytes: int = 0
    running_count: int = 0


@dataclass
class DryRunReport:
    hostname: str
    compression_method: str
    extension: str
    entries: List[DryRunEntry] = field(default_factory=list)
    available_bytes: Optional[int] = None

    @property
    def would_backup(self):
        return [e for e in self.entries if e.would_backup]

    @property
    def would_skip(self):
        return [e for e in self.entries if not e.would_backup]

    @property
    def estimated_bytes(self):
        return sum(e.size_bytes for e in self.would_backup)

    @property
    def sufficient_space(self):
        if self.available_bytes is None:
            return None
        return self.available_bytes > self.estimated_bytes

    def lines(self):
        out = ['DRY RUN MODE - No changes will be made', '', 'Stacks that would be backed up:']
        for e in self.would_backup:
            state = f"{e.running_count} running" if e.running_count else 'stopped'
            marker = '✓' if e.running_count else '○'
            out.append(f"  {marker} {e.stack} ({format_bytes(e.size_bytes)} appdata, {state})")
        if self.would_skip:
            out.append('')
            out.append('Would skip:')
            for e in self.would_skip:
                out.append(f"  ○ {e.stack} ({e.reason})")
        out += [
            '',
            'Summary:',
            f"  Total stacks found: {len(self.entries)}",
            f"  Would backup: {len(self.would_backup)}",
            f"  Would skip: {len(self.would_skip)}",
            '',
            f"  Estimated backup size: {format_bytes(self.estimated_bytes)}",
            f"  Compression method: {self.compression_method}",
            f"  Backup extension: {self.extension}",
            '',
            f"  Space available: {format_bytes(self.available_bytes)}",
        ]
        if self.sufficient_space is True:
            out.append('  ✓ Sufficient space available')
        elif self.sufficient_space is False:
            out.append('  ✗ Insufficient space!')
        out += ['', 'DRY RUN COMPLETE - No actions taken']
        return out


class BackupRunner:
    """Backs up every discovered stack (or an explicit selection for manual runs).

    Args:
        config: BackupConfig for the run
        run_kind: 'backup' (scheduled) or 'manual'; selects the lock file. Manual
            runs also archive stacks that have nothing running
        stack_names: Stacks to process for a manual run (None = all)
    """

    def __init__(self, config, runtime=None, archiver=None, notifier=None, run_kind='backup',
                 stack_names=None, cancel_event=None):
        self.config = config
        self.runtime = runtime or ComposeRuntime()
        self.archiver = archiver or ArchiveBuilder.from_config(config)
        self.notifier = notifier if notifier is not None else Notifier.from_config(config)
        self.run_kind = run_kind
        self.stack_names = list(stack_names) if stack_names else None
        self.cancel_event = cancel_event or threading.Event()

    def stacks(self):
        return discover_stacks(self.config.stacks_root, self.config.appdata_root, names=self.stack_names)

    def run(self) -> RunSummary:
        """Execute the backup run with all phases under the run lock.

        Raises:
            LockError: if a run of the same kind is already in progress
            PreflightError: if a pre-flight check failed (no stack was touched)
        """
        with run_lock(self.config.lock_path(self.run_kind)):
            return self._run_locked()

    def _run_locked(self):
        timestamp = filename_timestamp()
        logger.info("=========================================")
        logger.info("Starting Docker stack backup (%s run)", self.run_kind)
        logger.info("Hostname: %s", self.config.hostname)
        logger.info("=========================================")

        self._phase_0_preflight()
        summary = RunSummary(
            hostname=self.config.hostname,
            run_kind=self.run_kind,
            timestamp=timestamp,
            log_file=str(self.config.log_file) if self.config.log_file else None,
        )
        self._phase_1_process_stacks(summary, self.config.run_dir(timestamp))
        self._phase_2_finalize(summary)
        return summary

    def _phase_0_preflight(self):
        logger.info('### Phase 0: Pre-flight checks ###')
        run_preflight(self.config, self.runtime)

    def _phase_1_process_stacks(self, summary, run_dir):
        logger.info('### Phase 1: Processing stacks sequentially (Stop -> Archive -> Start) ###')
        logger.info("Backup directory: %s", run_dir)
        orchestrator = StackBackupOrchestrator(
            self.config, self.runtime, self.archiver,
            notifier=self.notifier, cancel_event=self.cancel_event,
            backup_stopped=self.run_kind == 'manual',
        )
        for stack in self.stacks():
            summary.add(self._process_single_stack(orchestrator, stack, run_dir))
        return summary

    def _process_single_stack(self, orchestrator, stack, run_dir):
        try:
            return orchestrator.backup_stack(stack, run_dir)
        except Exception as e:
            outcome = failure_outcome_for(orchestrator.state)
            logger.exception("Unexpected error while backing up %s (state %s): %s",
                             stack.name, orchestrator.state.value, e)
            return StackResult(
                stack=stack.name,
                outcome=outcome,
                error=f"unexpected error: {e}",
                last_state=orchestrator.state.value,
            )

    def _phase_2_finalize(self, summary):
        logger.info('### Phase 2: Finalizing report and sending notification ###')
        summary.finish()
        for line in summary.log_lines():
            logger.info(line)
        try:
            self.notifier.send_run_summary(summary)
        except Exception as e:
            logger.warning("Failed to send notification: %s", e)
        if summary.failed:
            logger.error("Backup completed with %s failure(s)", summary.failed)
        else:
            logger.info("Backup completed successfully")

    def dry_run(self) -> DryRunReport:
        """Report what a run would do without taking the lock or touching any stack."""
        logger.info("DRY RUN: Docker stack backup simulation (%s)", self.config.hostname)
        report = DryRunReport(
            hostname=self.config.hostname,
            compression_method=self.config.compression_method,
            extension=self.archiver.extension,
        )
        probe = StackBackupOrchestrator(self.config, self.runtime, self.archiver)
        for stack in self.stacks():
            skip = probe.check_eligibility(stack)
            if skip is not None:
                report.entries.append(DryRunEntry(stack.name, False, reason=skip.label))
                continue
            try:
                running = len(self.runtime.list_running_services(stack.path))
            except RuntimeAdapterError as e:
                logger.warning("Could not query %s: %s", stack.name, e)
                running = 0
            report.entries.append(DryRunEntry(
                stack.name, True,
                size_bytes=get_dir_size(stack.data_dir),
                running_count=running,
            ))

        try:
            report.available_bytes = shutil.disk_usage(str(_existing_parent(self.config.backup_root))).free
        except OSError as e:
            logger.warning("Could not determine free space on %s: %s", self.config.backup_root, e)
        return report


def _existing_parent(path):
    path = Path(path)
    while not path.exists() and path != path.parent:
        path = path.parent
    return path
