"""
Per-stack backup orchestration: check -> capture -> stop -> archive -> restart.

Only the services that were running before the backup are restarted, and the
running set is captured once, before the stop. Every path through
`StackBackupOrchestrator.backup_stack` ends in exactly one `Outcome`.
"""
import logging
import threading
import time
from enum import Enum
from pathlib import Path

from stackbackup.archive import ArchiveResult, ArchiveSource
from stackbackup.compose import manual_command
from stackbackup.errors import RuntimeAdapterError
from stackbackup.retry import RetryPolicy
from stackbackup.summary import Outcome, StackResult
from stackbackup.utils import dir_is_empty, format_bytes, get_logger

logger = get_logger(__name__)


class State(Enum):
    DISCOVERED = 'discovered'
    CHECKING_ELIGIBILITY = 'checking_eligibility'
    CAPTURING_RUNNING_SET = 'capturing_running_set'
    STOPPING = 'stopping'
    ARCHIVING = 'archiving'
    RESTORING_AFTER_ARCHIVE_FAILURE = 'restoring_after_archive_failure'
    RESTARTING = 'restarting'
    DONE = 'done'


# States in which the stack may be down because of us
_STACK_DOWN_STATES = (
    State.STOPPING,
    State.ARCHIVING,
    State.RESTORING_AFTER_ARCHIVE_FAILURE,
    State.RESTARTING,
)


def failure_outcome_for(state):
    """Map the state an unexpected error interrupted to the failed Outcome to record."""
    if state in (State.DISCOVERED, State.CHECKING_ELIGIBILITY, State.CAPTURING_RUNNING_SET, State.STOPPING):
        return Outcome.FAILED_TO_STOP
    if state in (State.ARCHIVING, State.RESTORING_AFTER_ARCHIVE_FAILURE):
        return Outcome.FAILED_TO_ARCHIVE
    return Outcome.FAILED_TO_RESTART


class StackBackupOrchestrator:
    """Runs the backup of one stack at a time.

    Args:
        config: BackupConfig for the run
        runtime: ContainerRuntime used to query, stop and start stacks
        archiver: ArchiveBuilder producing the archive
        notifier: Notifier for the critical restart alert (optional)
        cancel_event: threading.Event that cuts restart waits short
        backup_stopped: Archive a stack with nothing running instead of skipping
            it; no stop or restart is issued for it
    """

    def __init__(self, config, runtime, archiver, notifier=None, cancel_event=None, backup_stopped=False):
        self.config = config
        self.runtime = runtime
        self.archiver = archiver
        self.notifier = notifier
        self.cancel_event = cancel_event or threading.Event()
        self.backup_stopped = backup_stopped
        self.stack_name = None
        self.state = State.DISCOVERED

    def log(self, level, message):
        """Log a message prefixed with the stack being processed."""
        prefix = f"[{self.stack_name}] " if self.stack_name else ''
        logger.log(getattr(logging, level, logging.INFO), "%s%s", prefix, message)

    def check_eligibility(self, stack):
        """Return a skip Outcome for an ineligible stack, or None if it should be backed up."""
        if stack.compose_file is None:
            self.log('WARNING', f"No compose file found in {stack.path}, skipping")
            return Outcome.SKIPPED_NO_DESCRIPTOR
        if not stack.has_data_mount:
            self.log('WARNING', f"Compose file does not reference {self.config.appdata_root}, skipping")
            return Outcome.SKIPPED_NO_DATA_MOUNT
        if not stack.data_dir.is_dir():
            self.log('WARNING', f"Appdata directory {stack.data_dir} not found, skipping")
            return Outcome.SKIPPED_NO_DATA_MOUNT
        if dir_is_empty(stack.data_dir):
            self.log('WARNING', f"Appdata directory {stack.data_dir} is empty, skipping")
            return Outcome.SKIPPED_EMPTY_DATA_DIR
        return None

    def capture_running_set(self, stack):
        try:
            return frozenset(self.runtime.list_running_services(stack.path))
        except RuntimeAdapterError as e:
            # leave the stack untouched when its state is unknown
            self.log('WARNING', f"Could not determine running services: {e}")
            return frozenset()

    def archive_sources(self, stack):
        config_names = [stack.compose_file.name]
        if stack.env_file.is_file():
            config_names.append(stack.env_file.name)
        return [
            ArchiveSource(stack.path, config_names, apply_excludes=False),
            ArchiveSource(stack.data_dir.parent, [stack.data_dir.name], apply_excludes=True),
        ]

    def archive_path(self, stack, run_dir):
        return Path(run_dir) / f"{stack.name}{self.archiver.extension}"

    def backup_stack(self, stack, run_dir) -> StackResult:
        """Back up one stack into `run_dir` and return its StackResult."""
        self.stack_name = stack.name
        started = time.monotonic()
        self.state = State.DISCOVERED
        captured = frozenset()

        def result(outcome, **kwargs):
            return StackResult(
                stack=stack.name,
                outcome=outcome,
                captured_services=captured,
                duration=time.monotonic() - started,
                last_state=self.state.value,
                **kwargs
            )

        try:
            self.log('INFO', f"--- Processing stack: {stack.name} ---")

            self.state = State.CHECKING_ELIGIBILITY
            skip = self.check_eligibility(stack)
            if skip is not None:
                return result(skip)

            self.state = State.CAPTURING_RUNNING_SET
            captured = self.capture_running_set(stack)
            if captured:
                self.log('INFO', f"Running containers: {', '.join(sorted(captured))}")
                self.state = State.STOPPING
                self.log('INFO', "Stopping stack")
                if not self.runtime.stop(stack.path):
                    self.log('ERROR', "Failed to stop stack; archive not attempted")
                    self.log('ERROR', f"Check the stack manually: {manual_command(stack.path, captured)}")
                    return result(Outcome.FAILED_TO_STOP, error='stack could not be stopped')
            elif self.backup_stopped:
                self.log('WARNING', "No running containers, backing up without stopping")
            else:
                self.log('WARNING', "No running containers, skipping backup")
                return result(Outcome.SKIPPED_NOT_RUNNING)

            self.state = State.ARCHIVING
            output = self.archive_path(stack, run_dir)
            self.log('INFO', f"Creating backup: {output}")
            try:
                archive = self.archiver.build(output, self.archive_sources(stack))
            except Exception as e:
                archive = ArchiveResult(False, error=str(e))
            if not archive.success:
                self.log('ERROR', f"Failed to create backup: {archive.error}")
                if captured:
                    self.state = State.RESTORING_AFTER_ARCHIVE_FAILURE
                    self.log('INFO', "Restoring previously running containers")
                    if not self.runtime.start(stack.path, captured):
                        self.log('ERROR', f"Restart after archive failure did not succeed. "
                                          f"To restart manually: {manual_command(stack.path, captured)}")
                return result(Outcome.FAILED_TO_ARCHIVE, error=archive.error)
            self.log('INFO', f"Backup created: {archive.path} ({format_bytes(archive.size_bytes)})")

            if not captured:
                self.state = State.DONE
                self.log('INFO', "Stopped stack backed up")
                return result(Outcome.SUCCEEDED, archive_path=archive.path, archive_size=archive.size_bytes)

            self.state = State.RESTARTING
            if not self.restart(stack, captured):
                return result(
                    Outcome.FAILED_TO_RESTART,
                    archive_path=archive.path,
                    archive_size=archive.size_bytes,
                    error=f"stack did not restart after {self.config.restart_max_attempts} attempts",
                )

            self.state = State.DONE
            self.log('INFO', "Stack backed up and restarted successfully")
            return result(Outcome.SUCCEEDED, archive_path=archive.path, archive_size=archive.size_bytes)

        except (KeyboardInterrupt, SystemExit):
            self.log('ERROR', f"Interrupted while in state '{self.state.value}'")
            if self.state in _STACK_DOWN_STATES and captured:
                self.log('ERROR', f"Stack may be down. To restart manually: {manual_command(stack.path, captured)}")
            raise
        finally:
            self.stack_name = None

    def restart(self, stack, captured) -> bool:
        """Start exactly the captured services and confirm they came back.

        A restart attempt counts as successful when the number of running
        services equals the number captured before the stop. On exhaustion a
        single critical alert is sent.
        """
        expected = len(captured)
        self.log('INFO', f"Starting previously running containers: {', '.join(sorted(captured))}")
        policy = RetryPolicy(
            max_attempts=self.config.restart_max_attempts,
            delay=self.config.restart_retry_delay,
            cancel_event=self.cancel_event,
        )

        def attempt(n):
            self.log('INFO', f"Starting containers (attempt {n}/{policy.max_attempts})...")
            if not self.runtime.start(stack.path, captured):
                return False
            if policy.wait(self.config.restart_settle_delay):
                return False
            try:
                running = len(self.runtime.list_running_services(stack.path))
            except RuntimeAdapterError as e:
                self.log('WARNING', f"Could not verify restart: {e}")
                return False
            if running == expected:
                self.log('INFO', "All containers started successfully")
                return True
            self.log('WARNING', f"Only {running} of {expected} containers started")
            return False

        outcome = policy.run(attempt, label=f"Restart of {stack.name}")
        if outcome.success:
            return True

        self.log('ERROR', f"Failed to restart stack after {outcome.attempts} attempts")
        self.log('ERROR', f"Containers that should be running: {' '.join(sorted(captured))}")
        self.log('ERROR', "Manual intervention required!")
        self.log('ERROR', f"To restart manually: {manual_command(stack.path, captured)}")
        if self.notifier is not None:
            self.notifier.send_critical_alert(stack.name, stack.path, captured)
        return False
