"""
Restore a stack from a backup archive.

Before anything is overwritten the existing state is inspected
(`evaluate_conflict`) and a `Resolution` is chosen, by an operator prompt,
the configured policy, or ABORT when neither is available. With
BACKUP_THEN_OVERWRITE the existing stack and data directories are copied to a
safety directory first; that copy finishes before any destructive step.
"""
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from stackbackup.compose import is_stack_running, manual_command
from stackbackup.errors import RestoreAborted, RestoreError
from stackbackup.stacks import COMPOSE_FILE_CANDIDATES, ENV_FILE_NAME
from stackbackup.utils import filename_timestamp, get_logger

logger = get_logger(__name__)

SAFETY_DIR_PREFIX = 'docker-restore-backup-'
EXTRACT_TIMEOUT = 3600


class Resolution(Enum):
    CLEAN = 'clean'
    OVERWRITE = 'overwrite'
    BACKUP_THEN_OVERWRITE = 'backup_then_overwrite'
    ABORT = 'abort'


@dataclass(frozen=True)
class RestoreConflict:
    stack_dir_exists: bool
    data_dir_exists: bool
    stack_running: bool

    @property
    def has_conflict(self):
        return self.stack_dir_exists or self.data_dir_exists or self.stack_running

    def describe(self) -> List[str]:
        out = []
        if self.stack_dir_exists:
            out.append('stack directory already exists')
        if self.stack_running:
            out.append('stack has running containers')
        if self.data_dir_exists:
            out.append('appdata directory already exists')
        return out


@dataclass
class RestoreResult:
    stack: str
    resolution: Resolution
    stack_dir: Path
    data_dir: Path
    safety_dir: Optional[Path] = None
    started: Optional[bool] = None


def parse_resolution(value) -> Optional[Resolution]:
    """Turn a policy name ('overwrite', 'backup_first', ...) into a Resolution."""
    if value is None or isinstance(value, Resolution):
        return value
    key = str(value).strip().lower().replace('-', '_')
    aliases = {
        'backup_first': Resolution.BACKUP_THEN_OVERWRITE,
        'cancel': Resolution.ABORT,
    }
    if key in aliases:
        return aliases[key]
    try:
        return Resolution(key)
    except ValueError:
        raise ValueError(f"Unknown conflict resolution: {value}") from None


def evaluate_conflict(stack_dir, data_dir, runtime) -> RestoreConflict:
    """Inspect the restore target. The running check only applies to an existing stack directory."""
    stack_dir = Path(stack_dir)
    data_dir = Path(data_dir)
    stack_exists = stack_dir.is_dir()
    running = stack_exists and is_stack_running(runtime, stack_dir)
    conflict = RestoreConflict(
        stack_dir_exists=stack_exists,
        data_dir_exists=data_dir.is_dir(),
        stack_running=running,
    )
    for line in conflict.describe():
        logger.warning("Conflict: %s", line)
    return conflict


def resolve_conflict(conflict: RestoreConflict, policy=None,
                     prompt: Optional[Callable[[RestoreConflict], object]] = None) -> Resolution:
    """Decide how to proceed with a restore.

    No conflict always resolves to CLEAN. Otherwise the operator prompt wins,
    then the configured policy; with neither the restore is aborted.
    """
    if not conflict.has_conflict:
        return Resolution.CLEAN
    if prompt is not None:
        choice = parse_resolution(prompt(conflict))
        return choice if choice not in (None, Resolution.CLEAN) else Resolution.ABORT
    choice = parse_resolution(policy)
    if choice is None or choice is Resolution.CLEAN:
        logger.warning("Conflicts detected and no resolution policy configured; aborting restore")
        return Resolution.ABORT
    return choice


def create_safety_copy(stack_dir, data_dir, safety_root, timestamp=None) -> Path:
    """Copy the existing stack and data directories to <safety_root>/docker-restore-backup-<ts>.

    Raises:
        RestoreError: if the copy fails (nothing has been modified at that point)
    """
    target = Path(safety_root) / f"{SAFETY_DIR_PREFIX}{timestamp or filename_timestamp()}"
    logger.info("Creating safety backup in %s", target)
    try:
        target.mkdir(parents=True, exist_ok=False)
        if Path(stack_dir).is_dir():
            shutil.copytree(stack_dir, target / 'stack', symlinks=True)
        if Path(data_dir).is_dir():
            shutil.copytree(data_dir, target / 'appdata', symlinks=True)
    except (OSError, shutil.Error) as e:
        raise RestoreError(f"Safety backup to {target} failed: {e}") from e
    logger.info("Safety backup created")
    return target


def list_archive_members(archive_path) -> List[str]:
    try:
        result = subprocess.run(
            ['tar', '-tf', str(archive_path)],
            capture_output=True,
            text=True,
            timeout=EXTRACT_TIMEOUT
        )
    except (subprocess.SubprocessError, OSError) as e:
        raise RestoreError(f"Cannot read archive {archive_path}: {e}") from e
    if result.returncode != 0:
        raise RestoreError(f"Cannot read archive {archive_path}: {result.stderr.strip()}")
    return [line for line in result.stdout.splitlines() if line.strip()]


def preview_archive(archive_path, limit=20) -> Tuple[List[str], int]:
    """Return the first `limit` member names and the total member count."""
    members = list_archive_members(archive_path)
    return members[:limit], len(members)


def extract_archive(archive_path, dest):
    try:
        result = subprocess.run(
            ['tar', '-xf', str(archive_path), '-C', str(dest)],
            capture_output=True,
            text=True,
            timeout=EXTRACT_TIMEOUT
        )
    except (subprocess.SubprocessError, OSError) as e:
        raise RestoreError(f"Extraction of {archive_path} failed: {e}") from e
    if result.returncode != 0:
        raise RestoreError(f"Extraction of {archive_path} failed: {result.stderr.strip()}")


def restore_stack(config, runtime, archive_path, host, stack_name, resolution: Resolution,
                  start=False) -> RestoreResult:
    """Restore `stack_name` of `host` from `archive_path`.

    Raises:
        RestoreAborted: if `resolution` is ABORT
        RestoreError: if the archive lacks the <stack>/ tree, or the safety copy,
            extraction or file copy fails
    """
    if resolution is Resolution.ABORT:
        raise RestoreAborted(f"Restore of {stack_name} cancelled")

    archive_path = Path(archive_path)
    stack_dir = Path(config.stacks_base) / host / stack_name
    data_dir = Path(config.appdata_root) / stack_name
    result = RestoreResult(stack=stack_name, resolution=resolution, stack_dir=stack_dir, data_dir=data_dir)

    if not archive_path.is_file():
        raise RestoreError(f"Backup archive not found: {archive_path}")

    with tempfile.TemporaryDirectory(prefix='stackbackup-restore-') as tmp:
        tmp = Path(tmp)
        logger.info("Extracting backup %s", archive_path)
        extract_archive(archive_path, tmp)
        extracted = tmp / stack_name
        if not extracted.is_dir() or extracted.is_symlink():
            raise RestoreError(f"Archive {archive_path.name} has no {stack_name}/ directory; nothing restored")

        if resolution is Resolution.BACKUP_THEN_OVERWRITE:
            result.safety_dir = create_safety_copy(stack_dir, data_dir, config.safety_backup_dir)

        if stack_dir.is_dir():
            logger.info("Stopping existing stack")
            if not runtime.stop(stack_dir):
                logger.warning("Could not stop existing stack in %s, continuing", stack_dir)

        try:
            logger.info("Restoring stack configuration to %s", stack_dir)
            stack_dir.mkdir(parents=True, exist_ok=True)
            for name in COMPOSE_FILE_CANDIDATES + (ENV_FILE_NAME,):
                if (tmp / name).is_file():
                    shutil.copy2(tmp / name, stack_dir / name)

            logger.info("Restoring appdata to %s", data_dir)
            if data_dir.is_dir() and not data_dir.is_symlink():
                shutil.rmtree(data_dir)
            elif data_dir.exists() or data_dir.is_symlink():
                data_dir.unlink()
            shutil.copytree(extracted, data_dir, symlinks=True)
        except (OSError, shutil.Error) as e:
            raise RestoreError(f"Restore of {stack_name} failed: {e}") from e

    logger.info("Files restored successfully")

    if start:
        logger.info("Starting stack...")
        result.started = runtime.start(stack_dir, set())
        if result.started:
            logger.info("Stack started successfully")
        else:
            logger.error("Failed to start stack; start it manually with: %s", manual_command(stack_dir))
    else:
        logger.info("Stack not started. Start it manually with: %s", manual_command(stack_dir))
    return result
