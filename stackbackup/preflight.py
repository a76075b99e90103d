"""
Pre-flight checks run before any stack is touched.

Every check runs (so the operator sees all problems at once); `run_preflight`
raises a single PreflightError listing the failures.
"""
import os
import shutil
from pathlib import Path

from stackbackup.errors import PreflightError
from stackbackup.utils import get_logger

logger = get_logger(__name__)

GB = 1024 ** 3
WRITE_TEST_NAME = '.write-test'


def check_runtime(runtime):
    if not runtime.ping():
        return "Docker daemon is not running or not responding (start with: systemctl start docker)"
    logger.info("✓ Docker daemon is running")
    return None


def check_required_paths(config):
    problems = []
    for label, path in (('Stacks directory', config.stacks_root), ('Appdata directory', config.appdata_root)):
        if not Path(path).is_dir():
            problems.append(f"{label} not found: {path}")
        else:
            logger.info("✓ %s exists: %s", label, path)
    return problems


def check_destination_writable(path):
    path = Path(path)
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        return f"Backup destination does not exist and cannot be created: {path} ({e})"
    probe = path / WRITE_TEST_NAME
    try:
        probe.touch()
        probe.unlink()
    except OSError as e:
        return f"Cannot write to {path}: {e} (check permissions and mount status)"
    if os.path.ismount(path):
        logger.info("✓ %s is a mount point", path)
    else:
        logger.info("✓ %s is accessible (local filesystem)", path)
    return None


def available_gb(path):
    return shutil.disk_usage(str(path)).free // GB


def check_disk_space(path, min_free_gb):
    try:
        free = available_gb(path)
    except OSError as e:
        return f"Cannot determine free space on {path}: {e}"
    if free < min_free_gb:
        return f"Insufficient disk space on {path}: available {free}GB, required {min_free_gb}GB"
    logger.info("✓ Disk space: %sGB available on %s", free, path)
    return None


def check_root():
    if hasattr(os, 'geteuid') and os.geteuid() != 0:
        return "This command must be run as root"
    return None


def run_preflight(config, runtime):
    """Run all checks for a backup run.

    Raises:
        PreflightError: if any check failed
    """
    logger.info("Running pre-flight checks...")
    problems = []

    if config.require_root:
        problems.append(check_root())
    problems.append(check_runtime(runtime))
    problems.extend(check_required_paths(config))
    problems.append(check_destination_writable(config.backup_root))
    if Path(config.backup_root).is_dir():
        problems.append(check_disk_space(config.backup_root, config.min_free_gb))

    problems = [p for p in problems if p]
    if problems:
        for p in problems:
            logger.error(p)
        raise PreflightError('Pre-flight checks failed: ' + '; '.join(problems))

    logger.info("✓ All pre-flight checks passed")
