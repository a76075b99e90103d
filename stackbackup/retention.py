"""
Retention cleanup: remove backup-set directories older than N days.

Age uses whole days, like ``find -mtime +N``: a set is removed when the
number of full days since its modification time is greater than N.
"""
import shutil
import time
from pathlib import Path

from stackbackup.utils import format_bytes, get_dir_size, get_logger

logger = get_logger(__name__)

SECONDS_PER_DAY = 86400


def age_in_days(path, now=None):
    now = time.time() if now is None else now
    return int((now - Path(path).stat().st_mtime) // SECONDS_PER_DAY)


def find_expired_sets(backup_root, retention_days, now=None):
    """Return <root>/<host>/<set> directories older than `retention_days` whole days."""
    backup_root = Path(backup_root)
    expired = []
    for host_dir in sorted(p for p in backup_root.iterdir() if p.is_dir()):
        for set_dir in sorted(p for p in host_dir.iterdir() if p.is_dir()):
            try:
                if age_in_days(set_dir, now) > retention_days:
                    expired.append(set_dir)
            except OSError as e:
                logger.warning("Could not stat %s: %s", set_dir, e)
    return expired


def cleanup_old_backups(backup_root, retention_days, dry_run=False, now=None):
    """Delete expired backup sets.

    Returns:
        (removed, bytes_freed); with dry_run the values describe what would be removed
    """
    backup_root = Path(backup_root)
    if not backup_root.is_dir():
        raise FileNotFoundError(f"Backup directory not found: {backup_root}")

    logger.info("Starting backup cleanup (retention: %s days)", retention_days)
    removed = 0
    freed = 0
    for set_dir in find_expired_sets(backup_root, retention_days, now):
        size = get_dir_size(set_dir)
        if dry_run:
            logger.info("Would remove old backup: %s (%s)", set_dir, format_bytes(size))
            removed += 1
            freed += size
            continue
        logger.info("Removing old backup: %s (%s)", set_dir, format_bytes(size))
        try:
            shutil.rmtree(set_dir)
        except OSError as e:
            logger.error("Failed to remove %s: %s", set_dir, e)
            continue
        removed += 1
        freed += size

    logger.info("Cleanup summary: %s directories removed, %s freed", removed, format_bytes(freed))
    return removed, freed
