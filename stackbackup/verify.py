"""
Listing and integrity checks for the backup destination.

Layout: <backup_root>/<hostname>/<YYYYMMDD_HHMMSS>/<stack><ext>
"""
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from stackbackup.archive import is_archive_name, strip_archive_extension
from stackbackup.utils import get_dir_size, get_logger

logger = get_logger(__name__)

VERIFY_TIMEOUT = 3600


def _subdirs(path):
    path = Path(path)
    if not path.is_dir():
        return []
    return [p for p in path.iterdir() if p.is_dir()]


def list_hosts(backup_root) -> List[str]:
    return sorted(p.name for p in _subdirs(backup_root))


def list_backup_sets(backup_root, host) -> List[str]:
    """Backup-set directory names for a host, newest first (literal string order)."""
    return sorted((p.name for p in _subdirs(Path(backup_root) / host)), reverse=True)


def list_stack_archives(set_dir) -> List[Path]:
    """Finished archives in a backup set (partial files are ignored), sorted by name."""
    set_dir = Path(set_dir)
    if not set_dir.is_dir():
        return []
    return sorted(p for p in set_dir.iterdir() if p.is_file() and is_archive_name(p.name))


def list_stacks_in_set(set_dir) -> List[str]:
    return [strip_archive_extension(p.name) for p in list_stack_archives(set_dir)]


def find_archive(backup_root, host, timestamp, stack) -> Optional[Path]:
    """Return the archive for `stack` in a backup set, whatever its compression."""
    for path in list_stack_archives(Path(backup_root) / host / timestamp):
        if strip_archive_extension(path.name) == stack:
            return path
    return None


def verify_archive(path) -> bool:
    """Return True if tar can list the whole archive."""
    try:
        result = subprocess.run(
            ['tar', '-tf', str(path)],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            timeout=VERIFY_TIMEOUT
        )
    except (subprocess.SubprocessError, OSError) as e:
        logger.error("Could not verify %s: %s", path, e)
        return False
    if result.returncode != 0:
        logger.debug("tar reported errors for %s: %s", path, (result.stderr or '').strip())
        return False
    return True


@dataclass
class VerifyReport:
    checked: int = 0
    valid: List[Path] = field(default_factory=list)
    invalid: List[Path] = field(default_factory=list)

    @property
    def ok(self):
        return not self.invalid


def _hosts(backup_root, host=None):
    hosts = list_hosts(backup_root)
    if host:
        hosts = [h for h in hosts if h == host]
    return hosts


def verify_backups(backup_root, host=None) -> VerifyReport:
    """Test every archive under the backup root (optionally for one host)."""
    report = VerifyReport()
    for h in _hosts(backup_root, host):
        for ts in sorted(list_backup_sets(backup_root, h)):
            for archive in list_stack_archives(Path(backup_root) / h / ts):
                report.checked += 1
                if verify_archive(archive):
                    report.valid.append(archive)
                else:
                    logger.error("Invalid archive: %s", archive)
                    report.invalid.append(archive)
    return report


@dataclass
class HostStats:
    host: str
    backup_sets: int = 0
    archives: int = 0
    total_bytes: int = 0
    oldest: Optional[datetime] = None
    newest: Optional[datetime] = None


def backup_stats(backup_root, host=None) -> List[HostStats]:
    stats = []
    for h in _hosts(backup_root, host):
        host_dir = Path(backup_root) / h
        entry = HostStats(host=h, total_bytes=get_dir_size(host_dir))
        sets = list_backup_sets(backup_root, h)
        entry.backup_sets = len(sets)
        mtimes = []
        for ts in sets:
            for archive in list_stack_archives(host_dir / ts):
                entry.archives += 1
                try:
                    mtimes.append(archive.stat().st_mtime)
                except OSError:
                    continue
        if mtimes:
            entry.oldest = datetime.fromtimestamp(min(mtimes))
            entry.newest = datetime.fromtimestamp(max(mtimes))
        stats.append(entry)
    return stats
