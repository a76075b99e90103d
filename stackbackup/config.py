"""
Run configuration.

A `BackupConfig` is built once at startup (`load_config`) and handed to every
component. It is frozen: nothing in the application mutates settings while a
run is in progress.
"""
import os
import socket
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional, Tuple

from stackbackup.errors import ConfigError

ENV_PREFIX = 'STACKBACKUP_'

COMPRESSION_METHODS = ('none', 'gzip', 'bzip2', 'xz', 'zstd')
CONFLICT_POLICIES = ('abort', 'overwrite', 'backup_then_overwrite')

LOCK_FILE_NAMES = {
    'backup': 'docker-stack-backup.lock',
    'manual': 'docker-stack-backup-manual.lock',
}


@dataclass(frozen=True)
class BackupConfig:
    hostname: str = field(default_factory=socket.gethostname)
    stacks_base: Path = Path('/opt/dockhand/stacks')
    appdata_root: Path = Path('/mnt/datastor/appdata')
    backup_root: Path = Path('/mnt/backup/docker-backups')
    log_file: Optional[Path] = Path('/var/log/docker-backup.log')
    lock_dir: Path = Path('/var/run')

    compression_method: str = 'none'
    compression_level: int = 6
    use_parallel: bool = False
    parallel_threads: int = 0
    exclude_patterns: Tuple[str, ...] = ()

    restart_max_attempts: int = 3
    restart_retry_delay: float = 5.0
    restart_settle_delay: float = 2.0

    min_free_gb: int = 5
    retention_days: int = 30
    require_root: bool = True

    notify_on_success: bool = True
    notify_on_failure: bool = True
    notify_urls: Tuple[str, ...] = ()
    critical_urls: Tuple[str, ...] = ()
    email_to: Tuple[str, ...] = ()
    email_from: str = ''
    email_subject_prefix: str = '[Docker Backup]'
    smtp_server: str = ''
    smtp_port: int = 587
    smtp_user: str = ''
    smtp_password: str = ''
    smtp_use_tls: bool = True

    restore_conflict_policy: Optional[str] = None
    safety_backup_dir: Path = Path('/tmp')

    def __post_init__(self):
        if self.compression_method not in COMPRESSION_METHODS:
            raise ConfigError(
                f"Unknown compression method '{self.compression_method}' "
                f"(expected one of: {', '.join(COMPRESSION_METHODS)})"
            )
        if not 1 <= self.compression_level <= 9:
            raise ConfigError(f"Compression level must be between 1 and 9, got {self.compression_level}")
        if self.parallel_threads < 0:
            raise ConfigError("Parallel threads must be 0 (auto) or a positive number")
        if self.restart_max_attempts < 1:
            raise ConfigError("At least one restart attempt is required")
        if self.restart_retry_delay < 0 or self.restart_settle_delay < 0:
            raise ConfigError("Restart delays cannot be negative")
        if self.retention_days < 0:
            raise ConfigError("Retention days cannot be negative")
        if self.restore_conflict_policy is not None and self.restore_conflict_policy not in CONFLICT_POLICIES:
            raise ConfigError(
                f"Unknown restore conflict policy '{self.restore_conflict_policy}' "
                f"(expected one of: {', '.join(CONFLICT_POLICIES)})"
            )

    @property
    def stacks_root(self) -> Path:
        """Directory holding one sub-directory per stack for this host."""
        return self.stacks_base / self.hostname

    @property
    def host_backup_dir(self) -> Path:
        return self.backup_root / self.hostname

    def run_dir(self, timestamp: str) -> Path:
        """Backup-set directory for a run: <backup_root>/<hostname>/<timestamp>."""
        return self.host_backup_dir / timestamp

    def lock_path(self, run_kind: str = 'backup') -> Path:
        try:
            return self.lock_dir / LOCK_FILE_NAMES[run_kind]
        except KeyError:
            raise ConfigError(f"Unknown run kind '{run_kind}'") from None

    def with_overrides(self, **overrides) -> 'BackupConfig':
        """Return a copy with some fields replaced (validation runs again)."""
        return replace(self, **overrides)


def _parse_bool(name, value):
    v = str(value).strip().lower()
    if v in ('1', 'true', 'yes', 'on'):
        return True
    if v in ('0', 'false', 'no', 'off', ''):
        return False
    raise ConfigError(f"{name} must be a boolean, got '{value}'")


def _parse_int(name, value):
    try:
        return int(str(value).strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got '{value}'") from None


def _parse_float(name, value):
    try:
        return float(str(value).strip())
    except ValueError:
        raise ConfigError(f"{name} must be a number, got '{value}'") from None


def _parse_list(name, value):
    # newline or comma separated; apprise URLs never contain bare newlines
    parts = str(value).replace(',', '\n').splitlines()
    return tuple(p.strip() for p in parts if p.strip())


def _parse_path(name, value):
    return Path(str(value).strip())


def _parse_optional_path(name, value):
    value = str(value).strip()
    return Path(value) if value else None


def _parse_str(name, value):
    return str(value).strip()


def _parse_policy(name, value):
    value = str(value).strip().lower()
    return value or None


# field name -> parser; env var is ENV_PREFIX + field name upper-cased
_FIELD_PARSERS = {
    'hostname': _parse_str,
    'stacks_base': _parse_path,
    'appdata_root': _parse_path,
    'backup_root': _parse_path,
    'log_file': _parse_optional_path,
    'lock_dir': _parse_path,
    'compression_method': lambda n, v: _parse_str(n, v).lower(),
    'compression_level': _parse_int,
    'use_parallel': _parse_bool,
    'parallel_threads': _parse_int,
    'exclude_patterns': _parse_list,
    'restart_max_attempts': _parse_int,
    'restart_retry_delay': _parse_float,
    'restart_settle_delay': _parse_float,
    'min_free_gb': _parse_int,
    'retention_days': _parse_int,
    'require_root': _parse_bool,
    'notify_on_success': _parse_bool,
    'notify_on_failure': _parse_bool,
    'notify_urls': _parse_list,
    'critical_urls': _parse_list,
    'email_to': _parse_list,
    'email_from': _parse_str,
    'email_subject_prefix': _parse_str,
    'smtp_server': _parse_str,
    'smtp_port': _parse_int,
    'smtp_user': _parse_str,
    'smtp_password': _parse_str,
    'smtp_use_tls': _parse_bool,
    'restore_conflict_policy': _parse_policy,
    'safety_backup_dir': _parse_path,
}

# Fields whose environment variable name differs from the field name
_ENV_ALIASES = {
    'appdata_root': 'APPDATA_PATH',
    'backup_root': 'BACKUP_DEST',
    'safety_backup_dir': 'SAFETY_BACKUP_DIR',
}


def env_var_name(field_name):
    return ENV_PREFIX + _ENV_ALIASES.get(field_name, field_name.upper())


def load_config(env=None, **overrides) -> BackupConfig:
    """Build the run configuration from environment variables plus explicit overrides.

    Args:
        env: Mapping to read from (defaults to os.environ)
        **overrides: Field values that win over the environment (e.g. CLI flags)

    Raises:
        ConfigError: if a value cannot be parsed or fails validation
    """
    env = os.environ if env is None else env
    values = {}
    for name, parser in _FIELD_PARSERS.items():
        key = env_var_name(name)
        if key in env:
            values[name] = parser(key, env[key])
    values.update({k: v for k, v in overrides.items() if v is not None})
    if not values.get('hostname'):
        values.pop('hostname', None)
    try:
        return BackupConfig(**values)
    except TypeError as e:
        raise ConfigError(str(e)) from None
