"""
Utility functions for the application.
"""
import os
from datetime import datetime, timezone
from zoneinfo import ZoneInfo
import logging

LOG_FORMAT = '[%(levelname)s] %(asctime)s %(name)s: %(message)s'


# Central logging helpers
def setup_logging(level=None, log_file=None):
    """Configure root logger for a run.

    - Uses `level` or the LOG_LEVEL env var (e.g., DEBUG, INFO); defaults to INFO.
    - If no handlers exist, installs a StreamHandler and, when `log_file` is given,
      a TimedRotatingFileHandler so every run leaves a durable log behind.

    If the log file cannot be opened (missing permissions, read-only mount), a
    warning is written to the console handler and the run continues.
    """
    level_name = (level or os.environ.get('LOG_LEVEL', 'INFO')).upper()
    level = getattr(logging, level_name, logging.INFO)

    root = logging.getLogger()

    # Only configure handlers if none are present so tests or other
    # environments can configure logging differently
    if not root.handlers:
        sh = logging.StreamHandler()
        sh.setLevel(level)
        sh.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(sh)

        if log_file:
            try:
                log_dir = os.path.dirname(str(log_file))
                if log_dir:
                    os.makedirs(log_dir, exist_ok=True)
                from logging.handlers import TimedRotatingFileHandler
                fh = TimedRotatingFileHandler(
                    filename=str(log_file),
                    when='midnight',
                    backupCount=0,
                    encoding='utf-8'
                )
                fh.setLevel(level)
                fh.setFormatter(logging.Formatter(LOG_FORMAT))
                root.addHandler(fh)
            except OSError as e:
                root.warning("Failed to configure file logging (LOG_FILE=%s): %s", log_file, e)

    root.setLevel(level)


def get_logger(name=None):
    """Return a logger for the given name (or the module logger if none)."""
    return logging.getLogger(name if name else __name__)


def local_now():
    """Get current datetime in local timezone (for directory names, logs).

    Returns a timezone-aware datetime in the configured display timezone."""
    tz = get_display_timezone()
    return datetime.now(timezone.utc).astimezone(tz)


def get_display_timezone():
    """Get the configured display timezone."""
    tz_name = os.environ.get('TZ', 'UTC')
    try:
        return ZoneInfo(tz_name)
    except Exception:
        return ZoneInfo('UTC')


def filename_timestamp(dt=None):
    """Return a timestamp string suitable for filenames using configured local timezone.

    Format: YYYYMMDD_HHMMSS (e.g. 20251225_182530). This is also the name of a
    backup-set directory, so sorting these strings sorts runs chronologically.
    """
    if dt is None:
        dt = local_now()
    return dt.strftime('%Y%m%d_%H%M%S')


def format_timestamp_label(ts):
    """Render a backup-set directory name like '20251225_182530' for humans.

    Returns the input unchanged when it does not look like a run timestamp.
    """
    try:
        dt = datetime.strptime(ts, '%Y%m%d_%H%M%S')
    except (TypeError, ValueError):
        return str(ts)
    return dt.strftime('%B %d, %Y at %H:%M:%S')


def format_bytes(bytes_val):
    """Format bytes to human readable string."""
    if bytes_val is None:
        return 'N/A'

    bytes_val = float(bytes_val)

    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_val < 1024.0:
            return f"{bytes_val:.1f}{unit}"
        bytes_val /= 1024.0
    return f"{bytes_val:.1f}PB"


def format_duration(seconds):
    """Format duration in seconds to human readable string."""
    if seconds is None:
        return 'N/A'

    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"

    minutes = seconds // 60
    secs = seconds % 60

    if minutes < 60:
        return f"{minutes}m {secs}s"

    hours = minutes // 60
    mins = minutes % 60
    return f"{hours}h {mins}m"


def get_dir_size(path):
    """Sum the size of all regular files below `path` (symlinks are not followed)."""
    total = 0
    for root, dirs, files in os.walk(path):
        for f in files:
            fp = os.path.join(root, f)
            try:
                if not os.path.islink(fp):
                    total += os.path.getsize(fp)
            except OSError:
                pass
    return total


def dir_is_empty(path):
    """Return True if the directory has no entries at all (hidden files count)."""
    with os.scandir(path) as it:
        return next(it, None) is None
