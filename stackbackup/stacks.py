"""
Stack discovery and validation.

A stack is an immediate sub-directory of the stacks root that contains a
compose descriptor. Its persistent data is expected under
``<appdata_root>/<stack name>``.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from stackbackup.utils import get_logger

logger = get_logger(__name__)

# Checked in this order; the first existing file wins
COMPOSE_FILE_CANDIDATES = (
    'compose.yaml',
    'compose.yml',
    'docker-compose.yaml',
    'docker-compose.yml',
)

ENV_FILE_NAME = '.env'


@dataclass(frozen=True)
class Stack:
    name: str
    path: Path
    compose_file: Optional[Path]
    data_dir: Path
    has_data_mount: bool

    @property
    def env_file(self) -> Path:
        return self.path / ENV_FILE_NAME


def find_compose_file(directory):
    """
    Find compose file in directory.
    Looks for: compose.yaml, compose.yml, docker-compose.yaml, docker-compose.yml
    Returns the full path if found, None otherwise.
    """
    for filename in COMPOSE_FILE_CANDIDATES:
        filepath = Path(directory) / filename
        if filepath.is_file():
            return filepath
    return None


def stack_has_appdata(compose_file, appdata_root):
    """Return True if the compose file mentions the appdata root anywhere in its text.

    This is a plain substring search, not a YAML parse: a commented-out volume
    line counts and a relative bind mount does not. Kept in one place so it can
    be replaced by a structured check later.
    """
    try:
        text = Path(compose_file).read_text(encoding='utf-8', errors='ignore')
    except OSError as e:
        logger.warning("Could not read compose file %s: %s", compose_file, e)
        return False
    return str(appdata_root) in text


def load_stack(stack_dir, appdata_root) -> Stack:
    """Build a `Stack` for a single directory (the descriptor may be missing)."""
    stack_dir = Path(stack_dir)
    appdata_root = Path(appdata_root)
    compose_file = find_compose_file(stack_dir)
    has_mount = bool(compose_file) and stack_has_appdata(compose_file, appdata_root)
    return Stack(
        name=stack_dir.name,
        path=stack_dir,
        compose_file=compose_file,
        data_dir=appdata_root / stack_dir.name,
        has_data_mount=has_mount,
    )


class StackCatalog:
    """Iterable view over the stacks below a root directory.

    Every iteration re-scans the filesystem, so a catalog can be iterated more
    than once and always reflects the current state of the disk.
    """

    def __init__(self, stacks_root, appdata_root, names=None):
        self.stacks_root = Path(stacks_root)
        self.appdata_root = Path(appdata_root)
        self.names = list(names) if names else None

    def __iter__(self) -> Iterator[Stack]:
        if self.names is not None:
            yield from self._iter_selected()
            return

        if not self.stacks_root.is_dir():
            logger.warning("Stacks directory not found: %s", self.stacks_root)
            return

        try:
            entries = sorted(self.stacks_root.iterdir(), key=lambda p: p.name)
        except OSError as e:
            logger.error("Cannot read stacks directory %s: %s", self.stacks_root, e)
            return

        for entry in entries:
            try:
                if not entry.is_dir():
                    continue
            except OSError:
                continue
            if find_compose_file(entry) is None:
                logger.debug("Skipping %s: no compose file", entry)
                continue
            yield load_stack(entry, self.appdata_root)

    def _iter_selected(self):
        # Explicit selections are yielded even without a descriptor so the
        # caller records a skip instead of silently ignoring the name.
        for name in self.names:
            stack_dir = self.stacks_root / name
            if not stack_dir.is_dir():
                logger.warning("Stack directory not found: %s", stack_dir)
            yield load_stack(stack_dir, self.appdata_root)


def discover_stacks(stacks_root, appdata_root, names=None) -> StackCatalog:
    """Return a lazily re-scanning catalog of the stacks under `stacks_root`.

    Args:
        stacks_root: Directory with one sub-directory per stack
        appdata_root: Root of the per-stack data directories
        names: Optional explicit selection (manual runs)
    """
    return StackCatalog(stacks_root, appdata_root, names=names)
