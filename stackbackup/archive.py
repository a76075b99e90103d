"""
Archive creation.

Archives are produced by a ``tar`` process writing an uncompressed stream to
stdout, piped into a compressor process that writes the output file. The
output is first written as ``<final>.partial`` and only renamed once both
processes exited cleanly, so a file with the final name is always complete.
"""
import fnmatch
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from stackbackup.utils import get_logger, format_bytes

logger = get_logger(__name__)

PARTIAL_SUFFIX = '.partial'

EXTENSIONS = {
    'none': '.tar',
    'gzip': '.tar.gz',
    'bzip2': '.tar.bz2',
    'xz': '.tar.xz',
    'zstd': '.tar.zst',
}

# method -> (single-threaded tool, parallel tool)
COMPRESSORS = {
    'gzip': ('gzip', 'pigz'),
    'bzip2': ('bzip2', 'pbzip2'),
    'xz': ('xz', 'pxz'),
    'zstd': ('zstd', 'zstd'),
}

ARCHIVE_SUFFIXES = tuple(sorted(EXTENSIONS.values(), key=len, reverse=True))


def strip_archive_extension(filename):
    """Return the stack name for an archive file name (e.g. 'web.tar.gz' -> 'web')."""
    for suffix in ARCHIVE_SUFFIXES:
        if filename.endswith(suffix):
            return filename[:-len(suffix)]
    return None


def is_archive_name(filename):
    return strip_archive_extension(filename) is not None


@dataclass
class ArchiveSource:
    """A group of entries to add, relative to `base_dir`.

    Entry names become archive member names as-is, so a data directory added
    as ``ArchiveSource(appdata_root, ['web'])`` lands under ``web/``.
    """
    base_dir: Path
    names: Sequence[str]
    apply_excludes: bool = False


@dataclass
class ArchiveResult:
    success: bool
    path: Optional[Path] = None
    size_bytes: int = 0
    error: Optional[str] = None
    excluded: List[str] = field(default_factory=list)


def matches_exclude(rel_path, patterns):
    """Return True if a path relative to the data directory matches any exclude pattern.

    Follows tar's unanchored matching: a pattern may match the whole path or
    any trailing part of it that starts at a path component boundary, and
    ``*`` also matches ``/``.
    """
    if not patterns:
        return False
    parts = rel_path.strip('/').split('/')
    tails = ['/'.join(parts[i:]) for i in range(len(parts))]
    for pattern in patterns:
        pattern = pattern.rstrip('/')
        if not pattern:
            continue
        for tail in tails:
            if fnmatch.fnmatchcase(tail, pattern):
                return True
    return False


def collect_entries(base_dir, name, patterns=(), excluded=None):
    """Walk `base_dir/name` and return member names (relative to base_dir) to archive.

    `name` itself is always kept; patterns only see paths below it. Directories
    are listed themselves so empty directories survive. Excluded directories
    are pruned together with their subtree. Symlinks are recorded, never
    followed.
    """
    base_dir = Path(base_dir)
    top = base_dir / name
    if excluded is None:
        excluded = []

    entries = [name]
    if top.is_symlink() or not top.is_dir():
        return entries

    def _onerror(err):
        raise err

    for root, dirs, files in os.walk(top, onerror=_onerror):
        rel_root = os.path.relpath(root, base_dir)
        inner_root = os.path.relpath(root, top)
        prefix = '' if inner_root == '.' else f"{inner_root}/"
        kept_dirs = []
        for d in sorted(dirs):
            member = f"{rel_root}/{d}"
            if matches_exclude(prefix + d, patterns):
                excluded.append(member)
                continue
            entries.append(member)
            if not os.path.islink(os.path.join(root, d)):
                kept_dirs.append(d)
        dirs[:] = kept_dirs
        for f in sorted(files):
            member = f"{rel_root}/{f}"
            if matches_exclude(prefix + f, patterns):
                excluded.append(member)
                continue
            entries.append(member)
    return entries


class ArchiveBuilder:
    """Builds one archive from a list of `ArchiveSource` groups.

    Args:
        method: 'none', 'gzip', 'bzip2', 'xz' or 'zstd'
        level: Compression level 1-9 (ignored for 'none')
        use_parallel: Prefer the multi-threaded compressor when installed
        parallel_threads: Thread count for parallel tools (0 = tool default)
        exclude_patterns: Glob patterns applied to sources with apply_excludes
    """

    def __init__(self, method='none', level=6, use_parallel=False, parallel_threads=0, exclude_patterns=()):
        if method not in EXTENSIONS:
            raise ValueError(f"Unknown compression method: {method}")
        if not 1 <= int(level) <= 9:
            raise ValueError(f"Compression level must be between 1 and 9, got {level}")
        self.method = method
        self.level = int(level)
        self.use_parallel = use_parallel
        self.parallel_threads = parallel_threads
        self.exclude_patterns = tuple(p for p in (exclude_patterns or ()) if p.strip())

    @classmethod
    def from_config(cls, config):
        return cls(
            method=config.compression_method,
            level=config.compression_level,
            use_parallel=config.use_parallel,
            parallel_threads=config.parallel_threads,
            exclude_patterns=config.exclude_patterns,
        )

    @property
    def extension(self):
        return EXTENSIONS[self.method]

    def compressor_command(self):
        """Return the compressor argv for this builder, or None for plain tar.

        Raises:
            FileNotFoundError: if no usable compressor binary is installed
        """
        if self.method == 'none':
            return None

        single, parallel = COMPRESSORS[self.method]
        level_flag = f"-{self.level}"

        if self.use_parallel:
            if shutil.which(parallel):
                # without an explicit count the tools use every CPU
                threads = self.parallel_threads
                cmd = [parallel, level_flag]
                if threads:
                    if self.method == 'gzip':
                        cmd += ['-p', str(threads)]
                    elif self.method == 'bzip2':
                        cmd.append(f"-p{threads}")
                    else:
                        cmd.append(f"-T{threads}")
                if self.method == 'zstd':
                    cmd.append('-q')
                return cmd + ['-c']
            logger.warning("Parallel compressor '%s' not found, falling back to '%s'", parallel, single)

        if not shutil.which(single):
            raise FileNotFoundError(f"Compression tool '{single}' not found")
        if self.method == 'zstd':
            return [single, level_flag, '-q', '-c']
        return [single, level_flag, '-c']

    def build(self, output_path, sources) -> ArchiveResult:
        """Write an archive of `sources` to `output_path` (via a .partial file).

        Returns an ArchiveResult; failures are reported, not raised.
        """
        output_path = Path(output_path)
        partial = output_path.with_name(output_path.name + PARTIAL_SUFFIX)
        excluded = []

        if not shutil.which('tar'):
            return ArchiveResult(False, error="'tar' not found")
        try:
            compressor = self.compressor_command()
        except FileNotFoundError as e:
            return ArchiveResult(False, error=str(e))

        for src in sources:
            for name in src.names:
                if not os.path.lexists(Path(src.base_dir) / name):
                    return ArchiveResult(False, error=f"Source vanished: {Path(src.base_dir) / name}")

        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return ArchiveResult(False, error=f"Cannot create destination {output_path.parent}: {e}")

        try:
            with tempfile.TemporaryDirectory(prefix='stackbackup-') as tmp:
                tar_cmd = ['tar', '-c', '-f', '-', '--null', '--no-recursion']
                for idx, src in enumerate(sources):
                    patterns = self.exclude_patterns if src.apply_excludes else ()
                    members = []
                    for name in src.names:
                        members.extend(collect_entries(src.base_dir, name, patterns, excluded))
                    if not members:
                        continue
                    list_file = Path(tmp) / f"members-{idx}.lst"
                    list_file.write_bytes(b''.join(os.fsencode(m) + b'\0' for m in members))
                    tar_cmd.extend(['-C', str(src.base_dir), '-T', str(list_file)])

                if excluded:
                    logger.info("Excluded %s entries from %s", len(excluded), output_path.name)
                    for member in excluded:
                        logger.debug("Excluded: %s", member)

                error = self._run_pipeline(tar_cmd, compressor, partial, Path(tmp))
        except OSError as e:
            error = f"Archive creation failed: {e}"

        if error:
            self._remove_partial(partial)
            return ArchiveResult(False, error=error, excluded=excluded)

        try:
            os.replace(partial, output_path)
            size = output_path.stat().st_size
        except OSError as e:
            self._remove_partial(partial)
            return ArchiveResult(False, error=f"Could not finalize archive: {e}", excluded=excluded)

        logger.info("Archive created: %s (%s)", output_path, format_bytes(size))
        return ArchiveResult(True, path=output_path, size_bytes=size, excluded=excluded)

    def _run_pipeline(self, tar_cmd, compressor, partial, tmp):
        """Run tar (and the compressor) writing to `partial`. Returns an error string or None."""
        tar_err_path = tmp / 'tar.stderr'
        comp_err_path = tmp / 'compress.stderr'

        with open(partial, 'wb') as out, open(tar_err_path, 'wb') as tar_err:
            if compressor is None:
                tar_proc = subprocess.run(tar_cmd, stdout=out, stderr=tar_err)
                if tar_proc.returncode != 0:
                    return f"tar exited with {tar_proc.returncode}: {_read_text(tar_err_path)}"
                return None

            with open(comp_err_path, 'wb') as comp_err:
                logger.debug("Running: %s | %s", ' '.join(tar_cmd), ' '.join(compressor))
                tar_proc = subprocess.Popen(tar_cmd, stdout=subprocess.PIPE, stderr=tar_err)
                try:
                    comp_proc = subprocess.Popen(compressor, stdin=tar_proc.stdout, stdout=out, stderr=comp_err)
                except OSError:
                    tar_proc.kill()
                    tar_proc.wait()
                    raise
                finally:
                    # the compressor holds its own copy of the pipe
                    tar_proc.stdout.close()
                comp_rc = comp_proc.wait()
                tar_rc = tar_proc.wait()

        if tar_rc != 0:
            return f"tar exited with {tar_rc}: {_read_text(tar_err_path)}"
        if comp_rc != 0:
            return f"{compressor[0]} exited with {comp_rc}: {_read_text(comp_err_path)}"
        return None

    @staticmethod
    def _remove_partial(partial):
        try:
            Path(partial).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove partial archive %s: %s", partial, e)


def _read_text(path):
    try:
        return Path(path).read_text(encoding='utf-8', errors='replace').strip()
    except OSError:
        return ''
