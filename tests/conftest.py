import shutil
from pathlib import Path

import pytest

from stackbackup.archive import ArchiveResult
from stackbackup.compose import ContainerRuntime
from stackbackup.config import BackupConfig
from stackbackup.errors import RuntimeAdapterError


requires_tar = pytest.mark.skipif(shutil.which('tar') is None, reason='tar not installed')
requires_gzip = pytest.mark.skipif(shutil.which('gzip') is None, reason='gzip not installed')


class FakeRuntime(ContainerRuntime):
    """In-memory runtime keyed by stack directory name.

    `after_start` maps a stack name to the services reported as running after a
    start (default: exactly the services that were started).
    """

    def __init__(self, running=None, stop_ok=True, start_ok=True, after_start=None,
                 query_error=False, ping_ok=True):
        self.running = {k: set(v) for k, v in (running or {}).items()}
        self.stop_ok = stop_ok
        self.start_ok = start_ok
        self.after_start = after_start or {}
        self.query_error = query_error
        self.ping_ok = ping_ok
        self.calls = []

    def calls_of(self, kind):
        return [c for c in self.calls if c[0] == kind]

    def list_running_services(self, workdir):
        name = Path(workdir).name
        self.calls.append(('list', name))
        if self.query_error:
            raise RuntimeAdapterError(f"query failed for {name}")
        return set(self.running.get(name, set()))

    def stop(self, workdir):
        name = Path(workdir).name
        self.calls.append(('stop', name))
        if self.stop_ok:
            self.running[name] = set()
        return self.stop_ok

    def start(self, workdir, services):
        name = Path(workdir).name
        self.calls.append(('start', name, frozenset(services)))
        if self.start_ok:
            self.running[name] = set(self.after_start.get(name, services))
        return self.start_ok

    def ping(self):
        return self.ping_ok


class FakeArchiver:
    extension = '.tar.gz'

    def __init__(self, success=True, error=None, raises=None):
        self.success = success
        self.error = error
        self.raises = raises
        self.builds = []

    def build(self, output_path, sources):
        self.builds.append((output_path, sources))
        if self.raises is not None:
            raise self.raises
        if not self.success:
            return ArchiveResult(False, error=self.error or 'tar failed')
        return ArchiveResult(True, path=output_path, size_bytes=1234)


class FakeNotifier:
    def __init__(self):
        self.summaries = []
        self.alerts = []

    def send_run_summary(self, summary):
        self.summaries.append(summary)
        return []

    def send_critical_alert(self, stack, workdir, services):
        self.alerts.append((stack, Path(workdir), frozenset(services)))
        return []


@pytest.fixture
def make_config(tmp_path):
    def _make(**overrides):
        values = dict(
            hostname='testhost',
            stacks_base=tmp_path / 'stacks',
            appdata_root=tmp_path / 'appdata',
            backup_root=tmp_path / 'backups',
            lock_dir=tmp_path / 'run',
            log_file=None,
            restart_retry_delay=0,
            restart_settle_delay=0,
            require_root=False,
            min_free_gb=0,
            safety_backup_dir=tmp_path / 'safety',
        )
        values.update(overrides)
        cfg = BackupConfig(**values)
        cfg.stacks_root.mkdir(parents=True, exist_ok=True)
        cfg.appdata_root.mkdir(parents=True, exist_ok=True)
        return cfg
    return _make


@pytest.fixture
def make_stack(make_config):
    """Create a stack directory (and optionally its data) below a config's roots."""
    def _make(config, name, appdata=True, services_text=None, env=None, data=None,
              compose_name='compose.yaml'):
        stack_dir = config.stacks_root / name
        stack_dir.mkdir(parents=True, exist_ok=True)
        if services_text is None:
            volume = f"{config.appdata_root}/{name}:/data" if appdata else './data:/data'
            services_text = f"services:\n  app:\n    image: {name}:latest\n    volumes:\n      - {volume}\n"
        (stack_dir / compose_name).write_text(services_text)
        if env is not None:
            (stack_dir / '.env').write_text(env)
        if data is not None:
            data_dir = config.appdata_root / name
            data_dir.mkdir(parents=True, exist_ok=True)
            for rel, content in data.items():
                p = data_dir / rel
                p.parent.mkdir(parents=True, exist_ok=True)
                if isinstance(content, bytes):
                    p.write_bytes(content)
                else:
                    p.write_text(content)
        return stack_dir
    return _make
