import pytest

from stackbackup import preflight
from stackbackup.errors import PreflightError
from conftest import FakeRuntime


def test_all_checks_pass(make_config):
    config = make_config()
    preflight.run_preflight(config, FakeRuntime())
    assert config.backup_root.is_dir()
    assert not (config.backup_root / preflight.WRITE_TEST_NAME).exists()


def test_problems_are_collected(make_config, tmp_path):
    config = make_config(appdata_root=tmp_path / 'missing-appdata')
    config.appdata_root.rmdir()

    with pytest.raises(PreflightError) as exc:
        preflight.run_preflight(config, FakeRuntime(ping_ok=False))

    message = str(exc.value)
    assert 'Docker daemon' in message
    assert 'Appdata directory not found' in message


def test_insufficient_space(make_config, monkeypatch):
    config = make_config(min_free_gb=50)
    monkeypatch.setattr(preflight, 'available_gb', lambda path: 3)

    with pytest.raises(PreflightError) as exc:
        preflight.run_preflight(config, FakeRuntime())

    assert 'available 3GB, required 50GB' in str(exc.value)


def test_unwritable_destination(tmp_path):
    blocker = tmp_path / 'file'
    blocker.write_text('x')
    assert 'cannot be created' in preflight.check_destination_writable(blocker / 'backups')


def test_root_required(make_config, monkeypatch):
    config = make_config(require_root=True)
    monkeypatch.setattr(preflight.os, 'geteuid', lambda: 1000)

    with pytest.raises(PreflightError) as exc:
        preflight.run_preflight(config, FakeRuntime())

    assert 'must be run as root' in str(exc.value)
