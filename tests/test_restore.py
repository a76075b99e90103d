import io
import tarfile

import pytest

from stackbackup import restore as restore_mod
from stackbackup.errors import RestoreAborted, RestoreError
from stackbackup.restore import (
    Resolution,
    RestoreConflict,
    create_safety_copy,
    evaluate_conflict,
    parse_resolution,
    preview_archive,
    resolve_conflict,
    restore_stack,
)
from conftest import FakeRuntime, requires_gzip, requires_tar

HOST = 'testhost'


def _add(tf, name, data=None):
    info = tarfile.TarInfo(name)
    if data is None:
        info.type = tarfile.DIRTYPE
        info.mode = 0o755
        tf.addfile(info)
        return
    info.size = len(data)
    info.mode = 0o644
    tf.addfile(info, io.BytesIO(data))


def _make_archive(path, stack='web'):
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, 'w:gz') as tf:
        _add(tf, 'compose.yaml', b'services:\n  app:\n    image: nginx\n')
        _add(tf, '.env', b'TOKEN=restored\n')
        _add(tf, f'{stack}')
        _add(tf, f'{stack}/config')
        _add(tf, f'{stack}/config/app.ini', b'restored=1\n')
    return path


def _archive(config, stack='web'):
    return _make_archive(config.backup_root / HOST / '20250101_020000' / f'{stack}.tar.gz', stack)


def test_parse_resolution_aliases():
    assert parse_resolution('backup_first') is Resolution.BACKUP_THEN_OVERWRITE
    assert parse_resolution('backup-then-overwrite') is Resolution.BACKUP_THEN_OVERWRITE
    assert parse_resolution('cancel') is Resolution.ABORT
    assert parse_resolution(None) is None
    with pytest.raises(ValueError):
        parse_resolution('yolo')


def test_no_conflict_resolves_clean():
    conflict = RestoreConflict(False, False, False)
    assert resolve_conflict(conflict, policy='overwrite') is Resolution.CLEAN


def test_conflict_without_policy_aborts():
    conflict = RestoreConflict(True, False, False)
    assert resolve_conflict(conflict) is Resolution.ABORT


def test_prompt_wins_over_policy():
    conflict = RestoreConflict(True, True, True)
    choice = resolve_conflict(conflict, policy='overwrite', prompt=lambda c: Resolution.BACKUP_THEN_OVERWRITE)
    assert choice is Resolution.BACKUP_THEN_OVERWRITE
    assert resolve_conflict(conflict, prompt=lambda c: None) is Resolution.ABORT


def test_evaluate_conflict(make_config, make_stack):
    config = make_config()
    stack_dir = make_stack(config, 'web', data={'a': '1'})
    conflict = evaluate_conflict(stack_dir, config.appdata_root / 'web', FakeRuntime(running={'web': {'app'}}))
    assert conflict == RestoreConflict(True, True, True)
    assert conflict.describe() == [
        'stack directory already exists',
        'stack has running containers',
        'appdata directory already exists',
    ]

    runtime = FakeRuntime()
    missing = evaluate_conflict(config.stacks_root / 'ghost', config.appdata_root / 'ghost', runtime)
    assert not missing.has_conflict
    assert runtime.calls == []


def test_safety_copy(make_config, make_stack, tmp_path):
    config = make_config()
    stack_dir = make_stack(config, 'web', data={'config/app.ini': 'old=1\n'}, env='TOKEN=old\n')

    target = create_safety_copy(stack_dir, config.appdata_root / 'web', tmp_path / 'safe', '20250102_030000')

    assert target == tmp_path / 'safe' / 'docker-restore-backup-20250102_030000'
    assert (target / 'stack' / '.env').read_text() == 'TOKEN=old\n'
    assert (target / 'appdata' / 'config' / 'app.ini').read_text() == 'old=1\n'


def test_safety_copy_failure_raises(make_config, make_stack, tmp_path):
    config = make_config()
    stack_dir = make_stack(config, 'web', data={'a': '1'})
    (tmp_path / 'safe' / 'docker-restore-backup-x').mkdir(parents=True)
    with pytest.raises(RestoreError):
        create_safety_copy(stack_dir, config.appdata_root / 'web', tmp_path / 'safe', 'x')


def test_abort_changes_nothing(make_config, make_stack):
    config = make_config()
    stack_dir = make_stack(config, 'web', data={'config/app.ini': 'old=1\n'})
    runtime = FakeRuntime(running={'web': {'app'}})

    with pytest.raises(RestoreAborted):
        restore_stack(config, runtime, _archive(config), HOST, 'web', Resolution.ABORT)

    assert runtime.calls == []
    assert (config.appdata_root / 'web' / 'config' / 'app.ini').read_text() == 'old=1\n'
    assert (stack_dir / '.env').exists() is False


@requires_tar
@requires_gzip
def test_clean_restore_and_start(make_config):
    config = make_config()
    runtime = FakeRuntime()

    result = restore_stack(config, runtime, _archive(config), HOST, 'web', Resolution.CLEAN, start=True)

    stack_dir = config.stacks_root / 'web'
    assert (stack_dir / 'compose.yaml').is_file()
    assert (stack_dir / '.env').read_text() == 'TOKEN=restored\n'
    assert (config.appdata_root / 'web' / 'config' / 'app.ini').read_text() == 'restored=1\n'
    assert result.started is True
    assert runtime.calls == [('start', 'web', frozenset())]


@requires_tar
@requires_gzip
def test_backup_then_overwrite_keeps_safety_copy(make_config, make_stack):
    config = make_config()
    make_stack(config, 'web', data={'config/app.ini': 'old=1\n', 'stale.txt': 'gone'}, env='TOKEN=old\n')
    runtime = FakeRuntime(running={'web': {'app'}})

    result = restore_stack(config, runtime, _archive(config), HOST, 'web', Resolution.BACKUP_THEN_OVERWRITE)

    assert result.safety_dir is not None
    assert result.safety_dir.parent == config.safety_backup_dir
    assert (result.safety_dir / 'appdata' / 'stale.txt').read_text() == 'gone'
    assert (result.safety_dir / 'stack' / '.env').read_text() == 'TOKEN=old\n'
    data_dir = config.appdata_root / 'web'
    assert (data_dir / 'config' / 'app.ini').read_text() == 'restored=1\n'
    assert not (data_dir / 'stale.txt').exists()
    assert runtime.calls_of('stop') == [('stop', 'web')]
    assert runtime.calls_of('start') == []
    assert result.started is None


def test_safety_copy_failure_leaves_target_untouched(make_config, make_stack, monkeypatch):
    config = make_config()
    make_stack(config, 'web', data={'config/app.ini': 'old=1\n'})
    runtime = FakeRuntime(running={'web': {'app'}})

    def broken_copy(*args, **kwargs):
        raise OSError('no space left on device')

    monkeypatch.setattr(restore_mod.shutil, 'copytree', broken_copy)

    with pytest.raises(RestoreError):
        restore_stack(config, runtime, _archive(config), HOST, 'web', Resolution.BACKUP_THEN_OVERWRITE)

    assert runtime.calls == []
    assert (config.appdata_root / 'web' / 'config' / 'app.ini').read_text() == 'old=1\n'


@requires_tar
@requires_gzip
def test_archive_without_data_tree_leaves_target_untouched(make_config, make_stack):
    config = make_config()
    make_stack(config, 'web', data={'important.db': 'keep'})
    runtime = FakeRuntime(running={'web': {'app'}})
    path = config.backup_root / HOST / '20250101_020000' / 'web.tar.gz'
    path.parent.mkdir(parents=True)
    with tarfile.open(path, 'w:gz') as tf:
        _add(tf, 'compose.yaml', b'services: {}\n')

    with pytest.raises(RestoreError) as exc:
        restore_stack(config, runtime, path, HOST, 'web', Resolution.OVERWRITE)

    assert 'web/' in str(exc.value)
    assert (config.appdata_root / 'web' / 'important.db').read_text() == 'keep'
    assert runtime.calls == []


def test_missing_archive(make_config, tmp_path):
    config = make_config()
    with pytest.raises(RestoreError):
        restore_stack(config, FakeRuntime(), tmp_path / 'nope.tar.gz', HOST, 'web', Resolution.CLEAN)


@requires_tar
@requires_gzip
def test_preview_archive(tmp_path):
    path = _make_archive(tmp_path / 'web.tar.gz')
    members, total = preview_archive(path, limit=2)
    assert members == ['compose.yaml', '.env']
    assert total == 5
