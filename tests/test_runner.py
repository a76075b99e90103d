import pytest

from stackbackup import runner as runner_mod
from stackbackup.errors import LockError, PreflightError
from stackbackup.locking import run_lock
from stackbackup.orchestrator import StackBackupOrchestrator
from stackbackup.runner import BackupRunner
from stackbackup.summary import Outcome
from conftest import FakeArchiver, FakeNotifier, FakeRuntime


def _runner(config, runtime, archiver=None, notifier=None, **kwargs):
    return BackupRunner(config, runtime=runtime, archiver=archiver or FakeArchiver(),
                        notifier=notifier or FakeNotifier(), **kwargs)


def test_run_processes_every_stack(make_config, make_stack):
    config = make_config()
    make_stack(config, 'web', data={'a': '1'})
    make_stack(config, 'db', appdata=False)
    make_stack(config, 'idle', data={'a': '1'})
    runtime = FakeRuntime(running={'web': {'app'}, 'db': {'postgres'}})
    notifier = FakeNotifier()

    summary = _runner(config, runtime, notifier=notifier).run()

    outcomes = {r.stack: r.outcome for r in summary.results}
    assert outcomes == {
        'db': Outcome.SKIPPED_NO_DATA_MOUNT,
        'idle': Outcome.SKIPPED_NOT_RUNNING,
        'web': Outcome.SUCCEEDED,
    }
    assert summary.exit_code == 0
    assert notifier.summaries == [summary]
    assert summary.finished_at is not None
    assert not config.lock_path('backup').exists()


def test_failure_sets_exit_code(make_config, make_stack):
    config = make_config()
    make_stack(config, 'web', data={'a': '1'})
    runtime = FakeRuntime(running={'web': {'app'}}, stop_ok=False)

    summary = _runner(config, runtime).run()

    assert summary.failed == 1
    assert summary.exit_code == 1


def test_preflight_failure_touches_nothing(make_config, make_stack, monkeypatch):
    config = make_config()
    make_stack(config, 'web', data={'a': '1'})
    runtime = FakeRuntime(running={'web': {'app'}})
    notifier = FakeNotifier()

    def fail(cfg, rt):
        raise PreflightError('Pre-flight checks failed: no docker')

    monkeypatch.setattr(runner_mod, 'run_preflight', fail)

    with pytest.raises(PreflightError):
        _runner(config, runtime, notifier=notifier).run()

    assert runtime.calls == []
    assert notifier.summaries == []
    assert not config.lock_path('backup').exists()


def test_docker_down_fails_preflight(make_config, make_stack):
    config = make_config()
    make_stack(config, 'web', data={'a': '1'})
    runtime = FakeRuntime(running={'web': {'app'}}, ping_ok=False)

    with pytest.raises(PreflightError) as exc:
        _runner(config, runtime).run()

    assert 'Docker daemon' in str(exc.value)
    assert runtime.calls == []


def test_unexpected_error_recorded_and_run_continues(make_config, make_stack, monkeypatch):
    config = make_config()
    make_stack(config, 'alpha', data={'a': '1'})
    make_stack(config, 'beta', data={'a': '1'})
    runtime = FakeRuntime(running={'alpha': {'app'}, 'beta': {'app'}})
    real_stop = runtime.stop

    def stop(workdir):
        if workdir.name == 'alpha':
            raise OSError('socket went away')
        return real_stop(workdir)

    monkeypatch.setattr(runtime, 'stop', stop)

    summary = _runner(config, runtime).run()

    outcomes = {r.stack: r.outcome for r in summary.results}
    assert outcomes == {'alpha': Outcome.FAILED_TO_STOP, 'beta': Outcome.SUCCEEDED}
    assert summary.results[0].error == 'unexpected error: socket went away'
    assert summary.results[0].last_state == 'stopping'


def test_concurrent_run_is_refused(make_config, make_stack):
    config = make_config()
    make_stack(config, 'web', data={'a': '1'})
    runtime = FakeRuntime(running={'web': {'app'}})

    with run_lock(config.lock_path('backup')):
        with pytest.raises(LockError):
            _runner(config, runtime).run()
    assert runtime.calls == []


def test_manual_run_uses_own_lock_and_selection(make_config, make_stack):
    config = make_config()
    make_stack(config, 'web', data={'a': '1'})
    make_stack(config, 'media', data={'a': '1'})
    runtime = FakeRuntime(running={'web': {'app'}, 'media': {'app'}})

    with run_lock(config.lock_path('backup')):
        summary = _runner(config, runtime, run_kind='manual', stack_names=['media', 'ghost']).run()

    outcomes = {r.stack: r.outcome for r in summary.results}
    assert outcomes == {'media': Outcome.SUCCEEDED, 'ghost': Outcome.SKIPPED_NO_DESCRIPTOR}


def test_archives_land_in_timestamped_set(make_config, make_stack):
    config = make_config()
    make_stack(config, 'web', data={'a': '1'})
    runtime = FakeRuntime(running={'web': {'app'}})

    summary = _runner(config, runtime).run()

    path = summary.results[0].archive_path
    assert path == config.run_dir(summary.timestamp) / 'web.tar.gz'


def test_notifier_error_does_not_fail_run(make_config, make_stack):
    config = make_config()
    make_stack(config, 'web', data={'a': '1'})

    class BrokenNotifier(FakeNotifier):
        def send_run_summary(self, summary):
            raise RuntimeError('smtp down')

    summary = _runner(config, FakeRuntime(running={'web': {'app'}}), notifier=BrokenNotifier()).run()
    assert summary.exit_code == 0


def test_dry_run_takes_no_lock_and_touches_nothing(make_config, make_stack, monkeypatch):
    config = make_config()
    make_stack(config, 'web', data={'a.bin': b'x' * 2048})
    make_stack(config, 'stopped', data={'a.bin': b'x' * 100})
    make_stack(config, 'db', appdata=False)
    runtime = FakeRuntime(running={'web': {'app', 'worker'}})

    def no_lock(path):
        raise AssertionError('dry run must not lock')

    monkeypatch.setattr(runner_mod, 'run_lock', no_lock)
    monkeypatch.setattr(StackBackupOrchestrator, 'backup_stack', no_lock)

    with run_lock(config.lock_path('backup')):
        report = _runner(config, runtime).dry_run()

    assert runtime.calls_of('stop') == [] and runtime.calls_of('start') == []
    assert [e.stack for e in report.would_backup] == ['stopped', 'web']
    assert [e.stack for e in report.would_skip] == ['db']
    assert report.estimated_bytes == 2148
    assert report.available_bytes is not None
    lines = report.lines()
    assert lines[0] == 'DRY RUN MODE - No changes will be made'
    assert '  ✓ web (2.0KB appdata, 2 running)' in lines
    assert '  ○ stopped (100.0B appdata, stopped)' in lines
    assert '  ○ db (skipped no data mount)' in lines
    assert lines[-1] == 'DRY RUN COMPLETE - No actions taken'


def test_manual_run_backs_up_stopped_stack(make_config, make_stack):
    config = make_config()
    make_stack(config, 'web', data={'a': '1'})
    make_stack(config, 'idle', data={'a': '1'})
    runtime = FakeRuntime(running={'web': {'app'}})

    summary = _runner(config, runtime, run_kind='manual').run()

    outcomes = {r.stack: r.outcome for r in summary.results}
    assert outcomes == {'idle': Outcome.SUCCEEDED, 'web': Outcome.SUCCEEDED}
    idle = next(r for r in summary.results if r.stack == 'idle')
    assert idle.archive_path == config.run_dir(summary.timestamp) / 'idle.tar.gz'
    assert runtime.calls_of('stop') == [('stop', 'web')]
    assert runtime.calls_of('start') == [('start', 'web', frozenset({'app'}))]
