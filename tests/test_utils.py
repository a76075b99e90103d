import logging
import re
from datetime import datetime

from stackbackup import utils


def test_filename_timestamp_format():
    ts = utils.filename_timestamp()
    assert re.match(r'^\d{8}_\d{6}$', ts)


def test_filename_timestamp_sorts_chronologically():
    a = utils.filename_timestamp(datetime(2025, 1, 9, 23, 59, 59))
    b = utils.filename_timestamp(datetime(2025, 1, 10, 0, 0, 0))
    assert a < b


def test_format_timestamp_label():
    assert utils.format_timestamp_label('20251225_182530') == 'December 25, 2025 at 18:25:30'
    assert utils.format_timestamp_label('not-a-ts') == 'not-a-ts'


def test_format_bytes():
    assert utils.format_bytes(None) == 'N/A'
    assert utils.format_bytes(512) == '512.0B'
    assert utils.format_bytes(10 * 1024 * 1024) == '10.0MB'


def test_format_duration():
    assert utils.format_duration(5) == '5s'
    assert utils.format_duration(125) == '2m 5s'
    assert utils.format_duration(3700) == '1h 1m'


def test_dir_is_empty_counts_hidden_files(tmp_path):
    d = tmp_path / 'd'
    d.mkdir()
    assert utils.dir_is_empty(d)
    (d / '.hidden').write_text('x')
    assert not utils.dir_is_empty(d)


def test_get_dir_size_skips_symlinks(tmp_path):
    (tmp_path / 'a').write_bytes(b'x' * 100)
    (tmp_path / 'sub').mkdir()
    (tmp_path / 'sub' / 'b').write_bytes(b'y' * 50)
    (tmp_path / 'link').symlink_to(tmp_path / 'a')
    assert utils.get_dir_size(tmp_path) == 150


def test_setup_logging_adds_file_handler(tmp_path, monkeypatch):
    root = logging.getLogger()
    saved = root.handlers[:]
    saved_level = root.level
    monkeypatch.setattr(root, 'handlers', [])
    try:
        log_file = tmp_path / 'logs' / 'backup.log'
        utils.setup_logging('DEBUG', log_file)
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 2
        utils.get_logger('stackbackup.test').info('hello file')
        for h in root.handlers:
            h.flush()
        assert 'hello file' in log_file.read_text()
    finally:
        for h in root.handlers:
            h.close()
        root.handlers = saved
        root.setLevel(saved_level)
