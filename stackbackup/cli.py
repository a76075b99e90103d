"""Command line interface.

Usage:
  stackbackup backup [--dry-run]
  stackbackup manual STACK [STACK ...] [--dry-run]
  stackbackup restore --host HOST --timestamp TS --stack STACK [--policy P] [--start] [--interactive]
  stackbackup verify (--list | --verify | --stats) [--host HOST]
  stackbackup cleanup [--days N] [--dry-run]

Settings come from STACKBACKUP_* environment variables (see stackbackup.config).
"""
import argparse
import signal
import sys

from stackbackup import restore as restore_mod
from stackbackup import verify as verify_mod
from stackbackup.compose import ComposeRuntime
from stackbackup.config import CONFLICT_POLICIES, load_config
from stackbackup.errors import ConfigError, LockError, PreflightError, RestoreAborted, StackBackupError
from stackbackup.retention import cleanup_old_backups
from stackbackup.runner import BackupRunner
from stackbackup.utils import format_bytes, format_timestamp_label, get_logger, setup_logging

logger = get_logger(__name__)


def _terminate(signum, frame):
    # turn SIGTERM into SystemExit so context managers (run lock) clean up
    raise SystemExit(128 + signum)


def install_signal_handlers():
    signal.signal(signal.SIGTERM, _terminate)


def parse_args(argv):
    parser = argparse.ArgumentParser(prog='stackbackup', description='Docker Compose stack backup tooling')
    parser.add_argument('--log-level', help='Logging level (default: LOG_LEVEL env or INFO)')
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('backup', help='Back up all stacks of this host')
    p.add_argument('--dry-run', '-n', action='store_true', help='Show what would be backed up')

    p = sub.add_parser('manual', help='Back up selected stacks')
    p.add_argument('stacks', nargs='+', metavar='STACK')
    p.add_argument('--dry-run', '-n', action='store_true', help='Show what would be backed up')

    p = sub.add_parser('restore', help='Restore one stack from a backup set')
    p.add_argument('--host', required=True)
    p.add_argument('--timestamp', required=True, help='Backup set, e.g. 20250101_020000')
    p.add_argument('--stack', required=True)
    p.add_argument('--policy', choices=CONFLICT_POLICIES, help='Conflict resolution when the target exists')
    p.add_argument('--start', action='store_true', help='Start the stack after restoring')
    p.add_argument('--interactive', '-i', action='store_true', help='Ask how to resolve conflicts')

    p = sub.add_parser('verify', help='List, verify or summarize backups')
    group = p.add_mutually_exclusive_group(required=True)
    group.add_argument('--list', '-l', action='store_const', dest='action', const='list')
    group.add_argument('--verify', '-v', action='store_const', dest='action', const='verify')
    group.add_argument('--stats', '-s', action='store_const', dest='action', const='stats')
    p.add_argument('--host', help='Only this hostname')

    p = sub.add_parser('cleanup', help='Remove backup sets older than the retention period')
    p.add_argument('--days', type=int, help='Retention in days (default: STACKBACKUP_RETENTION_DAYS)')
    p.add_argument('--dry-run', '-n', action='store_true', help='Only report what would be removed')

    return parser.parse_args(argv)


def cmd_backup(config, args, run_kind='backup', stack_names=None):
    runner = BackupRunner(config, run_kind=run_kind, stack_names=stack_names)
    if args.dry_run:
        report = runner.dry_run()
        for line in report.lines():
            print(line)
        return 0
    summary = runner.run()
    return summary.exit_code


def prompt_resolution(conflict):
    """Ask the operator how to resolve restore conflicts on stdin."""
    print('\n⚠ Conflicts detected!')
    for line in conflict.describe():
        print(f"  - {line}")
    print('\nChoose how to proceed:')
    print('  1) Stop containers and overwrite everything (destructive)')
    print('  2) Backup existing data first, then restore')
    print('  3) Cancel restore')
    try:
        choice = input('Select option [3]: ').strip() or '3'
        if choice == '1':
            confirm = input('This will permanently overwrite existing data! Are you absolutely sure? [y/N]: ')
            if confirm.strip().lower() in ('y', 'yes'):
                return restore_mod.Resolution.OVERWRITE
            return restore_mod.Resolution.ABORT
    except EOFError:
        logger.warning('No answer on stdin; cancelling restore')
        return restore_mod.Resolution.ABORT
    if choice == '2':
        return restore_mod.Resolution.BACKUP_THEN_OVERWRITE
    return restore_mod.Resolution.ABORT


def cmd_restore(config, args, runtime=None, prompt=None):
    runtime = runtime or ComposeRuntime()
    archive = verify_mod.find_archive(config.backup_root, args.host, args.timestamp, args.stack)
    if archive is None:
        logger.error("No backup of %s found in %s/%s", args.stack, args.host, args.timestamp)
        return 1

    print(f"Restoring {args.stack} from {args.host}, {format_timestamp_label(args.timestamp)}")
    members, total = restore_mod.preview_archive(archive)
    print('Contents of backup:')
    for m in members:
        print(f"  {m}")
    if total > len(members):
        print(f"  ... and {total - len(members)} more files")

    stack_dir = config.stacks_base / args.host / args.stack
    data_dir = config.appdata_root / args.stack
    conflict = restore_mod.evaluate_conflict(stack_dir, data_dir, runtime)
    if args.interactive:
        prompt = prompt or prompt_resolution
    resolution = restore_mod.resolve_conflict(
        conflict,
        policy=args.policy or config.restore_conflict_policy,
        prompt=prompt,
    )
    try:
        result = restore_mod.restore_stack(
            config, runtime, archive, args.host, args.stack, resolution, start=args.start,
        )
    except RestoreAborted as e:
        logger.warning("%s", e)
        return 1
    if result.safety_dir:
        print(f"Safety backup of the previous state: {result.safety_dir}")
    if result.started is False:
        return 1
    return 0


def cmd_verify(config, args):
    root = config.backup_root
    if args.action == 'list':
        for host in verify_mod.list_hosts(root):
            if args.host and host != args.host:
                continue
            print(f"Host: {host}")
            for ts in verify_mod.list_backup_sets(root, host):
                set_dir = root / host / ts
                archives = verify_mod.list_stack_archives(set_dir)
                size = sum(a.stat().st_size for a in archives)
                print(f"  {ts} - {len(archives)} stacks - {format_bytes(size)}")
                for a in archives:
                    print(f"    - {a.name} ({format_bytes(a.stat().st_size)})")
            print()
        return 0

    if args.action == 'verify':
        report = verify_mod.verify_backups(root, args.host)
        for path in report.valid:
            print(f"  ✓ {path.relative_to(root)}")
        for path in report.invalid:
            print(f"  ✗ {path.relative_to(root)}")
        print(f"Total backups checked: {report.checked}")
        print(f"Valid: {len(report.valid)}")
        print(f"Invalid: {len(report.invalid)}")
        return 0 if report.ok else 1

    for stats in verify_mod.backup_stats(root, args.host):
        print(f"Host: {stats.host}")
        print(f"  Backup sets: {stats.backup_sets}")
        print(f"  Total backups: {stats.archives}")
        print(f"  Total size: {format_bytes(stats.total_bytes)}")
        if stats.oldest:
            print(f"  Oldest: {stats.oldest.strftime('%Y-%m-%d')}")
            print(f"  Newest: {stats.newest.strftime('%Y-%m-%d')}")
        print()
    return 0


def cmd_cleanup(config, args):
    days = config.retention_days if args.days is None else args.days
    if days < 0:
        raise ConfigError("--days cannot be negative")
    removed, freed = cleanup_old_backups(config.backup_root, days, dry_run=args.dry_run)
    verb = 'Would remove' if args.dry_run else 'Removed'
    print(f"{verb} {removed} backup sets ({format_bytes(freed)})")
    return 0


def main(argv=None):
    args = parse_args(sys.argv[1:] if argv is None else argv)

    try:
        config = load_config()
    except ConfigError as e:
        setup_logging(args.log_level)
        logger.error("Invalid configuration: %s", e)
        return 2

    setup_logging(args.log_level, config.log_file)
    install_signal_handlers()

    try:
        if args.command == 'backup':
            return cmd_backup(config, args)
        if args.command == 'manual':
            return cmd_backup(config, args, run_kind='manual', stack_names=args.stacks)
        if args.command == 'restore':
            return cmd_restore(config, args)
        if args.command == 'verify':
            return cmd_verify(config, args)
        return cmd_cleanup(config, args)
    except LockError as e:
        logger.error("%s", e)
        return 1
    except PreflightError as e:
        logger.error("%s, aborting", e)
        return 1
    except (StackBackupError, FileNotFoundError) as e:
        logger.error("%s", e)
        return 1
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return 130


if __name__ == '__main__':
    sys.exit(main())
