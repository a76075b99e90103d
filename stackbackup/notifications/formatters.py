"""Notification text builders.

Titles and bodies are plain text so the same message works for every apprise
service (ntfy, Pushover, webhooks) and for email.
"""
from typing import Iterable, Tuple

from stackbackup.compose import manual_command
from stackbackup.utils import format_bytes, local_now

SEPARATOR = '━━━━━━━━━━━━━━━━━━━━'


def build_summary_title(status: str, hostname: str) -> str:
    if status == 'success':
        return f"Docker Backup Complete - {hostname}"
    return f"Docker Backup FAILED - {hostname}"


def build_summary_body(status: str, backed_up: int, skipped: int, failed: int, total: int,
                       hostname: str, log_file=None, failures=None, total_bytes=None, when=None) -> str:
    """Build the run summary message from the outcome counts.

    `failures` is an optional list of (stack, reason) pairs appended to failure
    messages so the reader sees which stacks need attention.
    """
    when = when or local_now()
    failed_label = 'Failed' if status == 'success' else 'FAILED'
    headline = 'Backup completed successfully' if status == 'success' else 'Backup completed with errors'

    lines = [
        headline,
        '',
        f"✓ Successfully backed up: {backed_up}",
        f"⊘ Skipped: {skipped}",
        f"✗ {failed_label}: {failed}",
        SEPARATOR,
        f"Total stacks: {total}",
    ]
    if total_bytes:
        lines.append(f"Total size: {format_bytes(total_bytes)}")
    lines += [
        f"Host: {hostname}",
        f"Time: {when.strftime('%Y-%m-%d %H:%M:%S')}",
    ]

    if status != 'success':
        if failures:
            lines.append('')
            lines.append('Failed stacks:')
            for stack, reason in failures:
                lines.append(f"  - {stack}: {reason}")
        if log_file:
            lines.append('')
            lines.append(f"Check logs: {log_file}")

    return '\n'.join(lines)


def build_summary_message(summary) -> Tuple[str, str]:
    """Return (title, body) for a RunSummary."""
    failures = [(r.stack, r.error or r.outcome.label) for r in summary.failed_results]
    title = build_summary_title(summary.status, summary.hostname)
    body = build_summary_body(
        summary.status,
        summary.backed_up,
        summary.skipped,
        summary.failed,
        summary.total,
        summary.hostname,
        log_file=summary.log_file,
        failures=failures,
        total_bytes=summary.total_bytes,
        when=summary.finished_at,
    )
    return title, body


def build_critical_alert(stack: str, workdir, services: Iterable[str], hostname: str, log_file=None) -> Tuple[str, str]:
    """Return (title, body) for a stack that could not be restarted after its backup."""
    services = sorted(services or ())
    title = f"CRITICAL: Stack Failed to Restart - {hostname}"
    lines = [
        f"Stack '{stack}' failed to restart after backup!",
        '',
        '⚠️  IMMEDIATE ACTION REQUIRED ⚠️',
        '',
        f"Stack: {stack}",
        f"Host: {hostname}",
        f"Containers: {' '.join(services)}",
        '',
        'Manual restart command:',
        manual_command(workdir, services),
    ]
    if log_file:
        lines += ['', 'Check logs:', str(log_file)]
    return title, '\n'.join(lines)
