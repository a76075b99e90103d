"""Notification dispatch.

`Notifier` fans a message out to every configured channel. Delivery problems
are logged per channel and never raised: a broken webhook must not turn a
successful backup into a failed run.
"""
from typing import List, Optional

from stackbackup.notifications.adapters import AdapterBase, AdapterResult, GenericAdapter, SMTPAdapter
from stackbackup.notifications.formatters import build_critical_alert, build_summary_message
from stackbackup.utils import get_logger

logger = get_logger(__name__)


class Notifier:
    def __init__(self, adapters: Optional[List[AdapterBase]] = None, critical_adapters: Optional[List[AdapterBase]] = None,
                 notify_on_success: bool = True, notify_on_failure: bool = True, hostname: str = '', log_file=None):
        self.adapters = list(adapters or [])
        self.critical_adapters = list(critical_adapters) if critical_adapters is not None else list(self.adapters)
        self.notify_on_success = notify_on_success
        self.notify_on_failure = notify_on_failure
        self.hostname = hostname
        self.log_file = log_file

    @classmethod
    def from_config(cls, config):
        """Build the channels configured in a BackupConfig.

        Critical alerts go to `critical_urls` when set, otherwise to the normal
        URLs; email is used for both when SMTP is configured.
        """
        adapters = []
        critical = []
        if config.notify_urls:
            adapters.append(GenericAdapter(config.notify_urls))
        if config.critical_urls:
            critical.append(GenericAdapter(config.critical_urls))
        elif config.notify_urls:
            critical.append(adapters[0])
        if config.smtp_server and config.email_to:
            smtp = SMTPAdapter.from_config(config)
            adapters.append(smtp)
            critical.append(smtp)
        return cls(
            adapters=adapters,
            critical_adapters=critical,
            notify_on_success=config.notify_on_success,
            notify_on_failure=config.notify_on_failure,
            hostname=config.hostname,
            log_file=config.log_file,
        )

    def _dispatch(self, adapters, title, body, critical=False) -> List[AdapterResult]:
        results = []
        for adapter in adapters:
            try:
                res = adapter.send(title, body, critical=critical)
            except Exception as e:
                logger.exception("Notification channel %s raised: %s", getattr(adapter, 'channel', adapter), e)
                res = AdapterResult(channel=getattr(adapter, 'channel', 'unknown'), success=False, detail=str(e))
            if res.success:
                logger.info("Notification sent via %s", res.channel)
            else:
                logger.error("Failed to send notification via %s: %s", res.channel, res.detail)
            results.append(res)
        return results

    def should_send(self, status: str) -> bool:
        if status == 'success':
            return self.notify_on_success
        return self.notify_on_failure

    def send_run_summary(self, summary) -> List[AdapterResult]:
        """Send the end-of-run summary, honoring the success/failure switches."""
        if not self.should_send(summary.status):
            logger.debug("Notification for %s runs disabled", summary.status)
            return []
        if not self.adapters:
            logger.debug("No notification channels configured")
            return []
        title, body = build_summary_message(summary)
        return self._dispatch(self.adapters, title, body)

    def send_critical_alert(self, stack: str, workdir, services) -> List[AdapterResult]:
        """Send the high-priority restart failure alert (independent of the switches)."""
        title, body = build_critical_alert(stack, workdir, services, self.hostname, self.log_file)
        if not self.critical_adapters:
            logger.warning("No notification channels configured for critical alert: %s", title)
            return []
        return self._dispatch(self.critical_adapters, title, body, critical=True)
