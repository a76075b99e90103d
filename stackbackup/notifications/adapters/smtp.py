"""SMTP adapter for sending plain-text emails using the run configuration."""
from typing import List, Optional
import smtplib
from email.message import EmailMessage

from stackbackup.notifications.adapters.base import AdapterBase, AdapterResult
from stackbackup.utils import get_logger

logger = get_logger(__name__)

SMTPS_PORT = 465


class SMTPAdapter(AdapterBase):
    channel = 'smtp'

    def __init__(self, server: Optional[str], from_addr: Optional[str], recipients: Optional[List[str]] = None,
                 port: int = 587, user: Optional[str] = None, password: Optional[str] = None,
                 use_tls: bool = True, subject_prefix: str = ''):
        self.server = server or None
        self.from_addr = from_addr or None
        self.recipients = list(recipients or [])
        self.port = port
        self.user = user or None
        self.password = password or None
        self.use_tls = use_tls
        self.subject_prefix = subject_prefix or ''

    @classmethod
    def from_config(cls, config):
        return cls(
            server=config.smtp_server,
            from_addr=config.email_from,
            recipients=config.email_to,
            port=config.smtp_port,
            user=config.smtp_user,
            password=config.smtp_password,
            use_tls=config.smtp_use_tls,
            subject_prefix=config.email_subject_prefix,
        )

    def subject_for(self, title: str, critical: bool = False) -> str:
        if critical:
            return f"[CRITICAL] {title}"
        if self.subject_prefix:
            return f"{self.subject_prefix} {title}"
        return title

    def _connect(self):
        if self.use_tls and self.port == SMTPS_PORT:
            return smtplib.SMTP_SSL(self.server, self.port, timeout=10)
        smtp = smtplib.SMTP(self.server, self.port, timeout=10)
        if self.use_tls:
            smtp.ehlo()
            smtp.starttls()
            smtp.ehlo()
        return smtp

    def send(self, title: str, body: str, critical: bool = False) -> AdapterResult:
        if not self.server or not self.from_addr:
            return AdapterResult(channel=self.channel, success=False, detail='SMTP server or from address not configured')
        if not self.recipients:
            return AdapterResult(channel=self.channel, success=False, detail='no recipients')

        msg = EmailMessage()
        msg['Subject'] = self.subject_for(title, critical)
        msg['From'] = self.from_addr
        msg['To'] = ', '.join(self.recipients)
        if critical:
            msg['X-Priority'] = '1'
        msg.set_content(body or '')

        try:
            smtp = self._connect()
            try:
                if self.user and self.password:
                    smtp.login(self.user, self.password)
                smtp.send_message(msg)
            finally:
                try:
                    smtp.quit()
                except Exception:
                    pass

            return AdapterResult(channel=self.channel, success=True)
        except Exception as e:
            logger.exception('SMTPAdapter: failed to send email: %s', e)
            return AdapterResult(channel=self.channel, success=False, detail=str(e))
