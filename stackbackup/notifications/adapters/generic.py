import time
import traceback
from typing import List, Optional, Tuple

import apprise

from .base import AdapterBase, AdapterResult


def _make_apobj(urls: Optional[List[str]] = None) -> Tuple[object, int]:
    apobj = apprise.Apprise()
    added = 0
    for u in (urls or []):
        try:
            if apobj.add(u):
                added += 1
        except Exception:
            pass
    return apobj, added


def _notify_with_retry(apobj: object, title: str, body: str, notify_type: object = None) -> Tuple[bool, Optional[str]]:
    notify_type = notify_type or apprise.NotifyType.INFO
    try:
        res = apobj.notify(title=title, body=body, notify_type=notify_type)
        return bool(res), None
    except Exception:
        # one retry after a short pause
        first_tb = traceback.format_exc()
        try:
            time.sleep(0.5)
            res = apobj.notify(title=title, body=body, notify_type=notify_type)
            return bool(res), None
        except Exception:
            retry_tb = traceback.format_exc()
            return False, f"first: {first_tb.strip()} | retry: {retry_tb.strip()}"


class GenericAdapter(AdapterBase):
    """Send to configured Apprise URLs (ntfy, Pushover, webhooks, mailto, ...)."""

    channel = 'apprise'

    def __init__(self, urls: Optional[List[str]] = None):
        self.urls = list(urls or [])

    def send(self, title: str, body: str, critical: bool = False) -> AdapterResult:
        apobj, added = _make_apobj(self.urls)
        if added == 0:
            return AdapterResult(channel=self.channel, success=False, detail='no apprise URLs added')

        notify_type = apprise.NotifyType.FAILURE if critical else apprise.NotifyType.INFO
        ok, detail = _notify_with_retry(apobj, title=title, body=body, notify_type=notify_type)
        if ok:
            return AdapterResult(channel=self.channel, success=True)
        return AdapterResult(channel=self.channel, success=False, detail=detail or 'apprise reported a delivery failure')
