from dataclasses import dataclass
from typing import Optional


@dataclass
class AdapterResult:
    channel: str
    success: bool
    detail: Optional[str] = None


class AdapterBase:
    """A single notification channel."""

    channel = 'base'

    def send(self, title: str, body: str, critical: bool = False) -> AdapterResult:
        raise NotImplementedError()
