from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class MessageResult:
    """Outcome of one SMS send. ``code`` is OK or one of the SMS_* failure codes."""

    ok: bool
    code: str = ""
    message: str = ""
    raw: dict = field(default_factory=dict)

    @classmethod
    def sent(cls, message: str = "sent", **raw) -> "MessageResult":
        return cls(ok=True, code="OK", message=message, raw=raw)

    @classmethod
    def failed(cls, code: str, message: str) -> "MessageResult":
        return cls(ok=False, code=code, message=(message or code)[:200])


class MessagingProvider(ABC):
    name = "unknown"

    @abstractmethod
    def send_sms(self, *, to: str, message: str, reference: str = "") -> MessageResult:
        """Send one text message to a Kenyan or international number."""
