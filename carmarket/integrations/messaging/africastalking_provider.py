from __future__ import annotations

import requests

from carmarket.integrations.messaging.base import MessagingProvider, MessageResult
from carmarket.utils.phone import to_international


AFRICASTALKING_BASE = "https://api.africastalking.com/version1"
AFRICASTALKING_SANDBOX_BASE = "https://api.sandbox.africastalking.com/version1"


def _map_sms_error(status: int, message: str) -> str:
    msg = (message or "").lower()
    if status == 401 or status == 403:
        return "SMS_AUTH_FAILED"
    if status == 429:
        return "SMS_RATE_LIMITED"
    if status == 404 or status >= 500:
        return "SMS_PROVIDER_DOWN"
    if status in (400, 422):
        if "sender" in msg or "from" in msg:
            return "SMS_INVALID_SENDER"
        return "SMS_INVALID_RECIPIENT"
    return "SMS_PROVIDER_DOWN"


class AfricasTalkingMessagingProvider(MessagingProvider):
    name = "africastalking"

    def __init__(self, *, api_key: str, username: str, sender_id: str = ""):
        self.api_key = api_key
        self.username = username
        self.sender_id = sender_id
        self.base_url = AFRICASTALKING_SANDBOX_BASE if username == "sandbox" else AFRICASTALKING_BASE

    def send_sms(self, *, to: str, message: str, reference: str = "") -> MessageResult:
        form = {
            "username": self.username,
            "to": to_international(to),
            "message": message,
        }
        if self.sender_id:
            form["from"] = self.sender_id
        headers = {"apiKey": self.api_key, "Accept": "application/json"}
        try:
            r = requests.post(f"{self.base_url}/messaging", data=form, headers=headers, timeout=12)
            try:
                data = r.json() if r.content else {}
            except ValueError:
                data = {"body": r.text[:200]}
            if 200 <= r.status_code < 300:
                recipients = ((data.get("SMSMessageData") or {}).get("Recipients") or []) if isinstance(data, dict) else []
                first = recipients[0] if recipients else {}
                # The gateway answers 201 even when the recipient is rejected.
                if first and str(first.get("status") or "").lower() not in ("success", "sent", "queued"):
                    return MessageResult(
                        ok=False,
                        code="SMS_INVALID_RECIPIENT",
                        message=str(first.get("status") or "rejected")[:200],
                        raw=data,
                    )
                return MessageResult(ok=True, code="OK", message="sent", raw=data if isinstance(data, dict) else {"payload": data})
            detail = ""
            if isinstance(data, dict):
                detail = str(data.get("message") or data.get("error") or data.get("body") or "")
            return MessageResult(
                ok=False,
                code=_map_sms_error(r.status_code, detail),
                message=(detail or f"http_{r.status_code}")[:200],
                raw=data if isinstance(data, dict) else {"payload": data},
            )
        except requests.Timeout:
            return MessageResult.failed("SMS_PROVIDER_DOWN", "timeout")
        except requests.RequestException as e:
            return MessageResult.failed("SMS_PROVIDER_DOWN", str(e))
