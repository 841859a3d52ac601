import logging
import os
import threading
from typing import Any, Callable, Dict, Optional

import requests

logger = logging.getLogger(__name__)

TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_PHONE_NUMBER = os.getenv("TWILIO_PHONE_NUMBER")
SMS_COUNTRY_CODE = os.getenv("SMS_COUNTRY_CODE", "+91")
TWILIO_API = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"

Handler = Callable[[str, Dict[str, Any]], None]


class NotificationHub:
    def __init__(self):
        self._lock = threading.Lock()
        self._handler: Optional[Handler] = None

    def subscribe(self, handler: Handler) -> Optional[Handler]:
        """Install `handler` as the active subscriber and return the one it replaced."""
        with self._lock:
            previous, self._handler = self._handler, handler
        return previous

    def unsubscribe(self, handler: Optional[Handler] = None) -> None:
        with self._lock:
            if handler is None or self._handler is handler:
                self._handler = None

    def publish(self, event: str, payload: Dict[str, Any]) -> bool:
        with self._lock:
            handler = self._handler
        if handler is None:
            return False
        try:
            handler(event, payload)
        except Exception:
            logger.exception("notification handler failed for %s", event)
            return False
        return True


def log_handler(event: str, payload: Dict[str, Any]) -> None:
    logger.info("[kitchen] %s %s", event, payload)


def sms_configured() -> bool:
    return bool(TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN and TWILIO_PHONE_NUMBER)


def send_sms(to: str, body: str) -> bool:
    if not to:
        return False
    if not sms_configured():
        logger.warning("SMS not configured, message to %s: %s", to, body)
        return False
    number = to if to.startswith("+") else f"{SMS_COUNTRY_CODE}{to}"
    try:
        resp = requests.post(
            TWILIO_API.format(sid=TWILIO_ACCOUNT_SID),
            data={"From": TWILIO_PHONE_NUMBER, "To": number, "Body": body},
            auth=(TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN),
            timeout=10,
        )
        resp.raise_for_status()
        return True
    except requests.RequestException as e:
        logger.error("SMS delivery to %s failed: %s", number, e)
        return False
