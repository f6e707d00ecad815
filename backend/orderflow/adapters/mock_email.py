import logging
import time
from typing import Dict, List, Optional
from uuid import uuid4

from orderflow.config import settings

log = logging.getLogger(__name__)


class EmailDeliveryError(Exception):
    pass


class MockEmailSender:
    """
    Synchronous mock mail transport.

    send_email returns {message_id, status}; every message is kept in
    ``outbox`` so tests can inspect what went out. Setting ``fail_with``
    makes every send raise EmailDeliveryError.
    """

    def __init__(self, delay_ms: Optional[int] = None):
        delay_ms = settings.EMAIL_MOCK_DELAY_MS if delay_ms is None else delay_ms
        self.delay = delay_ms / 1000.0
        self.outbox: List[Dict] = []
        self.fail_with: Optional[str] = None

    def send_email(self, recipient: str, template: str, data: Optional[Dict] = None) -> Dict:
        time.sleep(self.delay)
        if self.fail_with:
            raise EmailDeliveryError(self.fail_with)
        message = {
            "message_id": f"msg-{uuid4().hex[:12]}",
            "recipient": recipient,
            "template": template,
            "data": dict(data or {}),
        }
        self.outbox.append(message)
        log.info("Email %s sent to %s (%s)", template, recipient, message["message_id"])
        return {"message_id": message["message_id"], "status": "sent"}

    def sent_to(self, recipient: str) -> List[Dict]:
        return [m for m in self.outbox if m["recipient"] == recipient]
