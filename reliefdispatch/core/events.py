# reliefdispatch/core/events.py
import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional

from reliefdispatch.core.config import Settings, settings
from reliefdispatch.schemas import utcnow

logger = logging.getLogger(__name__)


def sign(body: Dict[str, Any], secret: str) -> str:
    msg = json.dumps(body, separators=(",", ":"), sort_keys=True, default=str).encode()
    return hmac.new(secret.encode(), msg, hashlib.sha256).hexdigest()


class EventEmitter:
    """
    Records platform events and queues signed webhook deliveries for the
    organization involved. Delivery itself happens elsewhere (outbox worker).

    emit() never raises: a broken event store must not undo an assignment.
    """

    def __init__(self, repo, cfg: Optional[Settings] = None):
        self.repo = repo
        self.cfg = cfg or settings

    async def emit(self, type_: str, data: Dict[str, Any], org_id: Optional[str] = None) -> None:
        try:
            evt = {
                "org_id": org_id,
                "type": type_,
                "data": data,
                "created_at": utcnow(),
            }
            await self.repo.insert_event(evt)
            if not org_id:
                return

            # fan-out to webhooks via outbox
            for hook in await self.repo.list_webhooks(org_id):
                body = {
                    "type": type_,
                    "org_id": org_id,
                    "data": data,
                    "created_at": evt["created_at"].isoformat(),
                }
                await self.repo.insert_outbox({
                    "org_id": org_id,
                    "target": hook["url"],
                    "body": body,
                    "sig": sign(body, self.cfg.webhook_secret),
                    "attempts": 0,
                    "max_attempts": 6,
                    "next_try_at": utcnow(),
                    "status": "pending",
                })
        except Exception as exc:
            logger.warning("event %s not recorded: %s", type_, exc)
