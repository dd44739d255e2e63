import asyncio
import json
import logging

from pywebpush import WebPushException, webpush

from . import config
from .models import PushSubscription

logger = logging.getLogger(__name__)

PUSH_TTL_SECONDS = 24 * 60 * 60
GONE_STATUS_CODES = (404, 410)


class PushDeliveryError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def subscription_gone(self) -> bool:
        return self.status_code in GONE_STATUS_CODES


def enabled() -> bool:
    return bool(config.VAPID_PUBLIC_KEY and config.VAPID_PRIVATE_KEY)


def subscription_info(subscription: PushSubscription) -> dict:
    return {
        "endpoint": subscription.endpoint,
        "keys": {"p256dh": subscription.p256dh, "auth": subscription.auth},
    }


def _send_sync(info: dict, data: str) -> None:
    webpush(
        subscription_info=info,
        data=data,
        vapid_private_key=config.VAPID_PRIVATE_KEY,
        # pywebpush fills in "aud" and "exp" on the dict it is given.
        vapid_claims={"sub": config.VAPID_SUBJECT},
        ttl=PUSH_TTL_SECONDS,
    )


async def send_web_push(subscription: PushSubscription, payload: dict) -> None:
    """Deliver one JSON payload; raises ``PushDeliveryError`` on failure."""
    data = json.dumps(payload)
    try:
        await asyncio.to_thread(_send_sync, subscription_info(subscription), data)
    except WebPushException as exc:
        response = getattr(exc, "response", None)
        status_code = getattr(response, "status_code", None)
        logger.warning("Web push failed (subscription=%s, status=%s)", subscription.id, status_code)
        raise PushDeliveryError(str(exc), status_code=status_code) from exc
