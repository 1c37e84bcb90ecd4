"""Webhook alerts for blog syncs that failed."""

import logging
import os
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT = 10.0


def format_failure_message(blog_id: str, user_id: str, error_message: str,
                           context: Optional[dict] = None) -> str:
    lines = [
        "Blog sync failed",
        f"Blog: {blog_id}",
        f"Owner: {user_id}",
        f"Error: {error_message}",
    ]
    if context:
        lines.extend(f"{key}: {value}" for key, value in sorted(context.items()))
    return "\n".join(lines)


class NotificationService:
    """
    Posts sync failures to NOTIFICATION_WEBHOOK_URL.

    Off unless ENABLE_NOTIFICATIONS=true. Rate-limited passes are expected
    to recover on their own and are only logged.
    """

    def __init__(self, webhook_url: Optional[str] = None, enabled: Optional[bool] = None):
        if enabled is None:
            enabled = os.getenv("ENABLE_NOTIFICATIONS", "false").lower() == "true"
        self.enabled = enabled
        self.webhook_url = webhook_url or os.getenv("NOTIFICATION_WEBHOOK_URL")

    async def send_sync_failure_notification(
        self,
        blog_id: str,
        user_id: str,
        error_message: str,
        context: Optional[dict] = None
    ) -> bool:
        """
        Report a failed sync pass.

        Returns:
            True if the webhook accepted the alert
        """
        if not self.enabled:
            logger.debug(f"Notifications disabled, not reporting failure of blog {blog_id}")
            return False

        if context and context.get("error_code") == "rate_limited":
            logger.info(f"Blog {blog_id} was rate limited, no alert sent")
            return False

        message = format_failure_message(blog_id, user_id, error_message, context)
        logger.warning(f"Sync failure alert:\n{message}")

        if not self.webhook_url:
            return False

        payload: Dict[str, Any] = {
            "text": message,
            "blog_id": blog_id,
            "user_id": user_id,
            "error": error_message,
            "context": context or {},
        }
        try:
            async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT) as client:
                response = await client.post(self.webhook_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to deliver sync failure alert for blog {blog_id}: {e}")
            return False

        logger.info(f"Sync failure alert delivered for blog {blog_id}")
        return True
