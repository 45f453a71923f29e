from __future__ import annotations

from chatrelay.config import Settings
from chatrelay.logging import get_logger, sanitize_error_message
from chatrelay.service.entitlements import entitlements_for
from chatrelay.service.errors import QuotaExceeded, RateLimitExceeded

logger = get_logger(__name__)

QUOTA_WINDOW_HOURS = 24


class QuotaGuard:
    """Rejects a chat turn before any model work when a daily ceiling is hit.

    Two independent ceilings are checked against a rolling 24h window:

    - messages sent, capped per user tier; a failed count query propagates
    - requests recorded in the usage log, capped by ``DAILY_REQUEST_LIMIT``;
      a failed count query is logged and treated as zero

    The check reads counts and then acts on them without holding a lock, so
    concurrent requests from one user may briefly overshoot a ceiling.
    """

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def check(self, user_id: str, user_type: str) -> None:
        limits = entitlements_for(self.settings, user_type)
        message_count = self.store.count_messages_by_user(
            user_id, window_hours=QUOTA_WINDOW_HOURS
        )
        if message_count >= limits.max_messages_per_day:
            logger.warning(
                "message_ceiling_reached",
                user_id=user_id,
                user_type=user_type,
                count=message_count,
                limit=limits.max_messages_per_day,
            )
            raise RateLimitExceeded(
                "You have exceeded your maximum number of messages for the day. Please try again later.",
                detail={"limit": limits.max_messages_per_day, "window_hours": QUOTA_WINDOW_HOURS},
            )

        try:
            usage_count = self.store.count_usage_by_user(
                user_id, window_hours=QUOTA_WINDOW_HOURS
            )
        except Exception as exc:
            logger.error(
                "usage_count_failed",
                user_id=user_id,
                error=sanitize_error_message(str(exc)),
            )
            usage_count = 0

        if usage_count >= self.settings.daily_request_limit:
            logger.warning(
                "daily_request_limit_reached",
                user_id=user_id,
                count=usage_count,
                limit=self.settings.daily_request_limit,
            )
            raise QuotaExceeded("Daily request limit exceeded.")
