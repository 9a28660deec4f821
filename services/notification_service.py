"""Notification dispatchers used by the tier engine.

Email rendering and transport live behind an outbound webhook (the mail
gateway); this module only decides what to send and posts it.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol

import httpx

from core.env import env_float, env_int, env_str
from core.timeutils import ensure_utc

if TYPE_CHECKING:  # pragma: no cover
    from services.account_repository import AccountSnapshot

logger = logging.getLogger(__name__)

NOTIFICATION_WEBHOOK_URL = env_str("TIER_NOTIFICATION_WEBHOOK_URL")
NOTIFICATION_WEBHOOK_TOKEN = env_str("TIER_NOTIFICATION_WEBHOOK_TOKEN")
NOTIFICATION_TIMEOUT = env_float("TIER_NOTIFICATION_TIMEOUT", 5.0, minimum=0.1)
NOTIFICATION_RETRIES = env_int("TIER_NOTIFICATION_RETRIES", 3, minimum=1)
BRAND_NAME = env_str("APP_BRAND_NAME") or "StokReal"


@dataclass
class NotificationResult:
    status: str
    error: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.status == "delivered"


class NotificationDispatcher(Protocol):
    """Outbound messages the tier engine can trigger."""

    def send_expiration_warning(self, account: "AccountSnapshot", days_left: int) -> NotificationResult:
        ...

    def send_grace_period(self, account: "AccountSnapshot", grace_period_end: datetime) -> NotificationResult:
        ...

    def send_tier_change(
        self,
        account: "AccountSnapshot",
        previous_plan: str,
        new_plan: str,
        reason: str,
    ) -> NotificationResult:
        ...

    def send_upgrade_prompt(self, account: "AccountSnapshot", feature: str) -> NotificationResult:
        ...


def _format_date(value: datetime) -> str:
    return ensure_utc(value).strftime("%Y-%m-%d %H:%M UTC")  # type: ignore[union-attr]


def build_message(kind: str, account: "AccountSnapshot", **data: Any) -> Dict[str, Any]:
    """Subject/body pair plus structured data for the mail gateway."""
    name = account.full_name or account.email
    if kind == "expiration_warning":
        days_left = data["days_left"]
        unit = "day" if days_left == 1 else "days"
        subject = f"[{BRAND_NAME}] Your Premium plan expires in {days_left} {unit}"
        body = f"Hi {name}, your Premium subscription expires in {days_left} {unit}. Renew to keep Premium features."
    elif kind == "grace_period":
        grace_end = data["grace_period_end"]
        subject = f"[{BRAND_NAME}] Your Premium plan has expired"
        body = (
            f"Hi {name}, your Premium subscription has expired. Premium features stay available "
            f"until {_format_date(grace_end)}; renew before then to avoid a downgrade."
        )
        data = {**data, "grace_period_end": ensure_utc(grace_end).isoformat()}  # type: ignore[union-attr]
    elif kind == "tier_change":
        subject = f"[{BRAND_NAME}] Your plan changed to {str(data['new_plan']).title()}"
        body = (
            f"Hi {name}, your plan changed from {str(data['previous_plan']).title()} "
            f"to {str(data['new_plan']).title()} ({data['reason']})."
        )
    elif kind == "upgrade_prompt":
        subject = f"[{BRAND_NAME}] You've reached your {data['feature']} limit"
        body = f"Hi {name}, you've reached the Free plan limit for {data['feature']}. Upgrade to Premium for more."
    else:
        raise ValueError(f"Unknown notification kind: {kind}")
    return {
        "type": kind,
        "recipient": account.email,
        "account_id": str(account.id),
        "subject": subject,
        "body": body,
        "data": data,
    }


class WebhookNotificationDispatcher:
    """Posts each notification as JSON to the mail gateway webhook."""

    def __init__(
        self,
        url: str,
        *,
        token: Optional[str] = None,
        timeout: float = NOTIFICATION_TIMEOUT,
        max_attempts: int = NOTIFICATION_RETRIES,
    ) -> None:
        if not url.startswith(("http://", "https://")):
            raise ValueError(f"Unsupported notification webhook URL: {url}")
        self._url = url
        self._headers = {"Authorization": f"Bearer {token}"} if token else None
        self._timeout = timeout
        self._max_attempts = max_attempts

    def send_expiration_warning(self, account: "AccountSnapshot", days_left: int) -> NotificationResult:
        return self._send(build_message("expiration_warning", account, days_left=days_left))

    def send_grace_period(self, account: "AccountSnapshot", grace_period_end: datetime) -> NotificationResult:
        return self._send(build_message("grace_period", account, grace_period_end=grace_period_end))

    def send_tier_change(
        self,
        account: "AccountSnapshot",
        previous_plan: str,
        new_plan: str,
        reason: str,
    ) -> NotificationResult:
        return self._send(
            build_message(
                "tier_change",
                account,
                previous_plan=str(previous_plan),
                new_plan=str(new_plan),
                reason=str(reason),
            )
        )

    def send_upgrade_prompt(self, account: "AccountSnapshot", feature: str) -> NotificationResult:
        return self._send(build_message("upgrade_prompt", account, feature=feature))

    def _send(self, payload: Dict[str, Any]) -> NotificationResult:
        result = _post_with_backoff(
            self._url,
            payload,
            headers=self._headers,
            timeout=self._timeout,
            max_attempts=self._max_attempts,
            result_metadata={"type": payload["type"], "account_id": payload["account_id"]},
        )
        if result.ok:
            logger.info("Tier notification %s sent to account %s", payload["type"], payload["account_id"])
        return result


class LoggingNotificationDispatcher:
    """Dispatcher for environments without a mail gateway; only logs."""

    def send_expiration_warning(self, account: "AccountSnapshot", days_left: int) -> NotificationResult:
        return self._log(build_message("expiration_warning", account, days_left=days_left))

    def send_grace_period(self, account: "AccountSnapshot", grace_period_end: datetime) -> NotificationResult:
        return self._log(build_message("grace_period", account, grace_period_end=grace_period_end))

    def send_tier_change(
        self,
        account: "AccountSnapshot",
        previous_plan: str,
        new_plan: str,
        reason: str,
    ) -> NotificationResult:
        return self._log(
            build_message(
                "tier_change",
                account,
                previous_plan=str(previous_plan),
                new_plan=str(new_plan),
                reason=str(reason),
            )
        )

    def send_upgrade_prompt(self, account: "AccountSnapshot", feature: str) -> NotificationResult:
        return self._log(build_message("upgrade_prompt", account, feature=feature))

    @staticmethod
    def _log(payload: Dict[str, Any]) -> NotificationResult:
        logger.info("Tier notification (log only) %s -> %s: %s", payload["type"], payload["recipient"], payload["subject"])
        return NotificationResult(status="delivered", metadata={"type": payload["type"], "transport": "log"})


def build_notification_dispatcher(url: Optional[str] = None) -> NotificationDispatcher:
    target = url if url is not None else NOTIFICATION_WEBHOOK_URL
    if target:
        return WebhookNotificationDispatcher(target, token=NOTIFICATION_WEBHOOK_TOKEN)
    logger.warning("TIER_NOTIFICATION_WEBHOOK_URL not set; tier notifications will only be logged.")
    return LoggingNotificationDispatcher()


def _post_with_backoff(
    url: str,
    payload: dict,
    *,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = NOTIFICATION_TIMEOUT,
    max_attempts: int = NOTIFICATION_RETRIES,
    result_metadata: Optional[Dict[str, Any]] = None,
) -> NotificationResult:
    delay = 0.5
    attempts = max(1, max_attempts)
    error_message = "unknown error"
    for attempt in range(1, attempts + 1):
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(url, json=payload, headers=headers)
                response.raise_for_status()
            return NotificationResult(status="delivered", metadata=result_metadata)
        except httpx.HTTPStatusError as exc:
            logger.warning("Notification HTTP error (attempt %s/%s): %s", attempt, attempts, exc.response.text)
            error_message = exc.response.text
            if exc.response.status_code < 500:
                break
        except httpx.RequestError as exc:
            logger.warning("Notification request error (attempt %s/%s): %s", attempt, attempts, exc)
            error_message = str(exc)
        if attempt < attempts:
            time.sleep(delay)
            delay *= 2
    return NotificationResult(status="failed", error=error_message, metadata=result_metadata)


__all__ = [
    "LoggingNotificationDispatcher",
    "NotificationDispatcher",
    "NotificationResult",
    "WebhookNotificationDispatcher",
    "build_message",
    "build_notification_dispatcher",
]
