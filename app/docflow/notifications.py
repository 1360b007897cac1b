"""
Outbound workflow notifications.

The workflow only emits events, after the transition has committed; delivery
(e-mail, chat, webhooks) belongs to whatever sits behind the configured
Notifier.
"""
from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)

SUBMITTED = "submitted"
APPROVED = "approved"
CHANGES_REQUESTED = "changes_requested"
PUBLISHED = "published"
ARCHIVED = "archived"
CREATED = "created"
ROLLED_BACK = "rolled_back"


class NotificationError(RuntimeError):
    pass


@dataclass(frozen=True)
class WorkflowEvent:
    name: str
    document_id: int
    version_id: int
    actor_id: int | None
    from_status: str | None
    to_status: str
    occurred_at: datetime
    comments: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.name,
            "document_id": self.document_id,
            "version_id": self.version_id,
            "actor_id": self.actor_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "occurred_at": self.occurred_at.isoformat(),
            "comments": self.comments,
            "metadata": self.metadata,
        }


class Notifier:
    def notify(self, event: WorkflowEvent) -> None:
        raise NotImplementedError


class NullNotifier(Notifier):
    def notify(self, event: WorkflowEvent) -> None:
        return None


class LogNotifier(Notifier):
    def notify(self, event: WorkflowEvent) -> None:
        logger.info(
            "workflow event=%s document_id=%s version_id=%s actor_id=%s %s->%s",
            event.name,
            event.document_id,
            event.version_id,
            event.actor_id,
            event.from_status,
            event.to_status,
        )


@dataclass(frozen=True)
class WebhookNotifier(Notifier):
    url: str
    timeout_seconds: int = 10
    retries: int = 2

    def notify(self, event: WorkflowEvent) -> None:
        body = json.dumps(event.to_dict(), sort_keys=True).encode("utf-8")
        last_err: Exception | None = None
        for attempt in range(self.retries + 1):
            try:
                req = urllib.request.Request(self.url, data=body, method="POST")
                req.add_header("Content-Type", "application/json")
                req.add_header("Accept", "application/json")
                with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                    resp.read()
                return
            except urllib.error.HTTPError as e:
                if e.code < 500 and e.code != 429:
                    raise NotificationError(f"HTTP {e.code} from notification webhook") from e
                last_err = e
            except (urllib.error.URLError, TimeoutError, OSError) as e:
                last_err = e
            except ValueError as e:
                # Malformed URL; retrying cannot help.
                raise NotificationError(f"Invalid notification webhook URL {self.url!r}: {e}") from e
            if attempt < self.retries:
                time.sleep(min(attempt + 1, 5))
        raise NotificationError(f"Notification webhook failed after retries: {last_err}")


def notifier_from_config(config: dict) -> Notifier:
    backend = (config.get("NOTIFY_BACKEND") or "log").strip().lower()
    if backend == "webhook":
        url = (config.get("NOTIFY_WEBHOOK_URL") or "").strip()
        if not url:
            raise NotificationError("NOTIFY_BACKEND=webhook requires NOTIFY_WEBHOOK_URL.")
        parts = urllib.parse.urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise NotificationError(f"NOTIFY_WEBHOOK_URL must be an http(s) URL (got {url!r}).")
        return WebhookNotifier(url=url, timeout_seconds=int(config.get("NOTIFY_TIMEOUT_SECONDS") or 10))
    if backend == "none":
        return NullNotifier()
    # default log
    return LogNotifier()
