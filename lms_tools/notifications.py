"""In-app notifications addressed to a single recipient."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from lms_tools.console import log
from lms_tools.supabase_client import SupabaseClient, eq


NOTIFICATIONS = "notifications"
DEFAULT_PAGE_SIZE = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationService:
    def __init__(self, client: SupabaseClient) -> None:
        self.client = client

    def list_for(
        self,
        user_id: str,
        company: str = "login",
        unread_only: bool = False,
        type: Optional[str] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
        now: Optional[datetime] = None,
    ) -> List[dict]:
        """Newest first, skipping notifications whose ``expires_at`` has passed."""

        filters: Dict[str, Any] = {
            "recipient_id": eq(user_id),
            "company": eq(company),
            "or": f"(expires_at.is.null,expires_at.gt.{(now or _utcnow()).isoformat()})",
        }
        if type:
            filters["type"] = eq(type)
        if unread_only:
            filters["is_read"] = eq(False)
        return self.client.select(
            NOTIFICATIONS,
            filters=filters,
            order="created_at.desc",
            limit=limit,
            offset=offset,
        )

    def create(
        self,
        recipient_id: str,
        title: str,
        message: str,
        type: str = "info",
        company: str = "login",
        priority: str = "normal",
        sender_id: Optional[str] = None,
        action_url: Optional[str] = None,
        related_entity_type: Optional[str] = None,
        related_entity_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> dict:
        row = {
            "recipient_id": recipient_id,
            "sender_id": sender_id,
            "title": title,
            "message": message,
            "type": type,
            "priority": priority,
            "company": company,
            "action_url": action_url,
            "related_entity_type": related_entity_type,
            "related_entity_id": related_entity_id,
            "expires_at": expires_at.isoformat() if expires_at else None,
        }
        inserted = self.client.insert(NOTIFICATIONS, [row])
        log("notifications", f"Sent {type} notification to {recipient_id}: {title}")
        return inserted[0] if inserted else row

    def mark_read(self, notification_id: str, user_id: str, now: Optional[datetime] = None) -> bool:
        rows = self.client.update(
            NOTIFICATIONS,
            {"is_read": True, "read_at": (now or _utcnow()).isoformat()},
            {"id": eq(notification_id), "recipient_id": eq(user_id)},
        )
        if rows:
            log("notifications", f"Marked {notification_id} read for {user_id}")
        return bool(rows)

    def mark_all_read(self, user_id: str) -> Any:
        result = self.client.rpc("mark_all_notifications_read", {"target_user_id": user_id})
        log("notifications", f"Marked all notifications read for {user_id}")
        return result

    def unread_count(self, user_id: str) -> int:
        result = self.client.rpc("get_unread_notification_count", {"target_user_id": user_id})
        return int(result or 0)

    def delete(self, notification_id: str, user_id: str) -> bool:
        """Delete one of the user's own notifications; ``False`` when nothing matched."""

        deleted = self.client.delete_where(
            NOTIFICATIONS, {"id": eq(notification_id), "recipient_id": eq(user_id)}
        )
        if deleted:
            log("notifications", f"Deleted {notification_id} for {user_id}")
        return bool(deleted)
