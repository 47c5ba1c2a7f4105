"""
Outbound collaborators invoked by the engine after a transition commits.

- StatusNotifier: best-effort status-change fan-out (failures are logged)
- ActivityLog: append-only transition record for audit display
- ApplyHandler: the side effect of applying an approved subject
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings
from ..core.database import get_session_context
from ..models import ActivityLogEntry
from ..schemas import ActivityAction
from .errors import StorageError


logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class WebhookConfig:
    """Webhook delivery configuration."""
    url: str
    timeout_seconds: int = 10
    headers: dict[str, str] = field(default_factory=dict)
    transport: httpx.AsyncBaseTransport | None = None

    @classmethod
    def from_settings(cls, url: str, settings: Settings) -> "WebhookConfig":
        return cls(url=url, timeout_seconds=settings.webhook_timeout_seconds)


async def _post_json(config: WebhookConfig, payload: dict) -> None:
    async with httpx.AsyncClient(transport=config.transport) as client:
        response = await client.post(
            config.url,
            json=payload,
            headers=config.headers,
            timeout=config.timeout_seconds,
        )
        response.raise_for_status()


# =============================================================================
# STATUS NOTIFIER
# =============================================================================


class StatusNotifier(ABC):
    """Receives every committed status change."""

    @abstractmethod
    async def on_status_changed(
        self,
        subject_id: UUID,
        old_status: str | None,
        new_status: str,
    ) -> None:
        pass


class LoggingNotifier(StatusNotifier):
    """Writes status changes to the log."""

    async def on_status_changed(
        self,
        subject_id: UUID,
        old_status: str | None,
        new_status: str,
    ) -> None:
        logger.info(f"[STATUS] {subject_id}: {old_status or '-'} -> {new_status}")


class WebhookNotifier(StatusNotifier):
    """Posts status changes to a webhook endpoint (chat integration, push relay)."""

    def __init__(self, config: WebhookConfig):
        self._config = config

    async def on_status_changed(
        self,
        subject_id: UUID,
        old_status: str | None,
        new_status: str,
    ) -> None:
        await _post_json(self._config, {
            "event": "status_changed",
            "subject_id": str(subject_id),
            "old_status": old_status,
            "new_status": new_status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        logger.debug(f"[WEBHOOK] Delivered status change for {subject_id}")


# =============================================================================
# ACTIVITY LOG
# =============================================================================


@dataclass(frozen=True)
class ActivityRecord:
    """One recorded transition."""
    subject_id: UUID
    action: ActivityAction
    actor_id: str | None
    old_status: str | None
    new_status: str | None
    details: dict[str, Any]
    created_at: datetime


class ActivityLog(ABC):
    """Append-only record of transitions."""

    @abstractmethod
    async def record(
        self,
        subject_id: UUID,
        action: ActivityAction,
        actor_id: str | None,
        old_status: str | None = None,
        new_status: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        pass

    @abstractmethod
    async def history(self, subject_id: UUID) -> list[ActivityRecord]:
        """Entries for one subject, oldest first."""


class InMemoryActivityLog(ActivityLog):
    def __init__(self) -> None:
        self._entries: list[ActivityRecord] = []
        self._lock = asyncio.Lock()

    async def record(
        self,
        subject_id: UUID,
        action: ActivityAction,
        actor_id: str | None,
        old_status: str | None = None,
        new_status: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        async with self._lock:
            self._entries.append(ActivityRecord(
                subject_id=subject_id,
                action=action,
                actor_id=actor_id,
                old_status=old_status,
                new_status=new_status,
                details=details or {},
                created_at=datetime.now(timezone.utc),
            ))

    async def history(self, subject_id: UUID) -> list[ActivityRecord]:
        async with self._lock:
            return [e for e in self._entries if e.subject_id == subject_id]

    @property
    def entries(self) -> list[ActivityRecord]:
        return list(self._entries)


class SqlActivityLog(ActivityLog):
    """Activity log persisted to the ``activity_log`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory

    async def record(
        self,
        subject_id: UUID,
        action: ActivityAction,
        actor_id: str | None,
        old_status: str | None = None,
        new_status: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        try:
            async with get_session_context(self._session_factory) as session:
                session.add(ActivityLogEntry(
                    subject_id=subject_id,
                    action=action,
                    actor_id=actor_id,
                    old_status=old_status,
                    new_status=new_status,
                    details=details or {},
                    created_at=datetime.now(timezone.utc),
                ))
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to record activity for {subject_id}: {e}") from e

    async def history(self, subject_id: UUID) -> list[ActivityRecord]:
        try:
            async with get_session_context(self._session_factory) as session:
                result = await session.execute(
                    select(ActivityLogEntry)
                    .where(ActivityLogEntry.subject_id == subject_id)
                    .order_by(ActivityLogEntry.created_at.asc())
                )
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read activity for {subject_id}: {e}") from e
        return [
            ActivityRecord(
                subject_id=row.subject_id,
                action=row.action,
                actor_id=row.actor_id,
                old_status=row.old_status,
                new_status=row.new_status,
                details=row.details or {},
                created_at=row.created_at,
            )
            for row in rows
        ]


# =============================================================================
# APPLY SIDE EFFECT
# =============================================================================


class ApplyHandler(ABC):
    """Performs the side effect of an applied subject, exactly once per apply."""

    @abstractmethod
    async def on_applied(self, subject_id: UUID, payload: dict[str, Any]) -> None:
        pass


class LoggingApplyHandler(ApplyHandler):
    async def on_applied(self, subject_id: UUID, payload: dict[str, Any]) -> None:
        logger.info(f"[APPLY] {subject_id}: {sorted(payload)}")


class WebhookApplyHandler(ApplyHandler):
    """Forwards the applied payload (AI suggestion, file changes) to a webhook."""

    def __init__(self, config: WebhookConfig):
        self._config = config

    async def on_applied(self, subject_id: UUID, payload: dict[str, Any]) -> None:
        await _post_json(self._config, {
            "event": "applied",
            "subject_id": str(subject_id),
            "payload": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        logger.info(f"[WEBHOOK] Delivered apply for {subject_id}")


# =============================================================================
# FACTORIES
# =============================================================================


def build_notifier(settings: Settings) -> StatusNotifier:
    """Webhook notifier when ``notification_webhook_url`` is set, else logging."""
    if settings.notifications_enabled:
        return WebhookNotifier(
            WebhookConfig.from_settings(settings.notification_webhook_url, settings)
        )
    return LoggingNotifier()


def build_apply_handler(settings: Settings) -> ApplyHandler:
    """Webhook apply handler when ``apply_webhook_url`` is set, else logging."""
    if settings.apply_webhook_enabled:
        return WebhookApplyHandler(
            WebhookConfig.from_settings(settings.apply_webhook_url, settings)
        )
    return LoggingApplyHandler()
