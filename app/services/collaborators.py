"""
Narrow contracts to the systems around the engine.

PlatformControl pushes pause/resume/attach decisions to the mail-sending
platform; Notifier fans out user-facing notices. Both are fire-and-forget from
the engine's point of view: callers go through ``safe_platform_call`` and
``safe_notify`` so an integration failure is logged and never rolls back the
engine's own state change.
"""

from typing import Protocol

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

NOTIFICATION_LEVELS = ("success", "info", "warning", "error")


class PlatformControl(Protocol):
    async def pause_campaign(self, tenant_id: str, campaign_id: str) -> bool: ...

    async def resume_campaign(self, tenant_id: str, campaign_id: str) -> bool: ...

    async def add_mailbox_to_campaign(self, tenant_id: str, campaign_id: str, mailbox_id: str) -> bool: ...

    async def remove_mailbox_from_campaign(self, tenant_id: str, campaign_id: str, mailbox_id: str) -> bool: ...


class Notifier(Protocol):
    async def notify(self, tenant_id: str, level: str, title: str, message: str) -> None: ...


class LoggingPlatformControl:
    """Default platform adapter: records the intended action and reports success."""

    async def pause_campaign(self, tenant_id: str, campaign_id: str) -> bool:
        logger.info("Platform pause requested", tenant_id=tenant_id, campaign_id=campaign_id)
        return True

    async def resume_campaign(self, tenant_id: str, campaign_id: str) -> bool:
        logger.info("Platform resume requested", tenant_id=tenant_id, campaign_id=campaign_id)
        return True

    async def add_mailbox_to_campaign(self, tenant_id: str, campaign_id: str, mailbox_id: str) -> bool:
        logger.info(
            "Platform mailbox attach requested",
            tenant_id=tenant_id,
            campaign_id=campaign_id,
            mailbox_id=mailbox_id,
        )
        return True

    async def remove_mailbox_from_campaign(self, tenant_id: str, campaign_id: str, mailbox_id: str) -> bool:
        logger.info(
            "Platform mailbox detach requested",
            tenant_id=tenant_id,
            campaign_id=campaign_id,
            mailbox_id=mailbox_id,
        )
        return True


class LoggingNotifier:
    """Default notifier: writes the notice to structured logs."""

    async def notify(self, tenant_id: str, level: str, title: str, message: str) -> None:
        log = logger.error if level == "error" else logger.warning if level == "warning" else logger.info
        log("Notification", tenant_id=tenant_id, level=level, title=title, body=message)


async def safe_platform_call(action: str, call, *args) -> bool:
    """
    Invoke a PlatformControl coroutine, converting failures into False.

    Usage:
        await safe_platform_call("pause_campaign", platform.pause_campaign, tenant_id, campaign_id)
    """
    try:
        ok = await call(*args)
    except Exception as e:
        logger.error("Platform call failed", action=action, args=list(args), error=str(e), error_type=type(e).__name__)
        return False

    if not ok:
        logger.warning("Platform call reported failure; retry out of band", action=action, args=list(args))
    return bool(ok)


async def safe_notify(notifier: Notifier, tenant_id: str, level: str, title: str, message: str) -> None:
    """Send a notification; delivery errors are logged and swallowed."""
    try:
        await notifier.notify(tenant_id, level, title, message)
    except Exception as e:
        logger.error(
            "Notification delivery failed",
            tenant_id=tenant_id,
            level=level,
            title=title,
            error=str(e),
            error_type=type(e).__name__,
        )
