"""Reminder bot entry point."""

from __future__ import annotations

import asyncio
import logging
import signal

from src.audit import AuditLog
from src.bot.commands import TaskCommands
from src.config import settings
from src.feishu.client import FeishuClient, TenantTokenCache
from src.notifications import FeishuChannel, LogChannel, NotificationRouter
from src.scheduler.engine import SchedulerEngine
from src.scheduler.reminder import ReminderSweep
from src.scheduler.runner import ScheduledTaskRunner
from src.scheduler.store import TemplateStore
from src.sessions import SessionStore
from src.tasks.lifecycle import TaskLifecycle
from src.tasks.store import TaskStore
from src.tasks.workload import WorkloadResolver
from src.users.store import UserStore
from src.webhooks.server import Services, WebhookServer

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level),
)
logger = logging.getLogger(__name__)


def _init_feishu() -> FeishuClient | None:
    """Feishu API client, or None when credentials are not configured."""
    if not settings.feishu_configured:
        logger.warning("FEISHU_APP_ID/FEISHU_APP_SECRET empty — notifications go to the log")
        return None
    return FeishuClient(TenantTokenCache(settings.feishu_app_id, settings.feishu_app_secret))


def _init_notifications(feishu: FeishuClient | None) -> NotificationRouter:
    """Register notification channels and set the default."""
    router = NotificationRouter.get()
    if feishu is not None:
        router.register_channel(FeishuChannel(feishu))
        router.set_default_channel(settings.default_notification_channel)
    else:
        router.register_channel(LogChannel())
        router.set_default_channel("log")
    logger.info(
        "Notifications initialized: channels=%s, default=%s",
        router.list_channels(),
        router.default_channel_name,
    )
    return router


def build() -> tuple[SchedulerEngine, WebhookServer]:
    """Wire stores, lifecycle, scheduler and HTTP server."""
    feishu = _init_feishu()
    router = _init_notifications(feishu)
    tasks = TaskStore.get()
    users = UserStore.get()
    templates = TemplateStore.get()
    audit = AuditLog.get()

    lifecycle = TaskLifecycle(
        tasks,
        users,
        WorkloadResolver(users, tasks),
        router,
        audit,
    )
    engine = SchedulerEngine(
        ScheduledTaskRunner(templates, lifecycle),
        ReminderSweep(tasks, router),
    )
    commands = TaskCommands(lifecycle, users, SessionStore.get())
    server = WebhookServer(
        Services(
            lifecycle=lifecycle,
            templates=templates,
            users=users,
            commands=commands,
            router=router,
            audit=audit,
            feishu=feishu,
        )
    )
    return engine, server


async def run() -> None:
    """Run until SIGINT/SIGTERM, then drain the scheduler and stop the server."""
    engine, server = build()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    removed = await SessionStore.get().cleanup()
    if removed:
        logger.info("Session cleanup: removed %d expired session(s)", removed)

    await server.start()
    await engine.start()
    logger.info("Reminder bot running")
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down...")
        await server.stop()
        await engine.stop()


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
