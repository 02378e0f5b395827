"""
Reminder Service

Periodic pass over the store:
1. Overdue sweep (pending tasks past their due date become overdue)
2. For each reminder type, notify the assignee of every unsent reminder
   whose task falls in that type's window, then mark it sent
3. Evict abandoned wizards when a registry is attached

Inside the bot the pass runs on an asyncio loop. For deployments that drive
it from cron instead, `python -m taskflow.reminders` runs a single pass
and delivers through the HTTP Bot API.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional, Callable, Dict

from .config import configure_logging, get_settings
from .database import Database, TaskflowError
from .models import ReminderType
from .notifications import HttpNotifier, MessageTemplates, NotificationDispatcher
from .task_store import TaskStore
from .wizard import WizardRegistry

logger = logging.getLogger("reminders")

# Overdue notices go out before the time-window ones
REMINDER_ORDER = [
    ReminderType.OVERDUE_2,
    ReminderType.OVERDUE_1,
    ReminderType.TODAY_1H,
    ReminderType.TODAY_4H,
    ReminderType.TOMORROW,
]


class ReminderService:
    """Overdue sweep plus reminder delivery."""

    def __init__(
        self,
        store: TaskStore,
        notifier: NotificationDispatcher,
        clock: Optional[Callable[[], datetime]] = None,
        interval: int = 900,
        registry: Optional[WizardRegistry] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.clock = clock or datetime.now
        self.interval = interval
        self.registry = registry
        self._running = False

    async def run_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """One pass. Returns counters for logging and tests."""
        now = now or self.clock()
        stats = {"overdue": await self.store.sweep_overdue(now), "sent": 0, "failed": 0, "skipped": 0}

        for reminder_type in REMINDER_ORDER:
            for reminder in await self.store.get_due_reminders(reminder_type, now):
                if reminder.telegram_id is None:
                    stats["skipped"] += 1
                else:
                    delivered = await self.notifier.send(reminder.telegram_id, MessageTemplates.reminder(reminder))
                    stats["sent" if delivered else "failed"] += 1
                # One attempt per reminder, delivered or not
                await self.store.mark_reminder_sent(reminder.reminder_id)

        if self.registry is not None:
            stats["evicted"] = self.registry.evict_idle(now)

        if stats["overdue"] or stats["sent"] or stats["failed"]:
            logger.info(
                f"Reminder pass: {stats['overdue']} overdue, {stats['sent']} sent, "
                f"{stats['failed']} failed, {stats['skipped']} skipped"
            )
        return stats

    async def run_forever(self) -> None:
        """Run a pass every interval seconds until stop() or cancellation."""
        self._running = True
        logger.info(f"Reminder loop started, running every {self.interval}s")

        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except TaskflowError as e:
                logger.error(f"Reminder pass failed: {e}")
            except Exception as e:
                logger.error(f"Unexpected error in reminder pass: {e}", exc_info=True)

            await asyncio.sleep(self.interval)

    def stop(self) -> None:
        self._running = False
        logger.info("Reminder loop stopped")


async def run_single_pass() -> Dict[str, int]:
    settings = get_settings()
    db = Database(settings.database_url)
    try:
        await db.create_all()
        service = ReminderService(
            store=TaskStore(db, clock=settings.now),
            notifier=HttpNotifier(settings.telegram_bot_token),
            clock=settings.now,
        )
        return await service.run_once()
    finally:
        await db.dispose()


def main():
    """Single reminder pass for an external scheduler."""
    configure_logging(get_settings())
    stats = asyncio.run(run_single_pass())
    logger.info(f"Done: {stats}")


if __name__ == "__main__":
    main()
