"""
Conversation polling for the live chat view.

Polls only while the view is visible; becoming visible again fetches at once
instead of waiting for the next tick.
"""
from typing import Optional

from govconnect.core.config import settings
from govconnect.core.logging import get_logger
from govconnect.core.polling import PeriodicTask
from govconnect.domain.services.takeover_coordinator import TakeoverCoordinator

logger = get_logger(__name__)


class ConversationPoller:
    """Every tick: silent list refresh, AI statuses, selected timeline."""

    def __init__(self, coordinator: TakeoverCoordinator, interval: Optional[float] = None) -> None:
        self._coordinator = coordinator
        self._task = PeriodicTask(
            f"livechat:{coordinator.tenant_id}",
            interval or settings.CONVERSATION_POLL_INTERVAL_SECONDS,
            self._tick,
        )
        self.visible = False

    @property
    def running(self) -> bool:
        return self._task.running

    @property
    def tick_count(self) -> int:
        return self._task.tick_count

    async def set_visible(self, visible: bool) -> None:
        if visible == self.visible and visible == self.running:
            return
        self.visible = visible
        if visible:
            await self._task.trigger()
            self._task.start()
        else:
            await self._task.stop()
        logger.debug(
            "Live chat visibility changed",
            extra_data={"tenant_id": self._coordinator.tenant_id, "visible": visible},
        )

    async def stop(self) -> None:
        self.visible = False
        await self._task.stop()

    async def _tick(self) -> None:
        coordinator = self._coordinator
        await coordinator.list_conversations(silent=True)
        await coordinator.get_processing_statuses()
        # read at tick time; the selection may have changed since the last one
        key = coordinator.selection.key
        if key:
            await coordinator.get_messages(key)

    async def __aenter__(self) -> "ConversationPoller":
        await self.set_visible(True)
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
