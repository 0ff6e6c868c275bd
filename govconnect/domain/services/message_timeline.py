"""
Message timeline merge and smart-scroll bookkeeping.

Polls deliver overlapping message pages; merging keeps one copy per id, with
the freshest copy winning so read receipts update in place.
"""
import enum
from typing import Iterable, Optional

from govconnect.core.config import settings
from govconnect.schemas.conversation import Message


def merge_messages(held: Iterable[Message], incoming: Iterable[Message]) -> list[Message]:
    """
    Merge two message lists.

    Result has unique ids, is sorted by timestamp ascending, and messages with
    equal timestamps keep their arrival order (held first, then incoming).
    """
    by_id: dict[str, Message] = {}
    arrival: dict[str, int] = {}
    for position, message in enumerate([*held, *incoming]):
        if message.id not in arrival:
            arrival[message.id] = position
        # later copy wins, first position is kept
        by_id[message.id] = message

    return sorted(by_id.values(), key=lambda m: (m.timestamp, arrival[m.id]))


class ScrollAction(str, enum.Enum):
    AUTO_SCROLL = "auto_scroll"
    SHOW_INDICATOR = "show_indicator"
    NONE = "none"


class ScrollTracker:
    """
    Decides what a message list change does to the view.

    Near the bottom, new messages scroll into view. Scrolled up reading
    history, they only bump a "N new messages" indicator.
    """

    def __init__(self, threshold_px: Optional[int] = None) -> None:
        self.threshold_px = threshold_px if threshold_px is not None else settings.NEAR_BOTTOM_THRESHOLD_PX
        self.near_bottom = True
        self.new_message_count = 0
        self._first_load = True
        self._last_count = 0

    @property
    def show_indicator(self) -> bool:
        return self.new_message_count > 0

    def update_position(self, scroll_top: float, scroll_height: float, client_height: float) -> bool:
        self.near_bottom = scroll_height - scroll_top - client_height < self.threshold_px
        if self.near_bottom:
            self.new_message_count = 0
        return self.near_bottom

    def on_messages_changed(self, message_count: int) -> ScrollAction:
        """Call with the new timeline length after every merge."""
        added = message_count - self._last_count
        self._last_count = message_count

        if self._first_load:
            if message_count == 0:
                return ScrollAction.NONE
            self._first_load = False
            return self.force_scroll()

        if added <= 0:
            return ScrollAction.NONE
        if self.near_bottom:
            return ScrollAction.AUTO_SCROLL
        self.new_message_count += added
        return ScrollAction.SHOW_INDICATOR

    def force_scroll(self) -> ScrollAction:
        """Jump to the bottom (indicator clicked, own message sent)."""
        self.new_message_count = 0
        self.near_bottom = True
        return ScrollAction.AUTO_SCROLL

    def reset(self) -> None:
        """New conversation selected: the next load scrolls unconditionally."""
        self.near_bottom = True
        self.new_message_count = 0
        self._first_load = True
        self._last_count = 0
