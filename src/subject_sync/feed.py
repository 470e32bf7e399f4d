"""
In-process change feed.

The operational store publishes a ChangeEvent (before/after snapshots) for
every write; the sync dispatcher subscribes. Subscribers are isolated from
each other: one failing subscriber never blocks the rest.
"""

from __future__ import annotations

from typing import Protocol

from loguru import logger

from .models import ChangeEvent


class ChangeSubscriber(Protocol):
    async def __call__(self, event: ChangeEvent) -> None:
        """Handle a change event."""
        ...


class ChangeFeed:
    """Pub/sub bus of ChangeEvents with per-subscriber error isolation.

    Example:
        feed = ChangeFeed()
        feed.subscribe(dispatcher.handle_change)
        await feed.publish(ChangeEvent(...))
    """

    def __init__(self) -> None:
        self._subs: list[ChangeSubscriber] = []

    def subscribe(self, callback: ChangeSubscriber) -> None:
        if callback not in self._subs:
            self._subs.append(callback)
            logger.debug(f"Change subscriber added (total: {len(self._subs)})")

    def unsubscribe(self, callback: ChangeSubscriber) -> None:
        try:
            self._subs.remove(callback)
            logger.debug(f"Change subscriber removed (total: {len(self._subs)})")
        except ValueError:
            pass

    async def publish(self, event: ChangeEvent) -> None:
        if not self._subs:
            return

        # Iterate over copy to allow unsubscribe during iteration
        for callback in list(self._subs):
            try:
                await callback(event)
            except Exception as exc:
                logger.error(
                    f"Change subscriber failed for {event.kind} {event.entity_id}: "
                    f"{type(exc).__name__}: {exc}"
                )

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)
