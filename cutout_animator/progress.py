"""
Progress reporting for Cutout Animator.

Every pipeline stage publishes typed events on a single channel; callers
subscribe for the duration of one job.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List

logger = logging.getLogger(__name__)


class Stage(Enum):
    UPLOADING = "UPLOADING"
    SUBMITTING = "SUBMITTING"
    IN_QUEUE = "IN_QUEUE"
    GENERATING = "GENERATING"
    DOWNLOADING = "DOWNLOADING"
    ENCODING = "ENCODING"
    DONE = "DONE"


@dataclass(frozen=True)
class ProgressEvent:
    stage: Stage
    percent: int
    message: str


ProgressCallback = Callable[[ProgressEvent], None]


class ProgressChannel:
    """Fan-out of progress events to subscribed callbacks."""

    def __init__(self):
        self._subscribers: List[ProgressCallback] = []
        self._last_percent = 0

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        """Register a callback and return the function that removes it."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    @contextmanager
    def subscribed(self, callback):
        """Keep ``callback`` subscribed for the body of a ``with`` block only."""
        if callback is None:
            yield self
            return
        unsubscribe = self.subscribe(callback)
        try:
            yield self
        finally:
            unsubscribe()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, stage: Stage, percent: int, message: str):
        # Percentages never move backwards within one job
        percent = max(self._last_percent, min(100, int(percent)))
        self._last_percent = percent

        event = ProgressEvent(stage=stage, percent=percent, message=message)
        logger.debug(f"Progress {stage.value} {percent}%: {message}")
        for callback in list(self._subscribers):
            callback(event)
