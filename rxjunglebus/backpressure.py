"""Pause/resume flow control for a data stream.

Watches the depth of a delivery queue and asks the server-side producer to
pause when the consumer falls behind, then to start again once the queue has
drained below half of the watermark:

    depth > max_queue_size   (and not paused)  → publish {"cmd": "pause"}
    every recheck_interval while paused:
        depth < max_queue_size / 2             → publish {"cmd": "start"}
        otherwise                              → check again later

The commands are advisory. The controller never stops reading from the
transport; it only asks the producer to slow down.
"""

from typing import Any, Callable

import reactivex as rx
from reactivex import operators as ops
from reactivex.abc import DisposableBase, SchedulerBase
from reactivex.subject import BehaviorSubject

from .telemetry import OTelLogger
from .utils import get_short_error_info

PAUSE_COMMAND = {"cmd": "pause"}
START_COMMAND = {"cmd": "start"}


class BackpressureController:
    """Emits pause/start commands based on queue depth.

    Args:
        depth: Returns the current queue depth.
        publish: Sends a command to the producer.
        on_paused: Called once per pause transition.
        scheduler: Scheduler the recheck timer runs on.
        logger: Logger for transitions.
        max_queue_size: Pause watermark; resume below half of it.
        recheck_interval: Seconds between resume checks while paused.
    """

    def __init__(
        self,
        depth: Callable[[], int],
        publish: Callable[[dict[str, str]], Any],
        on_paused: Callable[[], Any],
        scheduler: SchedulerBase,
        logger: OTelLogger,
        max_queue_size: int = 20000,
        recheck_interval: float = 2.0,
    ):
        if max_queue_size < 1:
            raise ValueError(f"max_queue_size must be >= 1, got {max_queue_size}")
        self._depth = depth
        self._publish = publish
        self._on_paused = on_paused
        self._scheduler = scheduler
        self._logger = logger
        self.max_queue_size = max_queue_size
        self.recheck_interval = recheck_interval

        self._paused_subject: BehaviorSubject[bool] = BehaviorSubject(False)
        self._timer: DisposableBase | None = None
        self._disposed = False

    @property
    def resume_threshold(self) -> float:
        return self.max_queue_size / 2

    @property
    def paused(self) -> bool:
        return self._paused_subject.value

    @property
    def pause_state(self) -> rx.Observable[bool]:
        """Observable of pause transitions; replays the current state."""
        return self._paused_subject.pipe(ops.distinct_until_changed(), ops.share())

    @property
    def timer_pending(self) -> bool:
        return self._timer is not None

    def check(self) -> None:
        """Evaluate the queue depth after a push."""
        if self._disposed or self.paused:
            return
        depth = self._depth()
        if depth <= self.max_queue_size:
            return

        self._logger.warning(
            f"Queue depth {depth} exceeds {self.max_queue_size}, pausing producer"
        )
        self._send(PAUSE_COMMAND)
        self._paused_subject.on_next(True)
        self._on_paused()
        self._arm()

    def reset(self) -> None:
        """Cancel the recheck timer and forget the paused flag."""
        self._cancel_timer()
        if self.paused and not self._disposed:
            self._paused_subject.on_next(False)

    def dispose(self) -> None:
        if self._disposed:
            return
        self.reset()
        self._disposed = True
        self._paused_subject.on_completed()

    def _arm(self) -> None:
        # at most one outstanding timer
        self._cancel_timer()
        self._timer = self._scheduler.schedule_relative(
            self.recheck_interval, self._recheck
        )

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.dispose()

    def _recheck(self, scheduler: SchedulerBase, state: Any = None) -> None:
        self._timer = None
        if self._disposed or not self.paused:
            return
        depth = self._depth()
        if depth < self.resume_threshold:
            self._logger.info(f"Queue depth {depth} drained, resuming producer")
            self._send(START_COMMAND)
            self._paused_subject.on_next(False)
        else:
            self._logger.debug(f"Queue depth {depth} still high, staying paused")
            self._arm()

    def _send(self, command: dict[str, str]) -> None:
        try:
            self._publish(dict(command))
        except Exception as e:
            # the stream stays usable, the next transition retries
            self._logger.error(
                f"Failed to publish {command['cmd']!r} command: {get_short_error_info(e)}"
            )
