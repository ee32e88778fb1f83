from __future__ import annotations

import logging
import signal
import time
from contextlib import contextmanager
from typing import Callable, Iterator

from resim_cli.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Observation,
    ObserverTimeout,
    ResimError,
    ValidationError,
    WorkStatus,
)
from resim_cli.utils import format_duration
from resim_cli.workitems import WorkItem

_log = logging.getLogger("resim.observer")

DEFAULT_POLL_INTERVAL_SEC = 10.0
MIN_POLL_INTERVAL_SEC = 1.0


StatusCallback = Callable[[WorkStatus], None]


@contextmanager
def sigterm_as_interrupt() -> Iterator[None]:
    """Raise ``KeyboardInterrupt`` on SIGTERM so waits take the Ctrl-C path.

    The previous handler is restored on exit. Off the main thread no handler
    can be installed and the body runs unchanged.
    """

    def _handler(signum, _frame):
        _log.warning("signal_received signal=%s", signal.Signals(signum).name)
        raise KeyboardInterrupt

    try:
        previous = signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, signal.SIG_DFL if previous is None else previous)


class Observer:
    """Poll one work item until it reaches a terminal status.

    One status read per tick, ``poll_interval_sec`` apart (never below one
    second). ``timeout_sec=None`` waits forever.

    After a rerun the server may keep reporting the previous terminal status
    for a short while. With ``fresh_attempt=True`` a terminal status is only
    accepted once a non-terminal status has been seen, or after
    ``settle_polls`` reads, whichever comes first.
    """

    def __init__(
        self,
        *,
        poll_interval_sec: float = DEFAULT_POLL_INTERVAL_SEC,
        timeout_sec: float | None = None,
        settle_polls: int = 3,
        cancel_on_interrupt: bool = True,
        on_status: StatusCallback | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if timeout_sec is not None and timeout_sec < 0:
            raise ValidationError(f"invalid wait timeout: {timeout_sec}")
        self.poll_interval_sec = max(MIN_POLL_INTERVAL_SEC, float(poll_interval_sec))
        self.timeout_sec = timeout_sec
        self.settle_polls = settle_polls
        self.cancel_on_interrupt = cancel_on_interrupt
        self._on_status = on_status
        self._sleep = sleep
        self._clock = clock

    def observe(self, item: WorkItem, *, fresh_attempt: bool = False) -> Observation:
        started = self._clock()
        history: list[str] = []
        polls = 0
        seen_active = not fresh_attempt
        try:
            while True:
                current = item.fetch_status()
                polls += 1
                if not history or history[-1] != current.status:
                    history.append(current.status)
                _log.info(
                    "observer_poll kind=%s item_id=%s status=%s poll=%d",
                    item.kind,
                    item.item_id,
                    current.status,
                    polls,
                )
                if self._on_status is not None:
                    self._on_status(current)

                if current.status in ACTIVE_STATUSES:
                    seen_active = True
                elif current.status in TERMINAL_STATUSES:
                    if seen_active or polls > self.settle_polls:
                        return Observation(
                            final=current,
                            polls=polls,
                            history=tuple(history),
                            elapsed_sec=self._clock() - started,
                        )
                    _log.info(
                        "observer_stale_terminal item_id=%s status=%s",
                        item.item_id,
                        current.status,
                    )
                else:
                    raise ValidationError(f"unknown {item.kind} status: {current.status}")

                elapsed = self._clock() - started
                if self.timeout_sec is not None and elapsed >= self.timeout_sec:
                    raise ObserverTimeout(
                        f"timeout after {format_duration(self.timeout_sec)}, "
                        f"last state {current.status}",
                        last_status=current.status,
                    )
                self._sleep(self.poll_interval_sec)
        except KeyboardInterrupt:
            if self.cancel_on_interrupt:
                self._cancel_quietly(item)
            raise

    def _cancel_quietly(self, item: WorkItem) -> None:
        _log.warning("observer_interrupted kind=%s item_id=%s", item.kind, item.item_id)
        try:
            item.cancel()
        except ResimError as exc:
            _log.warning(
                "observer_cancel_failed kind=%s item_id=%s error=%s",
                item.kind,
                item.item_id,
                exc,
            )
