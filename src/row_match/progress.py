"""Progress sinks and cooperative cancellation for matching runs."""

from __future__ import annotations

import logging
import threading
from typing import Dict, Optional, Protocol

from tqdm.auto import tqdm

logger = logging.getLogger(__name__)


class ProgressSink(Protocol):
    def update(self, phase: str, done: int, total: int) -> None:
        ...


class NullProgress:
    def update(self, phase: str, done: int, total: int) -> None:
        return None


class LoggingProgress:
    """Log every `step` fraction of each phase at INFO."""

    def __init__(self, step: float = 0.1, log: Optional[logging.Logger] = None):
        self.step = float(step)
        self.log = log or logger
        self._last: Dict[str, float] = {}

    def update(self, phase: str, done: int, total: int) -> None:
        frac = 1.0 if total <= 0 else done / total
        last = self._last.get(phase)
        if last is not None and frac < 1.0 and frac - last < self.step:
            return
        if last is not None and last >= 1.0:
            return
        self._last[phase] = frac
        self.log.info("%s: %d/%d rows (%.0f%%)", phase, done, total, 100.0 * frac)


class TqdmProgress:
    """One tqdm bar per phase."""

    def __init__(self, **tqdm_kwargs: object):
        self._kwargs = dict(tqdm_kwargs)
        self._bars: Dict[str, object] = {}

    def update(self, phase: str, done: int, total: int) -> None:
        bar = self._bars.get(phase)
        if bar is None:
            for other in self._bars.values():
                other.close()  # type: ignore[attr-defined]
            bar = tqdm(total=total, desc=phase, unit="row", **self._kwargs)
            self._bars[phase] = bar
        bar.update(done - bar.n)  # type: ignore[attr-defined]
        if done >= total:
            bar.close()  # type: ignore[attr-defined]

    def close(self) -> None:
        for bar in self._bars.values():
            bar.close()  # type: ignore[attr-defined]


class CancelToken:
    """Shared flag checked by the matcher between blocks of rows.

    The matcher never sets a deadline itself; a caller wanting a timeout sets
    the flag from a timer.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def reset(self) -> None:
        self._event.clear()


__all__ = ["ProgressSink", "NullProgress", "LoggingProgress", "TqdmProgress", "CancelToken"]
