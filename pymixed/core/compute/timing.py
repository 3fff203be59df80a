"""
Wall-clock timing of fit stages.

``lmm`` times its setup, optimization and post-processing stages with a
Timer. ``benchmark_fit`` wraps each repeated fit in ``timed()``.
"""

import time
from contextlib import contextmanager
from typing import Iterator


class Timer:
    """
    Overall stopwatch with named, accumulating sections.

    Example:
        timer = Timer()
        timer.start()
        with timer.section('optimization'):
            optsum = optimize_theta(fn, theta0, lower, settings)
        timer.stop()
        timer.result()   # {'total_seconds': ..., 'optimization': ...}

    Sections are measured independently of start/stop, may overlap, and
    add up when the same name is used more than once.
    """

    def __init__(self):
        self._sections: dict[str, float] = {}
        self._started_at: float | None = None
        self._total: float | None = None

    def start(self) -> None:
        self._started_at = time.perf_counter()

    def stop(self) -> None:
        if self._started_at is None:
            raise RuntimeError("Timer.stop() called before start()")
        self._total = time.perf_counter() - self._started_at

    @contextmanager
    def section(self, name: str) -> Iterator[None]:
        """Add the time spent inside the block to section ``name``.

        The time is recorded even if the block raises.
        """
        began = time.perf_counter()
        try:
            yield
        finally:
            self._sections[name] = (
                self._sections.get(name, 0.0) + time.perf_counter() - began
            )

    def result(self) -> dict[str, float]:
        """``total_seconds`` followed by every section, in seconds.

        Raises:
            RuntimeError: If the timer has not been stopped.
        """
        if self._total is None:
            raise RuntimeError("Timer.result() called before stop()")
        return {'total_seconds': self._total, **self._sections}


@contextmanager
def timed() -> Iterator[Timer]:
    """Yield a started Timer and stop it when the block exits.

    Example:
        with timed() as timer:
            fit = lmm(formula, data)
        timer.result()['total_seconds']
    """
    timer = Timer()
    timer.start()
    try:
        yield timer
    finally:
        timer.stop()
