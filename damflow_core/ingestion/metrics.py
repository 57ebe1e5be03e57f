from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass


@dataclass(frozen=True)
class StageEvent:
    asset_id: str
    stage: str
    status: str
    duration_ms: float
    error: str | None = None


class StageTimer:
    def __init__(self) -> None:
        self._timings_ms: dict[str, float] = {}

    @contextmanager
    def track(self, name: str):
        start = time.perf_counter()
        try:
            yield
        finally:
            elapsed_ms = (time.perf_counter() - start) * 1000.0
            self._timings_ms[name] = round(
                self._timings_ms.get(name, 0.0) + elapsed_ms,
                2,
            )

    def elapsed(self, name: str) -> float:
        return self._timings_ms.get(name, 0.0)

    def summary(self) -> dict[str, float]:
        return dict(self._timings_ms)
