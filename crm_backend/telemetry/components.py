"""Per-component performance tracking (mount time, re-renders, lifetime)."""

import time

from crm_backend.telemetry.client import TelemetryClient


class ComponentTracker:
    """
    Records lifecycle timings of one UI component.

    - ``mounted()``: ``component_mount`` with the time since the tracker was created
    - ``rendered()``: ``component_render`` for every render after the first
    - ``unmounted()``: ``component_lifecycle`` with render count and time mounted

    Usable as a context manager (mount on enter, unmount on exit).
    """

    def __init__(self, telemetry: TelemetryClient, component: str):
        self.telemetry = telemetry
        self.component = component
        self.render_count = 0
        self._created_at = time.perf_counter()

    def _elapsed_ms(self) -> float:
        return (time.perf_counter() - self._created_at) * 1000

    def mounted(self) -> None:
        self.render_count = 1
        self.telemetry.track_performance(
            "component_mount",
            component=self.component,
            duration=self._elapsed_ms(),
        )

    def rendered(self) -> None:
        self.render_count += 1
        if self.render_count > 1:
            self.telemetry.track_performance(
                "component_render",
                component=self.component,
                render_count=self.render_count,
            )

    def unmounted(self) -> None:
        self.telemetry.track_performance(
            "component_lifecycle",
            component=self.component,
            renders=self.render_count,
            total_mounted=self._elapsed_ms(),
        )

    def __enter__(self):
        self.mounted()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.unmounted()
