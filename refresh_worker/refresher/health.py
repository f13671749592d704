"""In-memory health state exposed by the /health endpoint."""

from datetime import datetime, timezone
from typing import Any


class HealthState:
    """Read-only view over cycle flags and lock membership, plus run counters."""

    def __init__(self) -> None:
        self._cycles: dict = {}
        self._locks = None
        self.started_at = datetime.now(timezone.utc)
        self.pipeline_runs = 0
        self.pipeline_failures = 0

    def attach(self, cycles: dict, locks) -> None:
        self._cycles = cycles
        self._locks = locks

    def record_pipeline(self, ok: bool) -> None:
        self.pipeline_runs += 1
        if not ok:
            self.pipeline_failures += 1

    def snapshot(self) -> dict[str, Any]:
        """Build the JSON body served by /health."""
        return {
            "status": "ok",
            "started_at": self.started_at.isoformat(),
            "cycles": {
                name: {
                    "running": cycle.running,
                    "scheduled": cycle.scheduled,
                    "runs": cycle.runs,
                    "failures": cycle.failures,
                }
                for name, cycle in self._cycles.items()
            },
            "users_processing": self._locks.members() if self._locks is not None else [],
            "pipeline_runs": self.pipeline_runs,
            "pipeline_failures": self.pipeline_failures,
        }
