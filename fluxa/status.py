from __future__ import annotations

import enum
from dataclasses import asdict, dataclass
from typing import Any


class HealthStatus(str, enum.Enum):
    UP = "up"
    DOWN = "down"


@dataclass(frozen=True)
class ServiceSnapshot:
    url: str
    status: HealthStatus
    consecutive_failures: int
    interval_seconds: int
    max_retries: int
    last_check_ts: float
    next_check_ts: float
    last_status_code: int | None = None
    last_response_time_ms: float | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


class StatusBoard:
    """
    Latest published snapshot per service, for the status API.

    Monitors only ever replace their own key with a fresh immutable snapshot, so
    readers never see a half-updated record.
    """

    def __init__(self) -> None:
        self._snapshots: dict[str, ServiceSnapshot] = {}

    def publish(self, snapshot: ServiceSnapshot) -> None:
        self._snapshots[snapshot.url] = snapshot

    def get(self, url: str) -> ServiceSnapshot | None:
        return self._snapshots.get(url)

    def all(self) -> dict[str, ServiceSnapshot]:
        return dict(self._snapshots)
