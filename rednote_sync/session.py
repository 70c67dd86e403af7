"""
SyncSession state machine: preparing -> running <-> paused -> completed | failed | cancelled.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from rednote_sync.errors import InvalidTransition


class SyncStatus(str, Enum):
    PREPARING = "preparing"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (SyncStatus.PREPARING, SyncStatus.RUNNING)

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.CANCELLED})

TRANSITIONS: dict[SyncStatus, frozenset[SyncStatus]] = {
    SyncStatus.PREPARING: frozenset({SyncStatus.RUNNING, SyncStatus.FAILED, SyncStatus.CANCELLED}),
    SyncStatus.RUNNING: frozenset({SyncStatus.PAUSED, SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.CANCELLED}),
    SyncStatus.PAUSED: frozenset({SyncStatus.RUNNING, SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.CANCELLED}),
    SyncStatus.COMPLETED: frozenset(),
    SyncStatus.FAILED: frozenset(),
    SyncStatus.CANCELLED: frozenset(),
}


@dataclass
class SyncSession:
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    start_time: datetime = field(default_factory=datetime.now)
    end_time: datetime | None = None
    total_count: int = 0
    synced_count: int = 0
    status: SyncStatus = SyncStatus.PREPARING
    error_message: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration(self) -> float | None:
        """Seconds between start and end; None until the session is terminal."""
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()

    @property
    def progress(self) -> float:
        if self.total_count <= 0:
            return 0.0
        return min(self.synced_count / self.total_count, 1.0)

    def can_transition(self, target: SyncStatus) -> bool:
        return target in TRANSITIONS[self.status]

    def transition(self, target: SyncStatus) -> None:
        if not self.can_transition(target):
            raise InvalidTransition(f"{self.status.value} -> {target.value}")
        self.status = target
        if target.is_terminal:
            self.end_time = datetime.now()

    def start(self) -> None:
        self.transition(SyncStatus.RUNNING)

    def pause(self) -> None:
        self.transition(SyncStatus.PAUSED)

    def resume(self) -> None:
        self.transition(SyncStatus.RUNNING)

    def complete(self) -> None:
        self.transition(SyncStatus.COMPLETED)

    def fail(self, message: str) -> None:
        self.transition(SyncStatus.FAILED)
        self.error_message = message

    def cancel(self) -> None:
        self.transition(SyncStatus.CANCELLED)

    def record_synced(self) -> None:
        self.synced_count += 1
        if self.total_count and self.synced_count > self.total_count:
            self.total_count = self.synced_count

    def update_total(self, total: int) -> None:
        """Adopt a reported total, never below what has already been synced."""
        if total > 0:
            self.total_count = max(total, self.synced_count)
        elif total == 0 and self.synced_count == 0:
            self.total_count = 0

    def can_complete(self) -> bool:
        return self.total_count == 0 or self.synced_count >= self.total_count
