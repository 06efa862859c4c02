from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Iterator

from .db import utc_now
from .manifest import ManifestUniqueID


@dataclass(frozen=True)
class InFlightCommand:
    unique_id: ManifestUniqueID
    command: str
    started_at: str = field(default_factory=utc_now)


class RuntimeState:
    """In-memory coordination state for lifecycle commands.

    Commands against one identity are serialized through a per-identity lock;
    commands against different identities proceed independently. A lock is
    dropped once no command holds it or waits for it.
    """

    def __init__(self) -> None:
        self.lock = Lock()
        self.identity_locks: dict[ManifestUniqueID, Lock] = {}
        self._users: dict[ManifestUniqueID, int] = {}
        self.in_flight: dict[ManifestUniqueID, InFlightCommand] = {}

    def _acquire_identity_lock(self, unique_id: ManifestUniqueID) -> Lock:
        with self.lock:
            lk = self.identity_locks.get(unique_id)
            if lk is None:
                lk = Lock()
                self.identity_locks[unique_id] = lk
            self._users[unique_id] = self._users.get(unique_id, 0) + 1
            return lk

    def _release_identity_lock(self, unique_id: ManifestUniqueID) -> None:
        with self.lock:
            self._users[unique_id] -= 1
            if self._users[unique_id] == 0:
                del self._users[unique_id]
                del self.identity_locks[unique_id]

    @contextmanager
    def exclusive(self, unique_id: ManifestUniqueID, command: str) -> Iterator[InFlightCommand]:
        """Hold the identity's lock for the duration of one command."""
        lk = self._acquire_identity_lock(unique_id)
        try:
            with lk:
                entry = InFlightCommand(unique_id=unique_id, command=command)
                with self.lock:
                    self.in_flight[unique_id] = entry
                try:
                    yield entry
                finally:
                    with self.lock:
                        self.in_flight.pop(unique_id, None)
        finally:
            self._release_identity_lock(unique_id)

    def list_in_flight(self) -> list[InFlightCommand]:
        with self.lock:
            return list(self.in_flight.values())
