from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, replace
from threading import Lock
from typing import Any

from .db import log_event
from .errors import NotFound
from .manifest import ManifestUniqueID


@dataclass(frozen=True)
class ManifestStatus:
    manifest_id: str
    unique_id: ManifestUniqueID
    status: str
    container_count: int
    in_transition: bool

    # The on-disk keys are shared with other tools reading the ledger file.
    def to_dict(self) -> dict[str, Any]:
        return {
            "ManifestID": self.manifest_id,
            "ManifestUniqueID": {
                "ManifestName": self.unique_id.manifest_name,
                "VersionNumber": self.unique_id.version_number,
            },
            "Status": self.status,
            "ContainerCount": self.container_count,
            "InTransition": self.in_transition,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ManifestStatus:
        uid = raw.get("ManifestUniqueID") or {}
        return cls(
            manifest_id=str(raw.get("ManifestID", "")),
            unique_id=ManifestUniqueID(str(uid.get("ManifestName", "")), str(uid.get("VersionNumber", ""))),
            status=str(raw.get("Status", "")),
            container_count=int(raw.get("ContainerCount", 0)),
            in_transition=bool(raw.get("InTransition", False)),
        )


class StatusLedger:
    """Last known lifecycle status per manifest identity.

    Rows are kept in insertion order and never deleted. Every change rewrites
    the whole JSON file through a temp file + os.replace, so readers only ever
    see a complete snapshot.
    """

    def __init__(self, path: str):
        self.path = os.path.abspath(path)
        self._lock = Lock()
        self._rows: list[ManifestStatus] = []

    def init_known_manifests(self) -> None:
        """Load the persisted ledger. A missing file means an empty ledger."""
        try:
            with open(self.path, encoding="utf-8") as fh:
                raw = json.load(fh)
        except FileNotFoundError:
            return
        if raw is None:
            raw = []
        if not isinstance(raw, list):
            raise ValueError(f"Ledger file {self.path} does not contain a JSON array.")
        with self._lock:
            self._rows = [ManifestStatus.from_dict(r) for r in raw]
        log_event("INFO", f"Loaded {len(raw)} known manifest(s) from {self.path}")

    def get_known_manifests(self) -> list[ManifestStatus]:
        with self._lock:
            return list(self._rows)

    def get(self, unique_id: ManifestUniqueID) -> ManifestStatus | None:
        with self._lock:
            for row in self._rows:
                if row.unique_id == unique_id:
                    return row
        return None

    def require(self, unique_id: ManifestUniqueID) -> ManifestStatus:
        row = self.get(unique_id)
        if row is None:
            raise NotFound(f"Data service {unique_id.manifest_name} {unique_id.version_number} is not known.")
        return row

    def set_status(
        self,
        unique_id: ManifestUniqueID,
        status: str,
        in_transition: bool = False,
        manifest_id: str | None = None,
        container_count: int | None = None,
    ) -> ManifestStatus:
        """Upsert the row for ``unique_id`` and persist the whole ledger."""
        log_event(
            "DEBUG",
            f"Setting status {status} (in transition: {in_transition})",
            manifest_name=unique_id.manifest_name,
            version=unique_id.version_number,
        )
        with self._lock:
            for i, row in enumerate(self._rows):
                if row.unique_id == unique_id:
                    updated = replace(
                        row,
                        status=status,
                        in_transition=in_transition,
                        manifest_id=row.manifest_id if manifest_id is None else manifest_id,
                        container_count=row.container_count if container_count is None else container_count,
                    )
                    self._rows[i] = updated
                    break
            else:
                updated = ManifestStatus(
                    manifest_id=manifest_id or str(unique_id),
                    unique_id=unique_id,
                    status=status,
                    container_count=container_count or 0,
                    in_transition=in_transition,
                )
                self._rows.append(updated)
            self._flush()
        return updated

    def _flush(self) -> None:
        # Caller holds self._lock.
        parent = os.path.dirname(self.path)
        os.makedirs(parent, exist_ok=True)
        payload = [r.to_dict() for r in self._rows]
        fd, tmp_path = tempfile.mkstemp(prefix=".ledger-", suffix=".tmp", dir=parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=1)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
