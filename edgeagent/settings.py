from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Storage. The ledger file holds a single JSON array despite the .jsonl name.
    db_path: str = os.getenv("EDGE_DB_PATH", "edge_agent.db")
    ledger_path: str = os.getenv("EDGE_LEDGER_PATH", "known_manifests.jsonl")

    # Container engine
    network_prefix: str = os.getenv("EDGE_NETWORK_PREFIX", "edge")
    network_driver: str = os.getenv("EDGE_NETWORK_DRIVER", "bridge")
    runtime_timeout_s: int = _env_int("EDGE_RUNTIME_TIMEOUT_S", 60)
    # Containers are created with an on-failure restart policy capped at this many retries.
    restart_max_retries: int = _env_int("EDGE_RESTART_MAX_RETRIES", 100)

    # Record DEBUG events in the event log.
    debug: bool = _env_bool("EDGE_DEBUG", False)


settings = Settings()
