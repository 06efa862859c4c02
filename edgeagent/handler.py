from __future__ import annotations

import json
from typing import Any

from . import db
from .api_models import CommandMessage, ManifestDocument
from .dataservice import (
    CMD_START_SERVICE,
    CMD_STOP_SERVICE,
    COMMANDS,
    DEPLOY_COMMANDS,
    DataServiceOrchestrator,
)
from .ledger import ManifestStatus
from .manifest import ManifestUniqueID, format_version, parse_manifest
from .runtime import RuntimeState


class MessageHandler:
    """Turns an inbound lifecycle message into one orchestrator call.

    Messages for the same manifest identity are processed one at a time.
    """

    def __init__(self, orchestrator: DataServiceOrchestrator, state: RuntimeState | None = None):
        self.orchestrator = orchestrator
        self.state = state or RuntimeState()

    def process_message(self, payload: bytes | str | dict[str, Any]) -> ManifestStatus:
        if isinstance(payload, (bytes, str)):
            payload = json.loads(payload)
        if not isinstance(payload, dict):
            raise ValueError("Message must be a JSON object.")

        msg = CommandMessage.model_validate(payload)
        if msg.command not in COMMANDS:
            raise ValueError(f"Unknown command '{msg.command}'. Expected one of: {', '.join(COMMANDS)}.")

        uid = ManifestUniqueID(msg.manifest_name, format_version(msg.version_number))
        manifest = None
        if msg.command in DEPLOY_COMMANDS:
            manifest = parse_manifest(ManifestDocument.model_validate(payload))

        db.log_event("INFO", f"Received command {msg.command}", manifest_name=uid.manifest_name, version=uid.version_number)

        with self.state.exclusive(uid, msg.command):
            if manifest is not None:
                return self.orchestrator.deploy(manifest, msg.command)
            if msg.command == CMD_STOP_SERVICE:
                return self.orchestrator.stop_service(uid)
            if msg.command == CMD_START_SERVICE:
                return self.orchestrator.start_service(uid)
            # Only undeploy/remove are left.
            return self.orchestrator.undeploy(uid, msg.command)
