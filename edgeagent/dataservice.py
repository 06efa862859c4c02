from __future__ import annotations

from collections import Counter
from datetime import datetime

from . import db
from .docker_ops import ContainerLog, ContainerRuntime
from .errors import (
    AlreadyExists,
    ContainerStartFailed,
    ImagePullFailed,
    NetworkCreateFailed,
    NoContainers,
    NoModules,
    NotFound,
    RedeployTeardownFailed,
    RuntimeCallError,
    StartFailed,
    StopFailed,
    UndeployPartialFailure,
)
from .ledger import ManifestStatus, StatusLedger
from .manifest import Manifest, ManifestUniqueID, RegistryDetails


CMD_DEPLOY = "deploy"
CMD_REDEPLOY = "redeploy"
CMD_DEPLOY_LOCAL = "local_deploy"
CMD_STOP_SERVICE = "stopservice"
CMD_START_SERVICE = "startservice"
CMD_UNDEPLOY = "undeploy"
CMD_REMOVE = "remove"

DEPLOY_COMMANDS = (CMD_DEPLOY, CMD_REDEPLOY, CMD_DEPLOY_LOCAL)
TEARDOWN_COMMANDS = (CMD_UNDEPLOY, CMD_REMOVE)
COMMANDS = DEPLOY_COMMANDS + (CMD_STOP_SERVICE, CMD_START_SERVICE) + TEARDOWN_COMMANDS

# command -> (in progress, success, failure)
STATUSES: dict[str, tuple[str, str, str]] = {
    CMD_DEPLOY: ("DEPLOYING", "DEPLOYED", "DEPLOY_FAILED"),
    CMD_REDEPLOY: ("REDEPLOYING", "REDEPLOYED", "REDEPLOY_FAILED"),
    CMD_DEPLOY_LOCAL: ("LOCAL_DEPLOYING", "LOCAL_DEPLOYED", "LOCAL_DEPLOY_FAILED"),
    CMD_STOP_SERVICE: ("STOPPING", "STOPPED", "STOP_CONTAINER_FAILED"),
    CMD_START_SERVICE: ("STARTING", "STARTED", "START_FAILED"),
    CMD_UNDEPLOY: ("UNDEPLOYING", "UNDEPLOYED", "UNDEPLOY_FAILED"),
    CMD_REMOVE: ("REMOVING", "REMOVED", "REMOVE_FAILED"),
}
STATUS_STOP_SERVICE_FAILED = "STOP_SERVICE_FAILED"

STATE_RUNNING = "running"
STARTABLE_STATES = {"exited", "created", "paused"}


class DataServiceOrchestrator:
    """Runs lifecycle commands for data services and records the outcome in the ledger.

    No locking happens here: callers must not run two commands for the same
    identity at once (see RuntimeState.exclusive).
    """

    def __init__(self, runtime: ContainerRuntime, ledger: StatusLedger):
        self.runtime = runtime
        self.ledger = ledger

    def _log(self, uid: ManifestUniqueID, level: str, message: str) -> None:
        db.log_event(level, message, manifest_name=uid.manifest_name, version=uid.version_number)

    def data_service_exists(self, uid: ManifestUniqueID) -> bool:
        return len(self.runtime.list_networks(uid)) > 0

    def _require_known(self, uid: ManifestUniqueID) -> None:
        # No containers and no ledger row: nothing was ever deployed under this identity.
        if self.ledger.get(uid) is None:
            self._log(uid, "ERROR", f"Unknown data service {uid.manifest_name} {uid.version_number}")
            raise NotFound(f"data service {uid.manifest_name} {uid.version_number} not found")

    # Deploy

    def deploy(self, manifest: Manifest, command: str = CMD_DEPLOY) -> ManifestStatus:
        """Deploy a manifest: pull missing images, create the network, start containers in order.

        REDEPLOY and LOCAL_DEPLOY tear down an existing deployment first; DEPLOY
        refuses to touch one.
        """
        if command not in DEPLOY_COMMANDS:
            raise ValueError(f"'{command}' is not a deploy command")

        uid = manifest.unique_id
        pending, done, failed = STATUSES[command]

        def set_status(status: str, in_transition: bool = False) -> ManifestStatus:
            return self.ledger.set_status(
                uid,
                status,
                in_transition=in_transition,
                manifest_id=manifest.manifest_id,
                container_count=len(manifest.modules),
            )

        self._log(uid, "INFO", f"Running {command} for data service ...")

        # Step 1: existing deployment
        try:
            exists = self.data_service_exists(uid)
        except RuntimeCallError as e:
            self._log(uid, "ERROR", f"Could not check for an existing deployment: {e}")
            set_status(failed)
            raise

        if exists and command == CMD_DEPLOY:
            self._log(uid, "INFO", f"Data service {uid.manifest_name} {uid.version_number} already exists")
            raise AlreadyExists(f"Data service {uid.manifest_name} {uid.version_number} already exists")

        set_status(pending, in_transition=True)

        if exists:
            causes = self._teardown(uid, remove_images=False)
            if causes:
                self._log(uid, "ERROR", "Error while cleaning old data service: " + "; ".join(causes))
                set_status(failed)
                raise RedeployTeardownFailed("redeployment failed: " + "; ".join(causes))

        # Step 2: images
        self._log(uid, "INFO", "Iterating modules, pulling image into host if missing ...")
        for registry in self._distinct_images(manifest):
            ref = registry.image_name
            try:
                if self.runtime.image_exists(ref):
                    self._log(uid, "INFO", f"Image {ref} already exists on host")
                    continue
                self._log(uid, "INFO", f"Image {ref} does not exist on host, pulling")
                self.runtime.pull_image(registry)
            except RuntimeCallError as e:
                self._log(uid, "ERROR", f"Unable to pull image {ref}: {e}")
                set_status(failed)
                raise ImagePullFailed(f"unable to pull image {ref}") from e

        # Step 3: network
        try:
            network_name = self.runtime.create_network(manifest.application_id, manifest.labels)
        except RuntimeCallError as e:
            self._log(uid, "ERROR", f"Unable to create network: {e}")
            set_status(failed)
            raise NetworkCreateFailed(f"unable to create network: {e}") from e
        manifest.update_manifest(network_name)
        self._log(uid, "INFO", f"Created network {network_name}")

        # Step 4: containers
        if not manifest.modules:
            self._log(uid, "ERROR", "No valid containers in manifest, initiating rollback ...")
            self._rollback(uid)
            set_status(failed)
            raise NoModules("no valid containers in manifest")

        for cfg in manifest.modules:
            self._log(uid, "INFO", f"Creating {cfg.container_name} from {cfg.image_ref}")
            try:
                container_id = self.runtime.create_and_start_container(cfg)
            except RuntimeCallError as e:
                self._log(uid, "ERROR", f"Failed to create and start container {cfg.container_name}: {e}")
                self._log(uid, "INFO", "Initiating rollback ...")
                self._rollback(uid)
                set_status(failed)
                raise ContainerStartFailed(f"failed to create and start container {cfg.container_name}") from e
            self._log(uid, "INFO", f"Started container {cfg.container_name} ({container_id}) with args {cfg.entry_point_args}")

        return set_status(done)

    def redeploy(self, manifest: Manifest) -> ManifestStatus:
        return self.deploy(manifest, CMD_REDEPLOY)

    @staticmethod
    def _distinct_images(manifest: Manifest) -> list[RegistryDetails]:
        seen: dict[str, RegistryDetails] = {}
        for cfg in manifest.modules:
            seen.setdefault(cfg.image_ref, cfg.registry)
        return list(seen.values())

    # Stop / start

    def stop_service(self, uid: ManifestUniqueID) -> ManifestStatus:
        """Stop every running container of the data service; stops at the first failure."""
        pending, done, failed = STATUSES[CMD_STOP_SERVICE]
        self._log(uid, "INFO", "Stopping data service ...")

        try:
            containers = self.runtime.list_containers(uid)
        except RuntimeCallError as e:
            self._log(uid, "ERROR", f"Failed to read data service containers: {e}")
            self.ledger.set_status(uid, STATUS_STOP_SERVICE_FAILED)
            raise StopFailed("failed to read data service containers") from e

        if not containers:
            self._require_known(uid)

        self.ledger.set_status(uid, pending, in_transition=True)
        for c in containers:
            names = ",".join(c.names)
            if c.state != STATE_RUNNING:
                self._log(uid, "DEBUG", f"Container {names} is {c.state} ({c.status}), leaving it")
                continue
            try:
                self.runtime.stop_container(c.id)
            except RuntimeCallError as e:
                self._log(uid, "ERROR", f"Could not stop container {names}: {e}")
                self.ledger.set_status(uid, failed)
                raise StopFailed(f"could not stop container {names}") from e
            self._log(uid, "INFO", f"{names}: {c.status} --> exited")

        return self.ledger.set_status(uid, done)

    def start_service(self, uid: ManifestUniqueID) -> ManifestStatus:
        """Start every exited, created or paused container of the data service."""
        pending, done, failed = STATUSES[CMD_START_SERVICE]
        self._log(uid, "INFO", "Starting data service ...")

        try:
            containers = self.runtime.list_containers(uid)
        except RuntimeCallError as e:
            self._log(uid, "ERROR", f"Failed to read data service containers: {e}")
            self.ledger.set_status(uid, failed)
            raise StartFailed("failed to read data service containers") from e

        if not containers:
            self._require_known(uid)
            self._log(uid, "ERROR", "No data service containers found")
            self.ledger.set_status(uid, failed)
            raise NoContainers("no data service containers found")

        self.ledger.set_status(uid, pending, in_transition=True)
        for c in containers:
            if c.state not in STARTABLE_STATES:
                continue
            names = ",".join(c.names)
            try:
                self.runtime.start_container(c.id)
            except RuntimeCallError as e:
                self._log(uid, "ERROR", f"Could not start container {names}: {e}")
                self.ledger.set_status(uid, failed)
                raise StartFailed(f"could not start container {names}") from e
            self._log(uid, "INFO", f"{names}: {c.state} --> running")

        return self.ledger.set_status(uid, done)

    # Undeploy / remove

    def undeploy(self, uid: ManifestUniqueID, command: str = CMD_UNDEPLOY) -> ManifestStatus:
        """Tear the data service down: containers, then (for REMOVE) unused images, then the network.

        Every step runs even if an earlier one failed; failures are reported
        together as UndeployPartialFailure. Undeploying a data service that does
        not exist changes nothing and records the failure status.
        """
        if command not in TEARDOWN_COMMANDS:
            raise ValueError(f"'{command}' is not a teardown command")
        pending, done, failed = STATUSES[command]
        self._log(uid, "INFO", f"Running {command} for data service ...")

        try:
            exists = self.data_service_exists(uid)
        except RuntimeCallError as e:
            self._log(uid, "ERROR", f"Could not check for an existing deployment: {e}")
            self.ledger.set_status(uid, failed)
            raise

        if not exists:
            self._log(uid, "ERROR", f"Data service {uid.manifest_name} {uid.version_number} does not exist")
            return self.ledger.set_status(uid, failed)

        self.ledger.set_status(uid, pending, in_transition=True)
        causes = self._teardown(uid, remove_images=command == CMD_REMOVE)
        if causes:
            self._log(uid, "ERROR", "Data service could not be undeployed completely: " + "; ".join(causes))
            self.ledger.set_status(uid, failed)
            raise UndeployPartialFailure(causes)

        return self.ledger.set_status(uid, done)

    def remove(self, uid: ManifestUniqueID) -> ManifestStatus:
        return self.undeploy(uid, CMD_REMOVE)

    # Logs

    def container_logs(
        self,
        uid: ManifestUniqueID,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[ContainerLog]:
        """Read the logs of every container of the data service. Does not touch the ledger."""
        containers = self.runtime.list_containers(uid)
        if not containers:
            self._require_known(uid)
            raise NoContainers("no data service containers found")
        return [self.runtime.container_logs(c.id, since=since, until=until) for c in containers]

    def _rollback(self, uid: ManifestUniqueID) -> None:
        causes = self._teardown(uid, remove_images=False)
        if causes:
            self._log(uid, "ERROR", "Rollback incomplete: " + "; ".join(causes))
        else:
            self._log(uid, "INFO", "Rollback finished")

    def _teardown(self, uid: ManifestUniqueID, remove_images: bool) -> list[str]:
        """Best-effort removal of everything labelled with ``uid``. Returns failure causes."""
        causes: list[str] = []

        # Step 1: containers
        try:
            containers = self.runtime.list_containers(uid)
        except RuntimeCallError as e:
            causes.append(str(e))
            containers = []

        image_ids: list[str] = []
        for c in containers:
            if c.image_id and c.image_id not in image_ids:
                image_ids.append(c.image_id)
            try:
                self.runtime.stop_and_remove_container(c.id)
            except RuntimeCallError as e:
                self._log(uid, "ERROR", str(e))
                causes.append(str(e))

        # Step 2: images no container on the host uses any more
        if remove_images and image_ids:
            try:
                in_use = Counter(c.image_id for c in self.runtime.list_all_containers())
            except RuntimeCallError as e:
                causes.append(str(e))
            else:
                for image_id in image_ids:
                    if in_use[image_id]:
                        self._log(uid, "INFO", f"Keeping image {image_id}, used by {in_use[image_id]} other container(s)")
                        continue
                    self._log(uid, "INFO", f"Removing image {image_id}")
                    try:
                        self.runtime.image_remove(image_id)
                    except RuntimeCallError as e:
                        self._log(uid, "ERROR", str(e))
                        causes.append(str(e))

        # Step 3: network
        self._log(uid, "INFO", "Pruning networks ...")
        try:
            self.runtime.network_prune(uid)
        except RuntimeCallError as e:
            self._log(uid, "ERROR", str(e))
            causes.append(str(e))

        return causes
