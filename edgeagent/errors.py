from __future__ import annotations


class RuntimeCallError(Exception):
    """A call into the container engine failed."""


class RuntimeTimeout(RuntimeCallError):
    """A call into the container engine did not answer in time."""


class DataServiceError(Exception):
    """Base class for lifecycle failures reported by the orchestrator."""

    @property
    def timed_out(self) -> bool:
        cause = self.__cause__
        while cause is not None:
            if isinstance(cause, RuntimeTimeout):
                return True
            cause = cause.__cause__
        return False


class AlreadyExists(DataServiceError):
    pass


class NotFound(DataServiceError):
    pass


class ImagePullFailed(DataServiceError):
    pass


class NetworkCreateFailed(DataServiceError):
    pass


class NoModules(DataServiceError):
    pass


class ContainerStartFailed(DataServiceError):
    pass


class NoContainers(DataServiceError):
    pass


class StopFailed(DataServiceError):
    pass


class StartFailed(DataServiceError):
    pass


class RedeployTeardownFailed(DataServiceError):
    pass


class UndeployPartialFailure(DataServiceError):
    """Teardown finished but some resources could not be cleaned up."""

    def __init__(self, causes: list[str]):
        self.causes = list(causes)
        super().__init__("Data service could not be undeployed completely. Cause(s): " + "; ".join(self.causes))
