"""Edge Agent.

Single-host agent that manages multi-container "data services" described by
declarative manifests:
 - deploy / redeploy / local deploy (pull images, create network, start containers)
 - stop and start a deployed service
 - undeploy and remove, with best-effort teardown
 - a persisted status ledger of every known manifest

The container engine is reached through a narrow runtime interface so the
lifecycle logic can be exercised without a Docker daemon.
"""
