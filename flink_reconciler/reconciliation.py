"""
Reconciliation bookkeeping.

Records what was last applied to a cluster, records errors against the
resource status, and persists whole statuses.
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional, Union

from .kubernetes_client import KubernetesClient
from .models import FlinkDeployment, FlinkSessionJob, JobState, JobStatus, Savepoint, UpgradeMode, now_millis, to_dict
from .service import FlinkService

logger = logging.getLogger(__name__)

FlinkResource = Union[FlinkDeployment, FlinkSessionJob]


def update_for_spec_reconciliation_success(resource: FlinkResource):
    """Record the current spec as the last reconciled one."""
    reconciliation_status = resource.status.reconciliation_status
    reconciliation_status.serialize_and_set_last_reconciled_spec(resource.spec)
    reconciliation_status.reconciliation_timestamp = now_millis()
    resource.status.error = None


def update_for_reconciliation_error(resource: FlinkResource, error: str):
    logger.warning(f"Reconciliation error for {resource.metadata.name}: {error}")
    resource.status.error = error


def suspend_job(flink_service: FlinkService, job_status: JobStatus, upgrade_mode: UpgradeMode,
                conf: Dict[str, str]) -> Optional[str]:
    """Stop the tracked job with ``upgrade_mode`` and record the outcome on ``job_status``."""
    savepoint_path = flink_service.cancel_job(job_status.job_id, upgrade_mode, conf)
    job_status.state = JobState.SUSPENDED.name
    if savepoint_path is not None:
        job_status.savepoint_info.update_last_savepoint(Savepoint.of(savepoint_path))
    return savepoint_path


class StatusStore(ABC):
    """Persists resource statuses."""

    @abstractmethod
    def replace_status(self, resource: FlinkResource):
        ...


class KubernetesStatusStore(StatusStore):
    """
    Writes statuses to the status sub-resource.

    The status is always written as a whole so that fields changed by
    different observers in one pass land together.
    """

    def __init__(self, kubernetes_client: KubernetesClient):
        self.kubernetes_client = kubernetes_client

    def replace_status(self, resource: FlinkResource):
        self.kubernetes_client.replace_status(
            resource.plural,
            resource.metadata.name,
            to_dict(resource.status),
            namespace=resource.metadata.namespace,
        )
        logger.debug(f"Status of {resource.kind} {resource.metadata.name} persisted")
