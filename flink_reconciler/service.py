"""
Job control for Flink clusters.

``FlinkService`` decides how a running job is stopped for each upgrade mode
and how savepoints are triggered and fetched. The cluster itself is reached
through a ``ClusterClient`` created per call from the effective configuration.
"""
import logging
from typing import Callable, Dict, List, Optional

from .cluster_client import ClusterClient, JobStatusMessage, RestClusterClient, SavepointFetchResult, rest_url
from .config import CLUSTER_ID, NAMESPACE, OperatorConfiguration, get_savepoint_directory
from .exceptions import check_not_null
from .kubernetes_client import KubernetesClient
from .models import SavepointInfo, SavepointTriggerType, UpgradeMode

logger = logging.getLogger(__name__)

ClusterClientFactory = Callable[[Dict[str, str]], ClusterClient]


class FlinkService:
    """Cancel, savepoint and list operations against Flink clusters."""

    def __init__(self, kubernetes_client: KubernetesClient, operator_config: OperatorConfiguration,
                 cluster_client_factory: Optional[ClusterClientFactory] = None):
        self.kubernetes_client = kubernetes_client
        self.operator_config = operator_config
        self._cluster_client_factory = cluster_client_factory or self._create_rest_client

    def _create_rest_client(self, conf: Dict[str, str]) -> ClusterClient:
        return RestClusterClient(
            rest_url(conf),
            timeout=self.operator_config.flink_client_timeout.total_seconds(),
            stop_timeout=self.operator_config.flink_cancel_timeout.total_seconds(),
        )

    def get_cluster_client(self, conf: Dict[str, str]) -> ClusterClient:
        return self._cluster_client_factory(conf)

    def cancel_job(self, job_id: str, upgrade_mode: UpgradeMode, conf: Dict[str, str]) -> Optional[str]:
        """
        Stop a running job the way its upgrade mode requires.

        Args:
            job_id: Id of the job to stop
            upgrade_mode: STATELESS cancels, SAVEPOINT stops with a savepoint,
                LAST_STATE removes the JobManager deployment and leaves the job alone
            conf: Effective configuration of the cluster

        Returns:
            The savepoint path for SAVEPOINT, otherwise None
        """
        if upgrade_mode == UpgradeMode.STATELESS:
            with self.get_cluster_client(conf) as cluster_client:
                cluster_client.cancel(job_id)
            logger.info(f"Job {job_id} cancelled without state")
            return None

        if upgrade_mode == UpgradeMode.SAVEPOINT:
            savepoint_dir = get_savepoint_directory(conf)
            with self.get_cluster_client(conf) as cluster_client:
                savepoint_path = cluster_client.stop_with_savepoint(
                    job_id, advance_to_end_of_event_time=False, savepoint_dir=savepoint_dir)
            logger.info(f"Job {job_id} stopped with savepoint {savepoint_path}")
            return savepoint_path

        if upgrade_mode == UpgradeMode.LAST_STATE:
            cluster_id = check_not_null(conf.get(CLUSTER_ID), "Cluster id must be set to delete the cluster")
            # HA metadata stays, the restarted JobManager recovers the job from it
            self.delete_cluster(conf.get(NAMESPACE), cluster_id, delete_ha_data=False)
            logger.info(f"Cluster {cluster_id} deleted for last-state upgrade of job {job_id}")
            return None

        raise ValueError(f"Unknown upgrade mode: {upgrade_mode}")

    def delete_cluster(self, namespace: Optional[str], cluster_id: str, delete_ha_data: bool):
        self.kubernetes_client.delete_deployment(cluster_id, namespace)
        if delete_ha_data:
            self.kubernetes_client.delete_ha_config_maps(cluster_id, namespace)

    def trigger_savepoint(self, job_id: str, savepoint_info: SavepointInfo, conf: Dict[str, str],
                          trigger_type: SavepointTriggerType = SavepointTriggerType.MANUAL) -> str:
        """Trigger a savepoint without waiting for it and record the trigger on ``savepoint_info``."""
        with self.get_cluster_client(conf) as cluster_client:
            trigger_id = cluster_client.trigger_savepoint(
                job_id, target_directory=get_savepoint_directory(conf), cancel_job=False)
        savepoint_info.set_trigger(trigger_id, trigger_type)
        logger.info(f"{trigger_type.value} savepoint of job {job_id} triggered, trigger id {trigger_id}")
        return trigger_id

    def fetch_savepoint_info(self, trigger_id: str, job_id: str, conf: Dict[str, str]) -> SavepointFetchResult:
        with self.get_cluster_client(conf) as cluster_client:
            return cluster_client.get_savepoint_status(job_id, trigger_id)

    def list_jobs(self, conf: Dict[str, str]) -> List[JobStatusMessage]:
        with self.get_cluster_client(conf) as cluster_client:
            return cluster_client.list_jobs()
