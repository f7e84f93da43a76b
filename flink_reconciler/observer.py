"""
Observers folding the live state of Flink clusters back into resource status.

``JobStatusObserver`` and ``SavepointObserver`` work on a single job status;
``ApplicationObserver`` and ``SessionJobObserver`` compose them for the two
resource kinds. Observers mutate the status objects they are given in place
and must not be called concurrently for the same resource.
"""
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from .cluster_client import JobStatusMessage
from .config import (
    CLUSTER_ID,
    NAMESPACE,
    OPERATOR_SAVEPOINT_TRIGGER_TIMEOUT,
    OperatorConfiguration,
    build_effective_config,
    get_deployed_config,
    get_duration,
)
from .exceptions import JobControllerTimeoutError, check_argument
from .kubernetes_client import KubernetesClient
from .models import (
    FlinkDeployment,
    FlinkDeploymentSpec,
    FlinkSessionJob,
    JobManagerDeploymentStatus,
    JobState,
    JobStatus,
    Savepoint,
    SavepointInfo,
    SavepointTriggerType,
    now_millis,
)
from .reconciliation import update_for_reconciliation_error
from .service import FlinkService

logger = logging.getLogger(__name__)


@dataclass
class ObserverContext:
    """Per-call context handed to timeout handlers."""
    timeout: Optional[timedelta] = None
    deployment: Optional[FlinkDeployment] = None
    effective_config: Optional[Dict[str, str]] = None


VOID_CONTEXT = ObserverContext()

TimeoutHandler = Callable[[ObserverContext], None]


def ignore_timeout(context: ObserverContext):
    pass


def normalize_job_id(job_id: str) -> str:
    return str(job_id).strip().lower()


class JobStatusObserver:
    """
    Tracks one job of a cluster.

    The job is identified by ``JobStatus.job_id``. When listing the cluster's
    jobs runs past the context's time budget, or times out, ``on_timeout`` is
    invoked with the context so each resource kind can apply its own policy.
    """

    def __init__(self, flink_service: FlinkService, on_timeout: TimeoutHandler = ignore_timeout,
                 clock: Callable[[], float] = time.monotonic):
        self.flink_service = flink_service
        self._on_timeout = on_timeout
        self._clock = clock

    def observe(self, job_status: JobStatus, effective_config: Dict[str, str],
                context: ObserverContext = VOID_CONTEXT) -> bool:
        """
        Refresh ``job_status`` from the cluster.

        Returns:
            True if the tracked job was found on the cluster
        """
        if not job_status.job_id:
            logger.debug("No job id tracked yet, nothing to observe")
            return False

        logger.info(f"Observing status of job {job_status.job_id}")
        started = self._clock()
        try:
            cluster_jobs = self.flink_service.list_jobs(effective_config)
        except JobControllerTimeoutError:
            logger.error(f"Listing jobs timed out while observing job {job_status.job_id}")
            self._on_timeout(context)
            raise

        elapsed = self._clock() - started
        if context.timeout is not None and elapsed > context.timeout.total_seconds():
            logger.warning(f"Listing jobs took {elapsed:.1f}s, over the {context.timeout.total_seconds()}s budget")
            self._on_timeout(context)

        return self._update_job_status(job_status, cluster_jobs)

    @staticmethod
    def _update_job_status(job_status: JobStatus, cluster_jobs: List[JobStatusMessage]) -> bool:
        job_id = normalize_job_id(job_status.job_id)
        matched = [job for job in cluster_jobs if normalize_job_id(job.job_id) == job_id]
        check_argument(
            len(matched) <= 1,
            f"Expected one job for JobID: {job_status.job_id}, but {len(matched)} found",
        )

        if not matched:
            logger.info(f"No job found for JobID: {job_status.job_id}")
            return False

        job = matched[0]
        previous_state = job_status.state
        job_status.state = job.job_state
        job_status.job_name = job.job_name
        job_status.start_time = str(job.start_time)
        job_status.update_time = str(now_millis())

        if previous_state == job_status.state:
            logger.info(f"Job status ({job_status.state}) unchanged")
        else:
            logger.info(f"Job status successfully updated from {previous_state} to {job_status.state}")
        return True


class SavepointObserver:
    """Resolves pending savepoint triggers into completed, failed or timed out."""

    def __init__(self, flink_service: FlinkService, operator_config: OperatorConfiguration,
                 clock: Callable[[], int] = now_millis):
        self.flink_service = flink_service
        self.operator_config = operator_config
        self._clock = clock

    def observe(self, savepoint_info: SavepointInfo, job_id: str,
                effective_config: Dict[str, str]) -> Optional[str]:
        """
        Poll the pending trigger, if any.

        Returns:
            An error message when the savepoint failed or timed out, otherwise None
        """
        if not savepoint_info.trigger_in_progress:
            return None

        trigger_id = savepoint_info.trigger_id
        logger.info(f"Observing savepoint {trigger_id} of job {job_id}")
        result = self.flink_service.fetch_savepoint_info(trigger_id, job_id, effective_config)

        if result.error is not None:
            savepoint_info.reset_trigger()
            error = f"Savepoint failed: {result.error}"
            logger.error(error)
            return error

        if result.pending:
            if savepoint_info.trigger_timestamp is None:
                # trigger recorded without a timestamp, the budget starts now
                savepoint_info.trigger_timestamp = self._clock()
                logger.info("Savepoint is still in progress")
                return None
            timeout = get_duration(
                effective_config, OPERATOR_SAVEPOINT_TRIGGER_TIMEOUT, self.operator_config.savepoint_trigger_timeout)
            pending_ms = self._clock() - savepoint_info.trigger_timestamp
            if pending_ms > timeout.total_seconds() * 1000:
                savepoint_info.reset_trigger()
                error = f"Savepoint timed out: trigger {trigger_id} of job {job_id} still pending after {timeout}"
                logger.error(error)
                return error
            logger.info("Savepoint is still in progress")
            return None

        savepoint = Savepoint(
            time_stamp=self._clock(),
            location=result.location,
            trigger_type=savepoint_info.trigger_type or SavepointTriggerType.UNKNOWN,
        )
        savepoint_info.update_last_savepoint(savepoint, self.operator_config.savepoint_history_max_count)
        logger.info(f"Savepoint completed at {savepoint.location}")
        return None


class ApplicationObserver:
    """Observes FlinkDeployments: JobManager deployment, job and savepoints."""

    def __init__(self, kubernetes_client: KubernetesClient, flink_service: FlinkService,
                 operator_config: OperatorConfiguration, default_config: Dict[str, str]):
        self.kubernetes_client = kubernetes_client
        self.operator_config = operator_config
        self.default_config = default_config
        self.savepoint_observer = SavepointObserver(flink_service, operator_config)
        self.job_status_observer = JobStatusObserver(flink_service, on_timeout=self._on_job_timeout)

    def observe(self, deployment: FlinkDeployment):
        deployed_config = get_deployed_config(deployment, self.default_config)
        if deployed_config is None:
            logger.info(f"{deployment.metadata.name} not deployed yet, skipping observe")
            return

        self.observe_jm_deployment(deployment, deployed_config)
        status = deployment.status
        if status.job_manager_deployment_status != JobManagerDeploymentStatus.READY:
            return

        last_spec = status.reconciliation_status.deserialize_last_reconciled_spec(FlinkDeploymentSpec)
        if last_spec.job is None:
            status.reconciliation_status.mark_reconciled_spec_as_stable()
            return
        if last_spec.job.state == JobState.SUSPENDED:
            return

        context = ObserverContext(
            timeout=self.operator_config.flink_client_timeout,
            deployment=deployment,
            effective_config=deployed_config,
        )
        job_status = status.job_status
        if not self.job_status_observer.observe(job_status, deployed_config, context):
            return

        error = self.savepoint_observer.observe(job_status.savepoint_info, job_status.job_id, deployed_config)
        if error is not None:
            update_for_reconciliation_error(deployment, error)
        if job_status.state == "RUNNING":
            status.reconciliation_status.mark_reconciled_spec_as_stable()

    def observe_jm_deployment(self, deployment: FlinkDeployment, deployed_config: Dict[str, str]):
        """Derive the JobManager deployment status from its Kubernetes deployment."""
        status = deployment.status
        previous = status.job_manager_deployment_status
        k8s_deployment = self.kubernetes_client.get_deployment(
            deployed_config[CLUSTER_ID], deployed_config.get(NAMESPACE))

        if k8s_deployment is None:
            current = JobManagerDeploymentStatus.MISSING
        else:
            desired = (k8s_deployment.spec.replicas if k8s_deployment.spec else None) or 1
            available = (k8s_deployment.status.available_replicas if k8s_deployment.status else None) or 0
            if available < desired:
                current = JobManagerDeploymentStatus.DEPLOYING
            elif previous in (JobManagerDeploymentStatus.DEPLOYING, JobManagerDeploymentStatus.MISSING):
                # REST endpoint may still be starting, promote on the next observe
                current = JobManagerDeploymentStatus.DEPLOYED_NOT_READY
            else:
                current = JobManagerDeploymentStatus.READY

        if current != previous:
            logger.info(f"JobManager deployment of {deployment.metadata.name} moved from {previous.value} "
                        f"to {current.value}")
        status.job_manager_deployment_status = current

    def _on_job_timeout(self, context: ObserverContext):
        if context.deployment is None or context.effective_config is None:
            return
        logger.warning(f"Job listing of {context.deployment.metadata.name} timed out, "
                       f"re-checking the JobManager deployment")
        self.observe_jm_deployment(context.deployment, context.effective_config)


class SessionJobObserver:
    """Observes FlinkSessionJobs running on a session cluster."""

    def __init__(self, flink_service: FlinkService, operator_config: OperatorConfiguration,
                 default_config: Dict[str, str]):
        self.default_config = default_config
        self.savepoint_observer = SavepointObserver(flink_service, operator_config)
        # the session cluster's own observer handles unresponsive clusters
        self.job_status_observer = JobStatusObserver(flink_service, on_timeout=ignore_timeout)

    def observe(self, session_job: FlinkSessionJob, session: Optional[FlinkDeployment]):
        if session_job.status.reconciliation_status.is_first_deployment():
            return

        if session is None or session.status.job_manager_deployment_status != JobManagerDeploymentStatus.READY:
            logger.info(f"Session cluster of {session_job.metadata.name} is not ready, skipping observe")
            return

        session_config = get_deployed_config(session, self.default_config) \
            or build_effective_config(session, self.default_config)
        job_status = session_job.status.job_status
        if not self.job_status_observer.observe(job_status, session_config, VOID_CONTEXT):
            return

        error = self.savepoint_observer.observe(job_status.savepoint_info, job_status.job_id, session_config)
        if error is not None:
            update_for_reconciliation_error(session_job, error)
