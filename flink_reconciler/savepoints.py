"""Deciding when to trigger manual and periodic savepoints."""
import logging
from datetime import timedelta
from typing import Dict, Optional, Union

from .config import OPERATOR_PERIODIC_SAVEPOINT_INTERVAL, get_duration
from .models import (
    FlinkDeployment,
    FlinkDeploymentSpec,
    FlinkSessionJob,
    FlinkSessionJobSpec,
    JobSpec,
    JobState,
    SavepointInfo,
    SavepointTriggerType,
    now_millis,
)
from .service import FlinkService

logger = logging.getLogger(__name__)


def savepoint_in_progress(savepoint_info: SavepointInfo) -> bool:
    return savepoint_info.trigger_in_progress


def should_trigger_manual_savepoint(job: Optional[JobSpec], last_reconciled_job: Optional[JobSpec]) -> bool:
    """A manual savepoint is due when the trigger nonce changed since the last reconcile."""
    if job is None or not job.savepoint_trigger_nonce:
        return False
    last_nonce = last_reconciled_job.savepoint_trigger_nonce if last_reconciled_job else None
    return job.savepoint_trigger_nonce != last_nonce


def should_trigger_periodic_savepoint(savepoint_info: SavepointInfo, conf: Dict[str, str],
                                      now: Optional[int] = None) -> bool:
    interval = get_duration(conf, OPERATOR_PERIODIC_SAVEPOINT_INTERVAL, timedelta(0))
    if interval.total_seconds() <= 0:
        return False
    now = now_millis() if now is None else now
    elapsed_ms = now - savepoint_info.last_periodic_savepoint_timestamp
    return elapsed_ms >= interval.total_seconds() * 1000


def trigger_savepoint_if_needed(flink_service: FlinkService, resource: Union[FlinkDeployment, FlinkSessionJob],
                                conf: Dict[str, str]) -> Optional[SavepointTriggerType]:
    """
    Trigger a manual or periodic savepoint for a running job when one is due.

    Returns:
        The trigger type used, or None when nothing was triggered
    """
    job = resource.spec.job
    job_status = resource.status.job_status
    savepoint_info = job_status.savepoint_info
    if job is None or job.state != JobState.RUNNING or not job_status.job_id:
        return None
    if savepoint_in_progress(savepoint_info):
        logger.info(f"Savepoint {savepoint_info.trigger_id} of {resource.metadata.name} still in progress")
        return None

    spec_cls = FlinkDeploymentSpec if isinstance(resource, FlinkDeployment) else FlinkSessionJobSpec
    last_spec = resource.status.reconciliation_status.deserialize_last_reconciled_spec(spec_cls)
    last_job = last_spec.job if last_spec is not None else None

    if should_trigger_manual_savepoint(job, last_job):
        trigger_type = SavepointTriggerType.MANUAL
    elif should_trigger_periodic_savepoint(savepoint_info, conf):
        trigger_type = SavepointTriggerType.PERIODIC
    else:
        return None

    flink_service.trigger_savepoint(job_status.job_id, savepoint_info, conf, trigger_type)
    if trigger_type == SavepointTriggerType.MANUAL and last_job is not None:
        # Only the nonce counts as reconciled, other pending spec changes do not
        last_job.savepoint_trigger_nonce = job.savepoint_trigger_nonce
        resource.status.reconciliation_status.serialize_and_set_last_reconciled_spec(last_spec)
    return trigger_type
