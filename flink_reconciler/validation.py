"""
Validation of FlinkDeployment and FlinkSessionJob spec changes.

A validator returns the message of the first rule a resource violates, or
``None`` when the resource may be reconciled. Callers match messages by
prefix, so the leading phrase of every message is part of the contract.
"""
import logging
import re
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, List, Optional
from urllib.parse import urlsplit

from .config import (
    ALLOWED_LOG_CONF_KEYS,
    FORBIDDEN_CONF_KEYS,
    SAVEPOINT_DIRECTORY,
    get_savepoint_directory,
    is_kubernetes_ha_enabled,
    merge_user_config,
    parse_memory_size,
)
from .models import (
    FlinkDeployment,
    FlinkDeploymentSpec,
    FlinkSessionJob,
    FlinkSessionJobSpec,
    IngressSpec,
    JobManagerDeploymentStatus,
    JobManagerSpec,
    JobSpec,
    JobState,
    Resource,
    TaskManagerSpec,
    UpgradeMode,
)

logger = logging.getLogger(__name__)

# RFC 1123 host name
_HOST_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")


def first_present(*checks: Callable[[], Optional[str]]) -> Optional[str]:
    """Run checks in order and return the first error."""
    for check in checks:
        error = check()
        if error is not None:
            return error
    return None


class FlinkResourceValidator(ABC):
    """Validates resources before they are handed to the reconciler."""

    def configure(self, default_config: Dict[str, str]):
        """Receive the operator's default Flink configuration."""
        pass

    @abstractmethod
    def validate_deployment(self, deployment: FlinkDeployment) -> Optional[str]:
        ...

    @abstractmethod
    def validate_session_job(self, session_job: FlinkSessionJob,
                             session: Optional[FlinkDeployment]) -> Optional[str]:
        ...


class DefaultValidator(FlinkResourceValidator):
    """Built-in rules for deployments and session jobs."""

    def __init__(self, default_config: Optional[Dict[str, str]] = None):
        self.default_config = dict(default_config or {})

    def configure(self, default_config: Dict[str, str]):
        self.default_config = dict(default_config)

    # =========================================================================
    # FlinkDeployment
    # =========================================================================

    def validate_deployment(self, deployment: FlinkDeployment) -> Optional[str]:
        spec = deployment.spec
        effective_config = merge_user_config(self.default_config, spec.flink_configuration)
        return first_present(
            lambda: self._validate_flink_version(spec),
            lambda: self._validate_flink_config(spec.flink_configuration),
            lambda: self._validate_log_config(spec.log_configuration),
            lambda: self._validate_job_spec(spec.job, effective_config),
            lambda: self._validate_jm_spec(spec.job_manager, effective_config),
            lambda: self._validate_tm_spec(spec.task_manager),
            lambda: self._validate_ingress(spec.ingress, deployment.metadata.name, deployment.metadata.namespace),
            lambda: self._validate_initial_state(deployment),
            lambda: self._validate_spec_change(deployment, effective_config),
        )

    @staticmethod
    def _validate_flink_version(spec: FlinkDeploymentSpec) -> Optional[str]:
        if spec.flink_version is None:
            return "Flink Version must be defined."
        return None

    @staticmethod
    def _validate_flink_config(flink_configuration: Optional[Dict[str, str]]) -> Optional[str]:
        for key in flink_configuration or {}:
            if key in FORBIDDEN_CONF_KEYS:
                return f"Forbidden Flink config key: {key}"
        return None

    @staticmethod
    def _validate_log_config(log_configuration: Optional[Dict[str, str]]) -> Optional[str]:
        for key in log_configuration or {}:
            if key not in ALLOWED_LOG_CONF_KEYS:
                return f"Invalid log config key: {key}. Allowed keys are {list(ALLOWED_LOG_CONF_KEYS)}"
        return None

    def _validate_job_spec(self, job: Optional[JobSpec], effective_config: Dict[str, str]) -> Optional[str]:
        if job is None:
            return None

        if job.jar_uri is None or not job.jar_uri.strip():
            return "Jar URI must be defined"

        if job.parallelism is not None and job.parallelism <= 0:
            return "Job parallelism must be larger than 0"

        if job.upgrade_mode == UpgradeMode.LAST_STATE and not is_kubernetes_ha_enabled(effective_config):
            return "Job could not be upgraded with last-state while Kubernetes HA disabled"

        savepoint_dir = get_savepoint_directory(effective_config)
        if job.upgrade_mode == UpgradeMode.SAVEPOINT and savepoint_dir is None:
            return (
                f"Job could not be upgraded with savepoint while config key[{SAVEPOINT_DIRECTORY}] is not set"
            )

        if job.savepoint_trigger_nonce and job.state == JobState.RUNNING and savepoint_dir is None:
            return (
                "Savepoint could not be manually triggered for the running job while "
                f"config key[{SAVEPOINT_DIRECTORY}] is not set"
            )
        return None

    def _validate_jm_spec(self, jm: Optional[JobManagerSpec], effective_config: Dict[str, str]) -> Optional[str]:
        if jm is None:
            return None

        if jm.replicas < 1:
            return "JobManager replicas should not be configured less than one."
        if jm.replicas > 1 and not is_kubernetes_ha_enabled(effective_config):
            return "Kubernetes High availability should be enabled when starting standby JobManagers."
        return self._validate_resources("JobManager", jm.resource)

    def _validate_tm_spec(self, tm: Optional[TaskManagerSpec]) -> Optional[str]:
        if tm is None:
            return None
        return self._validate_resources("TaskManager", tm.resource)

    @staticmethod
    def _validate_resources(component: str, resource: Optional[Resource]) -> Optional[str]:
        if resource is None:
            return None

        if resource.memory is None:
            return f"{component} resource memory must be defined."
        try:
            parse_memory_size(resource.memory)
        except ValueError as e:
            return f"{component} resource memory parse error: {e}"
        return None

    @staticmethod
    def _validate_ingress(ingress: Optional[IngressSpec], name: Optional[str],
                          namespace: Optional[str]) -> Optional[str]:
        if ingress is None:
            return None

        template = ingress.template
        if template is None or not template.strip():
            return "Ingress template must be defined"

        rendered = template.replace("{{name}}", name or "").replace("{{namespace}}", namespace or "")
        try:
            validate_host(rendered)
        except ValueError as e:
            return f"Unable to process the Ingress template({template}). Error: {e}"
        return None

    @staticmethod
    def _validate_initial_state(deployment: FlinkDeployment) -> Optional[str]:
        job = deployment.spec.job
        if job is None or not deployment.status.reconciliation_status.is_first_deployment():
            return None
        if job.state != JobState.RUNNING:
            return "Job must start in running state"
        return None

    def _validate_spec_change(self, deployment: FlinkDeployment, effective_config: Dict[str, str]) -> Optional[str]:
        status = deployment.status
        last_spec = status.reconciliation_status.deserialize_last_reconciled_spec(FlinkDeploymentSpec)
        if last_spec is None:
            return None

        new_job, old_job = deployment.spec.job, last_spec.job
        if old_job is not None and new_job is None:
            return "Cannot switch from job to session cluster"
        if old_job is None and new_job is not None:
            return "Cannot switch from session to job cluster"
        if new_job is None:
            return None

        deployed_config = merge_user_config(self.default_config, last_spec.flink_configuration)
        if (old_job.upgrade_mode != UpgradeMode.LAST_STATE
                and new_job.upgrade_mode == UpgradeMode.LAST_STATE
                and status.job_manager_deployment_status == JobManagerDeploymentStatus.READY
                and not is_kubernetes_ha_enabled(deployed_config)):
            return (
                f"Job could not be upgraded to last-state while config key[{SAVEPOINT_DIRECTORY}] is not set"
            )

        if (old_job.state == JobState.SUSPENDED
                and new_job.state == JobState.RUNNING
                and new_job.upgrade_mode == UpgradeMode.SAVEPOINT):
            last_savepoint = status.job_status.savepoint_info.last_savepoint
            if last_savepoint is None or not (last_savepoint.location or "").strip():
                return "Cannot perform savepoint restore without a valid savepoint"
        return None

    # =========================================================================
    # FlinkSessionJob
    # =========================================================================

    def validate_session_job(self, session_job: FlinkSessionJob,
                             session: Optional[FlinkDeployment]) -> Optional[str]:
        spec = session_job.spec
        if session is None:
            effective_config = merge_user_config(self.default_config, spec.flink_configuration)
        else:
            effective_config = merge_user_config(
                merge_user_config(self.default_config, session.spec.flink_configuration),
                spec.flink_configuration,
            )

        return first_present(
            lambda: self._validate_session_job_spec(spec, effective_config),
            lambda: self._validate_session_job_spec_change(session_job),
            lambda: self._validate_not_application_cluster(session) if session is not None else None,
            lambda: self._validate_session_cluster_id(session_job, session) if session is not None else None,
        )

    def _validate_session_job_spec(self, spec: FlinkSessionJobSpec, effective_config: Dict[str, str]) -> Optional[str]:
        if spec.job is None:
            return "The job spec should not be empty"
        if spec.job.upgrade_mode == UpgradeMode.LAST_STATE:
            return "The LAST_STATE upgrade mode is not supported in session job now."
        return self._validate_job_spec(spec.job, effective_config)

    @staticmethod
    def _validate_session_job_spec_change(session_job: FlinkSessionJob) -> Optional[str]:
        last_spec = session_job.status.reconciliation_status.deserialize_last_reconciled_spec(FlinkSessionJobSpec)
        if last_spec is None:
            return None
        if last_spec.cluster_id != session_job.spec.cluster_id:
            return "The session job's cluster id can not be changed"
        return None

    @staticmethod
    def _validate_not_application_cluster(session: FlinkDeployment) -> Optional[str]:
        if session.spec.job is not None:
            return "Can not submit to application cluster"
        return None

    @staticmethod
    def _validate_session_cluster_id(session_job: FlinkSessionJob, session: FlinkDeployment) -> Optional[str]:
        if session_job.spec.cluster_id != session.metadata.name:
            return "The session job's cluster id is not match with the session cluster"
        return None


def validate_host(url_template: str):
    """Raise ``ValueError`` unless ``url_template`` starts with a valid host[:port]."""
    parts = urlsplit(f"http://{url_template}")
    host = parts.hostname
    if not host:
        raise ValueError(f"Host is missing in: \"{url_template}\"")
    # accessing the port validates it
    parts.port
    for label in host.rstrip(".").split("."):
        if not _HOST_LABEL.match(label):
            raise ValueError(f"Invalid host label \"{label}\" in: \"{host}\"")


class ValidatorRegistry:
    """
    Validators assembled once at startup.

    A resource is accepted only when every registered validator accepts it.
    Registration order carries no meaning.
    """

    def __init__(self, validators: Optional[Iterable[FlinkResourceValidator]] = None):
        self._validators: List[FlinkResourceValidator] = list(validators or [])

    def register(self, validator: FlinkResourceValidator):
        logger.info(f"Registered resource validator: {type(validator).__name__}")
        self._validators.append(validator)

    @property
    def validators(self) -> List[FlinkResourceValidator]:
        return list(self._validators)

    def validate_deployment(self, deployment: FlinkDeployment) -> Optional[str]:
        for validator in self._validators:
            error = validator.validate_deployment(deployment)
            if error is not None:
                logger.warning(f"Validation of {deployment.metadata.name} failed: {error}")
                return error
        return None

    def validate_session_job(self, session_job: FlinkSessionJob,
                             session: Optional[FlinkDeployment]) -> Optional[str]:
        for validator in self._validators:
            error = validator.validate_session_job(session_job, session)
            if error is not None:
                logger.warning(f"Validation of {session_job.metadata.name} failed: {error}")
                return error
        return None


def create_validator_registry(default_config: Dict[str, str],
                              extra_validators: Iterable[FlinkResourceValidator] = ()) -> ValidatorRegistry:
    """Build the registry from the default validator plus explicitly listed extras."""
    registry = ValidatorRegistry()
    registry.register(DefaultValidator(default_config))
    for validator in extra_validators:
        validator.configure(default_config)
        registry.register(validator)
    return registry
