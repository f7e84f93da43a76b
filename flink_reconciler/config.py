"""
Flink and operator configuration.

Configuration is handled as flat ``Dict[str, str]`` maps keyed by Flink
option names. The effective configuration of a deployment is assembled by a
pipeline of ``apply_*`` steps, each taking the current map and returning a
new one.
"""
import hashlib
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml

from .models import FlinkDeployment, FlinkDeploymentSpec, Resource, UpgradeMode

logger = logging.getLogger(__name__)

# Kubernetes / cluster identity
NAMESPACE = "kubernetes.namespace"
CLUSTER_ID = "kubernetes.cluster-id"
CONTAINER_IMAGE = "kubernetes.container.image"
CONTAINER_IMAGE_PULL_POLICY = "kubernetes.container.image.pull-policy"
SERVICE_ACCOUNT = "kubernetes.service-account"
POD_TEMPLATE = "kubernetes.pod-template-file"
JOB_MANAGER_POD_TEMPLATE = "kubernetes.pod-template-file.jobmanager"
TASK_MANAGER_POD_TEMPLATE = "kubernetes.pod-template-file.taskmanager"
JOB_MANAGER_REPLICAS = "kubernetes.jobmanager.replicas"
JOB_MANAGER_CPU = "kubernetes.jobmanager.cpu"
TASK_MANAGER_CPU = "kubernetes.taskmanager.cpu"
REST_SERVICE_EXPOSED_TYPE = "kubernetes.rest-service.exposed.type"

# High availability
HA_MODE = "high-availability"
HA_STORAGE_PATH = "high-availability.storageDir"
KUBERNETES_HA_FACTORY = "org.apache.flink.kubernetes.highavailability.KubernetesHaServicesFactory"

# State
SAVEPOINT_DIRECTORY = "state.savepoints.dir"
CHECKPOINTING_INTERVAL = "execution.checkpointing.interval"

# Processes and pipeline
JOB_MANAGER_MEMORY = "jobmanager.memory.process.size"
TASK_MANAGER_MEMORY = "taskmanager.memory.process.size"
DEPLOYMENT_TARGET = "execution.target"
PIPELINE_JARS = "pipeline.jars"
DEFAULT_PARALLELISM = "parallelism.default"
CANCEL_ENABLE = "web.cancel.enable"
CONF_DIR = "$internal.deployment.config-dir"
REST_ADDRESS = "rest.address"
REST_PORT = "rest.port"

# Operator
OPERATOR_RECONCILE_INTERVAL = "kubernetes.operator.reconciler.reschedule.interval"
OPERATOR_FLINK_CLIENT_TIMEOUT = "kubernetes.operator.flink.client.timeout"
OPERATOR_FLINK_CLIENT_CANCEL_TIMEOUT = "kubernetes.operator.flink.client.cancel.timeout"
OPERATOR_SAVEPOINT_TRIGGER_TIMEOUT = "kubernetes.operator.savepoint.trigger.timeout"
OPERATOR_SAVEPOINT_HISTORY_MAX_COUNT = "kubernetes.operator.savepoint.history.max.count"
OPERATOR_PERIODIC_SAVEPOINT_INTERVAL = "kubernetes.operator.periodic.savepoint.interval"

# Keys the operator owns; users may not set them
FORBIDDEN_CONF_KEYS = (NAMESPACE, CLUSTER_ID)

CONFIG_FILE_LOG4J_NAME = "log4j-console.properties"
CONFIG_FILE_LOGBACK_NAME = "logback-console.xml"
ALLOWED_LOG_CONF_KEYS = (CONFIG_FILE_LOG4J_NAME, CONFIG_FILE_LOGBACK_NAME)

DEFAULT_CHECKPOINTING_INTERVAL = "5 min"
DEFAULT_REST_PORT = 8081
FLINK_CONF_FILENAME = "flink-conf.yaml"

_MEMORY_UNITS = {
    "b": 1, "bytes": 1,
    "k": 1 << 10, "kb": 1 << 10, "kibibytes": 1 << 10,
    "m": 1 << 20, "mb": 1 << 20, "mebibytes": 1 << 20,
    "g": 1 << 30, "gb": 1 << 30, "gibibytes": 1 << 30,
    "t": 1 << 40, "tb": 1 << 40, "tebibytes": 1 << 40,
}

_DURATION_UNITS = {
    "ms": 1, "milli": 1, "millis": 1, "millisecond": 1, "milliseconds": 1,
    "s": 1000, "sec": 1000, "secs": 1000, "second": 1000, "seconds": 1000,
    "m": 60_000, "min": 60_000, "mins": 60_000, "minute": 60_000, "minutes": 60_000,
    "h": 3_600_000, "hour": 3_600_000, "hours": 3_600_000,
    "d": 86_400_000, "day": 86_400_000, "days": 86_400_000,
}

_AMOUNT_PATTERN = re.compile(r"^(\d+)\s*([a-zA-Z]*)$")


def parse_memory_size(text: str) -> int:
    """Parse a Flink memory size such as ``1g``, ``512 mb`` or ``100`` into bytes."""
    if text is None:
        raise ValueError("Memory size must not be null")
    trimmed = text.strip()
    if not trimmed:
        raise ValueError("argument is an empty- or whitespace-only string")
    match = _AMOUNT_PATTERN.match(trimmed)
    if not match:
        if not trimmed[0].isdigit():
            raise ValueError(f"text does not start with a number: '{text}'")
        raise ValueError(f"Could not parse value '{text}'")
    amount, unit = int(match.group(1)), match.group(2).lower()
    if unit and unit not in _MEMORY_UNITS:
        raise ValueError(f"Memory size unit '{unit}' does not match any of the recognized units")
    return amount * _MEMORY_UNITS.get(unit, 1)


def parse_duration(text) -> timedelta:
    """Parse a Flink duration such as ``30 s``, ``5 min`` or ``100`` (milliseconds)."""
    if isinstance(text, timedelta):
        return text
    if isinstance(text, (int, float)):
        return timedelta(milliseconds=text)
    match = _AMOUNT_PATTERN.match(str(text).strip())
    if not match:
        raise ValueError(f"Could not parse duration '{text}'")
    amount, unit = int(match.group(1)), match.group(2).lower()
    if unit and unit not in _DURATION_UNITS:
        raise ValueError(f"Time interval unit label '{unit}' does not match any of the recognized units")
    return timedelta(milliseconds=amount * _DURATION_UNITS.get(unit, 1))


def get_duration(conf: Dict[str, str], key: str, default: timedelta) -> timedelta:
    value = conf.get(key)
    if value is None or not str(value).strip():
        return default
    return parse_duration(value)


def is_kubernetes_ha_enabled(conf: Dict[str, str]) -> bool:
    """True when the configuration activates Kubernetes high availability."""
    mode = (conf.get(HA_MODE) or "").strip()
    return mode.lower() in ("kubernetes", KUBERNETES_HA_FACTORY.lower())


def get_savepoint_directory(conf: Dict[str, str]) -> Optional[str]:
    value = conf.get(SAVEPOINT_DIRECTORY)
    if value is None or not value.strip():
        return None
    return value.strip()


def get_default_config_dir() -> Optional[str]:
    return os.environ.get("FLINK_CONF_DIR")


def load_default_configuration(conf_dir: Optional[str] = None) -> Dict[str, str]:
    """Load the operator's default Flink configuration from ``flink-conf.yaml``."""
    conf_dir = conf_dir or get_default_config_dir()
    if not conf_dir:
        return {}
    conf_file = Path(conf_dir) / FLINK_CONF_FILENAME
    if not conf_file.is_file():
        logger.warning(f"No {FLINK_CONF_FILENAME} found in {conf_dir}, using empty default configuration")
        return {}

    with open(conf_file) as f:
        loaded = yaml.safe_load(f) or {}

    conf = {}
    for key, value in loaded.items():
        if isinstance(value, bool):
            value = "true" if value else "false"
        conf[str(key)] = str(value)
    logger.info(f"Loaded {len(conf)} default configuration entries from {conf_file}")
    return conf


@dataclass
class OperatorConfiguration:
    """Settings of the reconciler itself."""
    reconcile_interval: timedelta = timedelta(seconds=60)
    flink_client_timeout: timedelta = timedelta(seconds=10)
    flink_cancel_timeout: timedelta = timedelta(minutes=1)
    savepoint_trigger_timeout: timedelta = timedelta(minutes=10)
    savepoint_history_max_count: int = 10
    periodic_savepoint_interval: timedelta = timedelta(0)

    @classmethod
    def from_configuration(cls, conf: Dict[str, str]) -> "OperatorConfiguration":
        defaults = cls()
        return cls(
            reconcile_interval=get_duration(conf, OPERATOR_RECONCILE_INTERVAL, defaults.reconcile_interval),
            flink_client_timeout=get_duration(conf, OPERATOR_FLINK_CLIENT_TIMEOUT, defaults.flink_client_timeout),
            flink_cancel_timeout=get_duration(
                conf, OPERATOR_FLINK_CLIENT_CANCEL_TIMEOUT, defaults.flink_cancel_timeout),
            savepoint_trigger_timeout=get_duration(
                conf, OPERATOR_SAVEPOINT_TRIGGER_TIMEOUT, defaults.savepoint_trigger_timeout),
            savepoint_history_max_count=int(
                conf.get(OPERATOR_SAVEPOINT_HISTORY_MAX_COUNT, defaults.savepoint_history_max_count)),
            periodic_savepoint_interval=get_duration(
                conf, OPERATOR_PERIODIC_SAVEPOINT_INTERVAL, defaults.periodic_savepoint_interval),
        )


# =============================================================================
# Effective configuration
# =============================================================================

ConfigStep = Callable[[Dict[str, str], FlinkDeployment, FlinkDeploymentSpec], Dict[str, str]]


def _temp_dir() -> Path:
    path = Path(tempfile.gettempdir()) / "flink-reconciler"
    path.mkdir(parents=True, exist_ok=True)
    return path


def _write_content_file(directory: Path, prefix: str, suffix: str, content: str) -> str:
    """Write ``content`` to a file named after its digest, reusing an existing one."""
    digest = hashlib.sha1(content.encode("utf-8")).hexdigest()[:16]
    path = directory / f"{prefix}{digest}{suffix}"
    if not path.exists():
        path.write_text(content, encoding="utf-8")
    return str(path)


def merge_pod_templates(base: Optional[Dict[str, Any]], override: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Deep merge two pod templates; ``override`` wins, lists merge by index."""
    if base is None:
        return override
    if override is None:
        return base
    return _merge(base, override)


def _merge(base, override):
    if isinstance(base, dict) and isinstance(override, dict):
        merged = dict(base)
        for key, value in override.items():
            merged[key] = _merge(base[key], value) if key in base else value
        return merged
    if isinstance(base, list) and isinstance(override, list):
        merged = []
        for i in range(max(len(base), len(override))):
            if i >= len(override):
                merged.append(base[i])
            elif i >= len(base):
                merged.append(override[i])
            else:
                merged.append(_merge(base[i], override[i]))
        return merged
    return override


def write_pod_template(pod_template: Dict[str, Any]) -> str:
    return _write_content_file(_temp_dir(), "podTemplate_", ".yaml", yaml.safe_dump(pod_template, sort_keys=True))


def write_log_configuration(log_configuration: Dict[str, str]) -> str:
    """Write log config files into a directory usable as Flink conf dir."""
    digest = hashlib.sha1(repr(sorted(log_configuration.items())).encode("utf-8")).hexdigest()[:16]
    conf_dir = _temp_dir() / f"conf_{digest}"
    conf_dir.mkdir(exist_ok=True)
    for name in ALLOWED_LOG_CONF_KEYS:
        if log_configuration.get(name) is not None:
            (conf_dir / name).write_text(log_configuration[name], encoding="utf-8")
    return str(conf_dir)


def apply_flink_configuration(conf, deployment, spec):
    result = dict(conf)
    result.update(spec.flink_configuration or {})
    result.setdefault(REST_SERVICE_EXPOSED_TYPE, "ClusterIP")
    if spec.job is not None:
        # Application clusters must not be cancelled from the web UI
        result.setdefault(CANCEL_ENABLE, "false")
        if spec.job.upgrade_mode == UpgradeMode.LAST_STATE:
            result.setdefault(CHECKPOINTING_INTERVAL, DEFAULT_CHECKPOINTING_INTERVAL)
    return result


def apply_log_configuration(conf, deployment, spec):
    if spec.log_configuration is None:
        return conf
    return {**conf, CONF_DIR: write_log_configuration(spec.log_configuration)}


def apply_image(conf, deployment, spec):
    if not (spec.image or "").strip():
        return conf
    return {**conf, CONTAINER_IMAGE: spec.image}


def apply_image_pull_policy(conf, deployment, spec):
    if not (spec.image_pull_policy or "").strip():
        return conf
    return {**conf, CONTAINER_IMAGE_PULL_POLICY: spec.image_pull_policy}


def apply_service_account(conf, deployment, spec):
    if spec.service_account is None:
        return conf
    return {**conf, SERVICE_ACCOUNT: spec.service_account}


def apply_common_pod_template(conf, deployment, spec):
    if spec.pod_template is None:
        return conf
    return {**conf, POD_TEMPLATE: write_pod_template(spec.pod_template)}


def apply_ingress(conf, deployment, spec):
    if spec.ingress is None:
        return conf
    return {**conf, REST_SERVICE_EXPOSED_TYPE: "ClusterIP"}


def _apply_resource(conf: Dict[str, str], resource: Optional[Resource], memory_key: str, cpu_key: str):
    if resource is None:
        return conf
    result = dict(conf)
    if resource.memory is not None:
        result[memory_key] = resource.memory
    if resource.cpu is not None:
        result[cpu_key] = str(float(resource.cpu))
    return result


def _apply_pod_template(conf, common, specific, key):
    merged = merge_pod_templates(common, specific)
    if merged is None:
        return conf
    return {**conf, key: write_pod_template(merged)}


def apply_job_manager_spec(conf, deployment, spec):
    jm = spec.job_manager
    if jm is None:
        return conf
    result = _apply_resource(conf, jm.resource, JOB_MANAGER_MEMORY, JOB_MANAGER_CPU)
    result = _apply_pod_template(result, spec.pod_template, jm.pod_template, JOB_MANAGER_POD_TEMPLATE)
    if jm.replicas > 0:
        result[JOB_MANAGER_REPLICAS] = str(jm.replicas)
    return result


def apply_task_manager_spec(conf, deployment, spec):
    tm = spec.task_manager
    if tm is None:
        return conf
    result = _apply_resource(conf, tm.resource, TASK_MANAGER_MEMORY, TASK_MANAGER_CPU)
    return _apply_pod_template(result, spec.pod_template, tm.pod_template, TASK_MANAGER_POD_TEMPLATE)


def apply_job_or_session_spec(conf, deployment, spec):
    result = dict(conf)
    if spec.job is None:
        result[DEPLOYMENT_TARGET] = "kubernetes-session"
        return result
    result[DEPLOYMENT_TARGET] = "kubernetes-application"
    if spec.job.jar_uri:
        result[PIPELINE_JARS] = spec.job.jar_uri
    if spec.job.parallelism is not None and spec.job.parallelism > 0:
        result[DEFAULT_PARALLELISM] = str(spec.job.parallelism)
    return result


def apply_cluster_identity(conf, deployment, spec):
    return {**conf, NAMESPACE: deployment.metadata.namespace or "default", CLUSTER_ID: deployment.metadata.name}


EFFECTIVE_CONFIG_STEPS: List[ConfigStep] = [
    apply_flink_configuration,
    apply_log_configuration,
    apply_image,
    apply_image_pull_policy,
    apply_service_account,
    apply_common_pod_template,
    apply_ingress,
    apply_job_manager_spec,
    apply_task_manager_spec,
    apply_job_or_session_spec,
    apply_cluster_identity,
]


def build_effective_config(deployment: FlinkDeployment, default_config: Dict[str, str],
                           spec: Optional[FlinkDeploymentSpec] = None) -> Dict[str, str]:
    """
    Assemble the configuration a deployment runs with.

    Args:
        deployment: The resource; its metadata supplies namespace and cluster id
        default_config: Operator wide default Flink configuration
        spec: Spec to use instead of ``deployment.spec`` (e.g. the last reconciled one)

    Returns:
        A new flat configuration map
    """
    spec = spec or deployment.spec
    conf = dict(default_config)
    for step in EFFECTIVE_CONFIG_STEPS:
        conf = step(conf, deployment, spec)
    return conf


def merge_user_config(default_config: Dict[str, str], user_config: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Operator defaults overlaid with the user's ``flinkConfiguration``."""
    conf = dict(default_config)
    conf.update(user_config or {})
    return conf


def get_deployed_config(deployment: FlinkDeployment, default_config: Dict[str, str]) -> Optional[Dict[str, str]]:
    """Effective configuration of the last reconciled spec, if any was reconciled."""
    last_spec = deployment.status.reconciliation_status.deserialize_last_reconciled_spec(FlinkDeploymentSpec)
    if last_spec is None:
        return None
    return build_effective_config(deployment, default_config, last_spec)
