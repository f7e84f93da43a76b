"""Observation, validation and upgrade control for Flink clusters on Kubernetes."""
from .cluster_client import ClusterClient, JobStatusMessage, RestClusterClient, SavepointFetchResult
from .config import OperatorConfiguration, build_effective_config, load_default_configuration
from .deployment_manager import FlinkDeploymentManager
from .exceptions import (
    FlinkReconcilerError,
    InvariantViolationError,
    JobControllerError,
    JobControllerTimeoutError,
    ValidationError,
)
from .kubernetes_client import KubernetesClient
from .models import (
    FlinkDeployment,
    FlinkDeploymentSpec,
    FlinkDeploymentStatus,
    FlinkSessionJob,
    FlinkSessionJobSpec,
    JobManagerDeploymentStatus,
    JobSpec,
    JobState,
    JobStatus,
    ReconciliationStatus,
    Savepoint,
    SavepointInfo,
    SavepointTriggerType,
    UpgradeMode,
)
from .observer import ApplicationObserver, JobStatusObserver, ObserverContext, SavepointObserver, SessionJobObserver
from .reconciliation import KubernetesStatusStore, StatusStore, suspend_job
from .service import FlinkService
from .validation import DefaultValidator, FlinkResourceValidator, ValidatorRegistry, create_validator_registry

__all__ = [
    "ApplicationObserver",
    "ClusterClient",
    "DefaultValidator",
    "FlinkDeployment",
    "FlinkDeploymentManager",
    "FlinkDeploymentSpec",
    "FlinkDeploymentStatus",
    "FlinkReconcilerError",
    "FlinkResourceValidator",
    "FlinkService",
    "FlinkSessionJob",
    "FlinkSessionJobSpec",
    "InvariantViolationError",
    "JobControllerError",
    "JobControllerTimeoutError",
    "JobManagerDeploymentStatus",
    "JobSpec",
    "JobState",
    "JobStatus",
    "JobStatusMessage",
    "JobStatusObserver",
    "KubernetesClient",
    "KubernetesStatusStore",
    "ObserverContext",
    "OperatorConfiguration",
    "ReconciliationStatus",
    "RestClusterClient",
    "Savepoint",
    "SavepointFetchResult",
    "SavepointInfo",
    "SavepointObserver",
    "SavepointTriggerType",
    "SessionJobObserver",
    "StatusStore",
    "UpgradeMode",
    "ValidationError",
    "ValidatorRegistry",
    "build_effective_config",
    "create_validator_registry",
    "load_default_configuration",
    "suspend_job",
]
