"""
Resource model for FlinkDeployment and FlinkSessionJob custom resources.

Specs are written by users, statuses by the observer/reconciler pair. Every
entity maps to the CRD layout (camelCase keys) through ``to_dict`` and
``from_dict`` so resources read from the Kubernetes API can be fed straight
into the validators and observers.
"""
import json
import time
from dataclasses import dataclass, field, fields, is_dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar, Union, get_args, get_origin, get_type_hints

T = TypeVar("T")

API_GROUP = "flink.apache.org"
API_VERSION = "v1beta1"

# CRD keys that do not follow plain camelCase
_SPECIAL_KEYS = {"jar_uri": "jarURI"}


def now_millis() -> int:
    """Current wall clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def _crd_key(name: str) -> str:
    if name in _SPECIAL_KEYS:
        return _SPECIAL_KEYS[name]
    head, *tail = name.split("_")
    return head + "".join(part.title() for part in tail)


class _ParsableEnum(Enum):
    """Enum accepting both CRD values and constant names."""

    @classmethod
    def parse(cls, value):
        if value is None or isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            pass
        name = str(value).strip()
        if name in cls.__members__:
            return cls[name]
        return cls[name.upper().replace("-", "_")]


class UpgradeMode(_ParsableEnum):
    """Strategy used to stop a running job before an upgrade."""
    STATELESS = "stateless"
    SAVEPOINT = "savepoint"
    LAST_STATE = "last-state"


class JobState(_ParsableEnum):
    """Desired job state."""
    RUNNING = "running"
    SUSPENDED = "suspended"


class FlinkVersion(_ParsableEnum):
    v1_13 = "v1_13"
    v1_14 = "v1_14"
    v1_15 = "v1_15"


class JobManagerDeploymentStatus(_ParsableEnum):
    """Observed state of the JobManager Kubernetes deployment."""
    READY = "READY"
    DEPLOYED_NOT_READY = "DEPLOYED_NOT_READY"
    DEPLOYING = "DEPLOYING"
    MISSING = "MISSING"
    ERROR = "ERROR"


class SavepointTriggerType(_ParsableEnum):
    """What caused a savepoint to be taken."""
    MANUAL = "MANUAL"
    PERIODIC = "PERIODIC"
    UNKNOWN = "UNKNOWN"


def to_dict(obj: Any) -> Any:
    """Convert a model object to its CRD dictionary form, dropping unset fields."""
    if is_dataclass(obj):
        result = {}
        for f in fields(obj):
            value = getattr(obj, f.name)
            if value is None:
                continue
            result[_crd_key(f.name)] = to_dict(value)
        return result
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, list):
        return [to_dict(v) for v in obj]
    if isinstance(obj, dict):
        return {k: to_dict(v) for k, v in obj.items()}
    return obj


def _convert(hint, value):
    if value is None:
        return None
    origin = get_origin(hint)
    if origin is Union:
        args = [a for a in get_args(hint) if a is not type(None)]
        return _convert(args[0], value)
    if origin in (list, List):
        (item_hint,) = get_args(hint) or (Any,)
        return [_convert(item_hint, v) for v in value]
    if origin in (dict, Dict):
        _, value_hint = get_args(hint) or (Any, Any)
        return {str(k): _convert(value_hint, v) for k, v in value.items()}
    if isinstance(hint, type):
        if is_dataclass(hint):
            return from_dict(hint, value)
        if issubclass(hint, _ParsableEnum):
            return hint.parse(value)
        if hint is str and not isinstance(value, str):
            # Flink configuration values are strings, YAML may hand us scalars
            if isinstance(value, bool):
                return "true" if value else "false"
            return str(value)
        if hint is int and isinstance(value, str):
            return int(value)
    return value


def from_dict(cls: Type[T], data: Optional[Dict[str, Any]]) -> T:
    """Build a model object from its CRD dictionary form."""
    if data is None:
        return cls()
    hints = get_type_hints(cls)
    kwargs = {}
    for f in fields(cls):
        key = _crd_key(f.name)
        if data.get(key) is not None:
            kwargs[f.name] = _convert(hints[f.name], data[key])
    return cls(**kwargs)


@dataclass
class ObjectMeta:
    name: Optional[str] = None
    namespace: Optional[str] = None
    uid: Optional[str] = None
    generation: Optional[int] = None
    labels: Optional[Dict[str, str]] = None


@dataclass
class Resource:
    cpu: Optional[float] = None
    memory: Optional[str] = None


@dataclass
class JobManagerSpec:
    resource: Optional[Resource] = field(default_factory=Resource)
    replicas: int = 1
    pod_template: Optional[Dict[str, Any]] = None


@dataclass
class TaskManagerSpec:
    resource: Optional[Resource] = field(default_factory=Resource)
    pod_template: Optional[Dict[str, Any]] = None


@dataclass
class IngressSpec:
    template: Optional[str] = None
    class_name: Optional[str] = None
    annotations: Optional[Dict[str, str]] = None


@dataclass
class JobSpec:
    jar_uri: Optional[str] = None
    parallelism: Optional[int] = None
    entry_class: Optional[str] = None
    args: List[str] = field(default_factory=list)
    state: Optional[JobState] = JobState.RUNNING
    savepoint_trigger_nonce: Optional[int] = None
    initial_savepoint_path: Optional[str] = None
    upgrade_mode: UpgradeMode = UpgradeMode.STATELESS
    allow_non_restored_state: Optional[bool] = None


@dataclass
class FlinkDeploymentSpec:
    image: Optional[str] = None
    image_pull_policy: Optional[str] = None
    service_account: Optional[str] = None
    flink_version: Optional[FlinkVersion] = None
    flink_configuration: Dict[str, str] = field(default_factory=dict)
    log_configuration: Optional[Dict[str, str]] = None
    pod_template: Optional[Dict[str, Any]] = None
    ingress: Optional[IngressSpec] = None
    job_manager: Optional[JobManagerSpec] = None
    task_manager: Optional[TaskManagerSpec] = None
    job: Optional[JobSpec] = None


@dataclass
class FlinkSessionJobSpec:
    cluster_id: Optional[str] = None
    job: Optional[JobSpec] = None
    flink_configuration: Dict[str, str] = field(default_factory=dict)


@dataclass
class Savepoint:
    time_stamp: int = 0
    location: Optional[str] = None
    trigger_type: SavepointTriggerType = SavepointTriggerType.UNKNOWN

    @classmethod
    def of(cls, location: str, trigger_type: SavepointTriggerType = SavepointTriggerType.UNKNOWN,
           time_stamp: Optional[int] = None) -> "Savepoint":
        return cls(
            time_stamp=now_millis() if time_stamp is None else time_stamp,
            location=location,
            trigger_type=trigger_type,
        )


@dataclass
class SavepointInfo:
    """Life-cycle of the most recent savepoint trigger."""
    last_savepoint: Optional[Savepoint] = None
    trigger_id: Optional[str] = None
    trigger_timestamp: Optional[int] = None
    trigger_type: Optional[SavepointTriggerType] = None
    last_periodic_savepoint_timestamp: int = 0
    savepoint_history: List[Savepoint] = field(default_factory=list)

    @property
    def trigger_in_progress(self) -> bool:
        return bool(self.trigger_id)

    def set_trigger(self, trigger_id: str, trigger_type: SavepointTriggerType = SavepointTriggerType.MANUAL,
                    trigger_timestamp: Optional[int] = None):
        self.trigger_id = trigger_id
        self.trigger_timestamp = now_millis() if trigger_timestamp is None else trigger_timestamp
        self.trigger_type = trigger_type

    def reset_trigger(self):
        self.trigger_id = None
        self.trigger_timestamp = None
        self.trigger_type = None

    def update_last_savepoint(self, savepoint: Savepoint, max_history: Optional[int] = None):
        """Record a completed savepoint and resolve the pending trigger."""
        self.last_savepoint = savepoint
        self.savepoint_history.append(savepoint)
        if max_history is not None and len(self.savepoint_history) > max_history:
            self.savepoint_history = self.savepoint_history[-max_history:] if max_history > 0 else []
        if savepoint.trigger_type == SavepointTriggerType.PERIODIC:
            self.last_periodic_savepoint_timestamp = savepoint.time_stamp
        self.reset_trigger()


@dataclass
class JobStatus:
    job_id: Optional[str] = None
    state: Optional[str] = None
    job_name: Optional[str] = None
    start_time: Optional[str] = None
    update_time: Optional[str] = None
    savepoint_info: SavepointInfo = field(default_factory=SavepointInfo)


@dataclass
class ReconciliationStatus:
    """Bookkeeping of what was last applied to the cluster."""
    reconciliation_timestamp: int = 0
    last_reconciled_spec: Optional[str] = None
    last_stable_spec: Optional[str] = None

    def is_first_deployment(self) -> bool:
        return self.last_reconciled_spec is None

    def serialize_and_set_last_reconciled_spec(self, spec):
        self.last_reconciled_spec = serialize_spec(spec)

    def deserialize_last_reconciled_spec(self, spec_cls: Type[T]) -> Optional[T]:
        return deserialize_spec(spec_cls, self.last_reconciled_spec)

    def deserialize_last_stable_spec(self, spec_cls: Type[T]) -> Optional[T]:
        return deserialize_spec(spec_cls, self.last_stable_spec)

    def mark_reconciled_spec_as_stable(self):
        self.last_stable_spec = self.last_reconciled_spec


@dataclass
class FlinkDeploymentStatus:
    job_manager_deployment_status: JobManagerDeploymentStatus = JobManagerDeploymentStatus.MISSING
    job_status: JobStatus = field(default_factory=JobStatus)
    reconciliation_status: ReconciliationStatus = field(default_factory=ReconciliationStatus)
    error: Optional[str] = None


@dataclass
class FlinkSessionJobStatus:
    job_status: JobStatus = field(default_factory=JobStatus)
    reconciliation_status: ReconciliationStatus = field(default_factory=ReconciliationStatus)
    error: Optional[str] = None


class _CustomResource:
    kind = ""
    plural = ""

    @property
    def api_version(self) -> str:
        return f"{API_GROUP}/{API_VERSION}"

    @classmethod
    def from_dict(cls, manifest: Dict[str, Any]):
        hints = get_type_hints(cls)
        return cls(
            metadata=from_dict(ObjectMeta, manifest.get("metadata")),
            spec=from_dict(hints["spec"], manifest.get("spec")),
            status=from_dict(hints["status"], manifest.get("status")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": to_dict(self.metadata),
            "spec": to_dict(self.spec),
            "status": to_dict(self.status),
        }


@dataclass
class FlinkDeployment(_CustomResource):
    """A Flink cluster, application (``spec.job`` set) or session."""
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: FlinkDeploymentSpec = field(default_factory=FlinkDeploymentSpec)
    status: FlinkDeploymentStatus = field(default_factory=FlinkDeploymentStatus)

    kind = "FlinkDeployment"
    plural = "flinkdeployments"


@dataclass
class FlinkSessionJob(_CustomResource):
    """A job submitted to an existing session cluster."""
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: FlinkSessionJobSpec = field(default_factory=FlinkSessionJobSpec)
    status: FlinkSessionJobStatus = field(default_factory=FlinkSessionJobStatus)

    kind = "FlinkSessionJob"
    plural = "flinksessionjobs"


def serialize_spec(spec) -> str:
    return json.dumps(to_dict(spec), sort_keys=True)


def deserialize_spec(spec_cls: Type[T], serialized: Optional[str]) -> Optional[T]:
    if serialized is None:
        return None
    return from_dict(spec_cls, json.loads(serialized))


def clone_spec(spec: T) -> T:
    """Deep copy of a spec through its serialized form."""
    return deserialize_spec(type(spec), serialize_spec(spec))
