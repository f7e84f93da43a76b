"""
Tests for the default resource validator and the validator registry.
"""

import pytest

from flink_reconciler.config import (
    CLUSTER_ID,
    HA_MODE,
    NAMESPACE,
    SAVEPOINT_DIRECTORY,
)
from flink_reconciler.models import (
    FlinkDeploymentSpec,
    IngressSpec,
    JobManagerDeploymentStatus,
    JobState,
    Savepoint,
    UpgradeMode,
)
from flink_reconciler.validation import (
    DefaultValidator,
    FlinkResourceValidator,
    ValidatorRegistry,
    create_validator_registry,
    validate_host,
)

from .testing_utils import (
    build_application_cluster,
    build_session_cluster,
    build_session_job,
)


def _disable_ha(deployment):
    deployment.spec.flink_configuration.pop(HA_MODE, None)


def _reconcile(deployment):
    """Pretend the current spec has been deployed."""
    deployment.status.reconciliation_status.serialize_and_set_last_reconciled_spec(deployment.spec)


@pytest.fixture
def validator():
    return DefaultValidator({})


class TestDeploymentValidation:
    """Rules applied to FlinkDeployments."""

    def test_valid_application_cluster(self, validator):
        assert validator.validate_deployment(build_application_cluster()) is None

    def test_valid_session_cluster(self, validator):
        assert validator.validate_deployment(build_session_cluster()) is None

    def test_flink_version_required(self, validator):
        deployment = build_application_cluster()
        deployment.spec.flink_version = None
        assert validator.validate_deployment(deployment) == "Flink Version must be defined."

    @pytest.mark.parametrize("key", [NAMESPACE, CLUSTER_ID])
    def test_forbidden_config_keys(self, validator, key):
        deployment = build_application_cluster()
        deployment.spec.flink_configuration[key] = "value"
        assert validator.validate_deployment(deployment) == f"Forbidden Flink config key: {key}"

    def test_log_config_keys(self, validator):
        deployment = build_application_cluster()
        deployment.spec.log_configuration = {"log4j-console.properties": "rootLogger.level = INFO"}
        assert validator.validate_deployment(deployment) is None

        deployment.spec.log_configuration = {"log4j-foo.properties": "x"}
        assert validator.validate_deployment(deployment).startswith("Invalid log config key")

    def test_jar_uri_required(self, validator):
        deployment = build_application_cluster()
        deployment.spec.job.jar_uri = None
        assert validator.validate_deployment(deployment) == "Jar URI must be defined"

    def test_parallelism_must_be_positive(self, validator):
        deployment = build_application_cluster()
        deployment.spec.job.parallelism = 0
        assert validator.validate_deployment(deployment) == "Job parallelism must be larger than 0"

    def test_last_state_requires_ha(self, validator):
        deployment = build_application_cluster()
        deployment.spec.job.upgrade_mode = UpgradeMode.LAST_STATE
        assert validator.validate_deployment(deployment) is None

        _disable_ha(deployment)
        assert validator.validate_deployment(deployment).startswith(
            "Job could not be upgraded with last-state while Kubernetes HA disabled")

    def test_savepoint_upgrade_requires_savepoint_dir(self, validator):
        deployment = build_application_cluster()
        deployment.spec.job.upgrade_mode = UpgradeMode.SAVEPOINT
        assert validator.validate_deployment(deployment).startswith(
            "Job could not be upgraded with savepoint while config key")

        deployment.spec.flink_configuration[SAVEPOINT_DIRECTORY] = "file:///flink-data/savepoints"
        assert validator.validate_deployment(deployment) is None

    def test_savepoint_dir_from_default_config(self):
        deployment = build_application_cluster()
        deployment.spec.job.upgrade_mode = UpgradeMode.SAVEPOINT
        validator = DefaultValidator({SAVEPOINT_DIRECTORY: "s3://bucket/savepoints"})
        assert validator.validate_deployment(deployment) is None

    def test_manual_savepoint_requires_savepoint_dir(self, validator):
        deployment = build_application_cluster()
        deployment.spec.job.savepoint_trigger_nonce = 1
        assert validator.validate_deployment(deployment).startswith(
            "Savepoint could not be manually triggered for the running job while config key")

    def test_jm_replicas(self, validator):
        deployment = build_application_cluster()
        deployment.spec.job_manager.replicas = 0
        assert validator.validate_deployment(deployment) == \
            "JobManager replicas should not be configured less than one."

        deployment.spec.job_manager.replicas = 2
        assert validator.validate_deployment(deployment) is None

        _disable_ha(deployment)
        assert validator.validate_deployment(deployment) == \
            "Kubernetes High availability should be enabled when starting standby JobManagers."

    def test_resource_memory(self, validator):
        deployment = build_application_cluster()
        deployment.spec.job_manager.resource.memory = None
        assert validator.validate_deployment(deployment) == "JobManager resource memory must be defined."

        deployment = build_application_cluster()
        deployment.spec.task_manager.resource.memory = "abc"
        assert validator.validate_deployment(deployment).startswith(
            "TaskManager resource memory parse error")

    @pytest.mark.parametrize("template", [
        "{{name}}.{{namespace}}.example.com",
        "example.com/{{namespace}}/{{name}}",
        "example.com:8080/{{name}}",
    ])
    def test_valid_ingress(self, validator, template):
        deployment = build_application_cluster()
        deployment.spec.ingress = IngressSpec(template=template)
        assert validator.validate_deployment(deployment) is None

    @pytest.mark.parametrize("template", [
        "example.com:port/{{name}}",
        "{{name}}_{{namespace}}.example.com",
    ])
    def test_invalid_ingress(self, validator, template):
        deployment = build_application_cluster()
        deployment.spec.ingress = IngressSpec(template=template)
        assert validator.validate_deployment(deployment).startswith(
            f"Unable to process the Ingress template({template}). Error: ")

    def test_job_must_start_running(self, validator):
        deployment = build_application_cluster()
        deployment.spec.job.state = JobState.SUSPENDED
        assert validator.validate_deployment(deployment) == "Job must start in running state"

    def test_suspended_state_allowed_after_first_deployment(self, validator):
        deployment = build_application_cluster()
        _reconcile(deployment)
        deployment.spec.job.state = JobState.SUSPENDED
        assert validator.validate_deployment(deployment) is None


class TestSpecChangeValidation:
    """Rules comparing a spec with the last reconciled one."""

    def test_cannot_switch_job_to_session(self, validator):
        deployment = build_application_cluster()
        _reconcile(deployment)
        deployment.spec.job = None
        assert validator.validate_deployment(deployment) == "Cannot switch from job to session cluster"

    def test_cannot_switch_session_to_job(self, validator):
        deployment = build_application_cluster()
        session_spec = build_session_cluster().spec
        deployment.status.reconciliation_status.serialize_and_set_last_reconciled_spec(session_spec)
        assert validator.validate_deployment(deployment) == "Cannot switch from session to job cluster"

    def test_switch_to_last_state_with_ha(self, validator):
        deployment = build_application_cluster()
        _reconcile(deployment)
        deployment.status.job_manager_deployment_status = JobManagerDeploymentStatus.READY
        deployment.spec.job.upgrade_mode = UpgradeMode.LAST_STATE
        assert validator.validate_deployment(deployment) is None

    def test_switch_to_last_state_without_ha(self, validator):
        deployment = build_application_cluster()
        _disable_ha(deployment)
        _reconcile(deployment)
        deployment.status.job_manager_deployment_status = JobManagerDeploymentStatus.READY
        # HA enabled on the new spec only, the running cluster lacks it
        deployment.spec.flink_configuration[HA_MODE] = "kubernetes"
        deployment.spec.job.upgrade_mode = UpgradeMode.LAST_STATE
        assert validator.validate_deployment(deployment) == (
            f"Job could not be upgraded to last-state while config key[{SAVEPOINT_DIRECTORY}] is not set")

    def test_switch_to_last_state_needs_ha_even_with_savepoint_dir(self, validator):
        deployment = build_application_cluster()
        _disable_ha(deployment)
        deployment.spec.flink_configuration[SAVEPOINT_DIRECTORY] = "file:///flink-data/savepoints"
        _reconcile(deployment)
        deployment.status.job_manager_deployment_status = JobManagerDeploymentStatus.READY
        deployment.spec.flink_configuration[HA_MODE] = "kubernetes"
        deployment.spec.job.upgrade_mode = UpgradeMode.LAST_STATE
        assert validator.validate_deployment(deployment).startswith("Job could not be upgraded to last-state")

    def test_switch_to_last_state_when_not_ready(self, validator):
        deployment = build_application_cluster()
        _disable_ha(deployment)
        _reconcile(deployment)
        deployment.status.job_manager_deployment_status = JobManagerDeploymentStatus.DEPLOYING
        deployment.spec.flink_configuration[HA_MODE] = "kubernetes"
        deployment.spec.job.upgrade_mode = UpgradeMode.LAST_STATE
        assert validator.validate_deployment(deployment) is None

    def test_savepoint_restore_requires_savepoint(self, validator):
        deployment = build_application_cluster()
        deployment.spec.flink_configuration[SAVEPOINT_DIRECTORY] = "file:///flink-data/savepoints"
        deployment.spec.job.upgrade_mode = UpgradeMode.SAVEPOINT
        deployment.spec.job.state = JobState.SUSPENDED
        _reconcile(deployment)
        deployment.spec.job.state = JobState.RUNNING

        assert validator.validate_deployment(deployment) == \
            "Cannot perform savepoint restore without a valid savepoint"

        deployment.status.job_status.savepoint_info.update_last_savepoint(Savepoint.of(""))
        assert validator.validate_deployment(deployment) == \
            "Cannot perform savepoint restore without a valid savepoint"

        deployment.status.job_status.savepoint_info.update_last_savepoint(
            Savepoint.of("file:///flink-data/savepoints/savepoint-1"))
        assert validator.validate_deployment(deployment) is None


class TestSessionJobValidation:
    """Rules applied to FlinkSessionJobs."""

    def test_valid_session_job(self, validator):
        assert validator.validate_session_job(build_session_job(), build_session_cluster()) is None

    def test_job_spec_required(self, validator):
        session_job = build_session_job()
        session_job.spec.job = None
        assert validator.validate_session_job(session_job, build_session_cluster()) == \
            "The job spec should not be empty"

    def test_last_state_unsupported(self, validator):
        session_job = build_session_job()
        session_job.spec.job.upgrade_mode = UpgradeMode.LAST_STATE
        assert validator.validate_session_job(session_job, build_session_cluster()) == \
            "The LAST_STATE upgrade mode is not supported in session job now."

    def test_job_rules_apply(self, validator):
        session_job = build_session_job()
        session_job.spec.job.jar_uri = "  "
        assert validator.validate_session_job(session_job, build_session_cluster()) == "Jar URI must be defined"

    def test_savepoint_dir_from_session_cluster(self, validator):
        session = build_session_cluster()
        session.spec.flink_configuration[SAVEPOINT_DIRECTORY] = "file:///flink-data/savepoints"
        session_job = build_session_job()
        session_job.spec.job.upgrade_mode = UpgradeMode.SAVEPOINT
        assert validator.validate_session_job(session_job, session) is None

    def test_cluster_id_cannot_change(self, validator):
        session_job = build_session_job()
        session_job.status.reconciliation_status.serialize_and_set_last_reconciled_spec(session_job.spec)
        session_job.spec.cluster_id = "other-cluster"
        assert validator.validate_session_job(session_job, None) == \
            "The session job's cluster id can not be changed"

    def test_cannot_submit_to_application_cluster(self, validator):
        assert validator.validate_session_job(build_session_job(), build_application_cluster()) == \
            "Can not submit to application cluster"

    def test_cluster_id_must_match_session(self, validator):
        session_job = build_session_job()
        session_job.spec.cluster_id = "other-cluster"
        assert validator.validate_session_job(session_job, build_session_cluster()) == \
            "The session job's cluster id is not match with the session cluster"

    def test_missing_session_only_checks_job(self, validator):
        assert validator.validate_session_job(build_session_job(), None) is None


def test_validate_host():
    validate_host("flink.example.com")
    validate_host("localhost:8081/path")
    with pytest.raises(ValueError):
        validate_host("-bad-.example.com")
    with pytest.raises(ValueError):
        validate_host("")


class RejectAll(FlinkResourceValidator):
    def __init__(self):
        self.configured_with = None

    def configure(self, default_config):
        self.configured_with = default_config

    def validate_deployment(self, deployment):
        return "rejected"

    def validate_session_job(self, session_job, session):
        return "rejected"


class TestValidatorRegistry:

    def test_default_registry(self):
        registry = create_validator_registry({})
        assert [type(v) for v in registry.validators] == [DefaultValidator]
        assert registry.validate_deployment(build_application_cluster()) is None

    def test_extra_validators_are_configured(self):
        extra = RejectAll()
        registry = create_validator_registry({"a": "b"}, extra_validators=[extra])
        assert extra.configured_with == {"a": "b"}
        assert registry.validate_deployment(build_application_cluster()) == "rejected"
        assert registry.validate_session_job(build_session_job(), build_session_cluster()) == "rejected"

    def test_first_error_is_returned(self):
        registry = ValidatorRegistry([DefaultValidator({}), RejectAll()])
        deployment = build_application_cluster()
        deployment.spec.flink_version = None
        assert registry.validate_deployment(deployment) == "Flink Version must be defined."

    def test_spec_round_trip_keeps_validation(self, validator):
        deployment = build_application_cluster()
        _reconcile(deployment)
        last = deployment.status.reconciliation_status.deserialize_last_reconciled_spec(FlinkDeploymentSpec)
        assert last == deployment.spec
        assert validator.validate_deployment(deployment) is None
