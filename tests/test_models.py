"""
Tests for the resource model and its CRD mapping.
"""

import pytest

from flink_reconciler.models import (
    FlinkDeployment,
    FlinkDeploymentSpec,
    FlinkSessionJob,
    FlinkVersion,
    JobManagerDeploymentStatus,
    JobState,
    ReconciliationStatus,
    Savepoint,
    SavepointInfo,
    SavepointTriggerType,
    UpgradeMode,
    clone_spec,
    to_dict,
)

from .testing_utils import SAMPLE_JAR, build_application_cluster

MANIFEST = {
    "apiVersion": "flink.apache.org/v1beta1",
    "kind": "FlinkDeployment",
    "metadata": {"name": "stateful-test", "namespace": "flink"},
    "spec": {
        "image": "flink:1.15",
        "flinkVersion": "v1_15",
        "flinkConfiguration": {
            "taskmanager.numberOfTaskSlots": 2,
            "web.cancel.enable": False,
        },
        "serviceAccount": "flink",
        "jobManager": {"resource": {"memory": "2048m", "cpu": 1}},
        "taskManager": {"resource": {"memory": "2048m", "cpu": 1}},
        "job": {
            "jarURI": SAMPLE_JAR,
            "parallelism": 2,
            "upgradeMode": "last-state",
            "state": "running",
            "savepointTriggerNonce": 3,
        },
    },
    "status": {
        "jobManagerDeploymentStatus": "READY",
        "jobStatus": {
            "jobId": "abc",
            "state": "RUNNING",
            "savepointInfo": {
                "lastSavepoint": {"timeStamp": 10, "location": "file:///sp/1", "triggerType": "MANUAL"},
                "savepointHistory": [{"timeStamp": 10, "location": "file:///sp/1"}],
            },
        },
    },
}


class TestEnums:

    @pytest.mark.parametrize("value,expected", [
        ("last-state", UpgradeMode.LAST_STATE),
        ("LAST_STATE", UpgradeMode.LAST_STATE),
        ("savepoint", UpgradeMode.SAVEPOINT),
        (UpgradeMode.STATELESS, UpgradeMode.STATELESS),
    ])
    def test_upgrade_mode_parse(self, value, expected):
        assert UpgradeMode.parse(value) is expected

    def test_flink_version_parse(self):
        assert FlinkVersion.parse("v1_14") is FlinkVersion.v1_14

    def test_unknown_value(self):
        with pytest.raises(KeyError):
            JobState.parse("paused")


class TestManifestMapping:

    def test_from_manifest(self):
        deployment = FlinkDeployment.from_dict(MANIFEST)

        assert deployment.metadata.name == "stateful-test"
        assert deployment.spec.flink_version is FlinkVersion.v1_15
        assert deployment.spec.flink_configuration == {
            "taskmanager.numberOfTaskSlots": "2",
            "web.cancel.enable": "false",
        }
        assert deployment.spec.service_account == "flink"
        assert deployment.spec.job.jar_uri == SAMPLE_JAR
        assert deployment.spec.job.upgrade_mode is UpgradeMode.LAST_STATE
        assert deployment.spec.job.state is JobState.RUNNING
        assert deployment.spec.job.savepoint_trigger_nonce == 3
        assert deployment.status.job_manager_deployment_status is JobManagerDeploymentStatus.READY
        savepoint_info = deployment.status.job_status.savepoint_info
        assert savepoint_info.last_savepoint.trigger_type is SavepointTriggerType.MANUAL
        assert savepoint_info.savepoint_history[0].trigger_type is SavepointTriggerType.UNKNOWN

    def test_defaults_for_missing_status(self):
        deployment = FlinkDeployment.from_dict({"metadata": {"name": "x"}, "spec": {}})
        assert deployment.status.job_manager_deployment_status is JobManagerDeploymentStatus.MISSING
        assert deployment.status.reconciliation_status.is_first_deployment()
        assert deployment.spec.job is None

    def test_to_dict_uses_crd_keys(self):
        manifest = build_application_cluster().to_dict()

        assert manifest["apiVersion"] == "flink.apache.org/v1beta1"
        assert manifest["kind"] == "FlinkDeployment"
        assert manifest["spec"]["job"]["jarURI"] == SAMPLE_JAR
        assert manifest["spec"]["job"]["upgradeMode"] == "stateless"
        assert manifest["spec"]["flinkVersion"] == "v1_15"
        assert "initialSavepointPath" not in manifest["spec"]["job"]
        assert manifest["status"]["jobManagerDeploymentStatus"] == "MISSING"

    def test_session_job_kind(self):
        session_job = FlinkSessionJob.from_dict({
            "metadata": {"name": "job"},
            "spec": {"clusterId": "session", "job": {"jarURI": SAMPLE_JAR}},
        })
        assert session_job.kind == "FlinkSessionJob"
        assert session_job.plural == "flinksessionjobs"
        assert session_job.spec.cluster_id == "session"

    def test_clone_spec_is_independent(self):
        spec = build_application_cluster().spec
        cloned = clone_spec(spec)
        assert cloned == spec
        cloned.job.parallelism = 5
        assert spec.job.parallelism == 1


class TestSavepointInfo:

    def test_trigger_life_cycle(self):
        info = SavepointInfo()
        assert not info.trigger_in_progress

        info.set_trigger("t1", SavepointTriggerType.PERIODIC, trigger_timestamp=100)
        assert info.trigger_in_progress
        assert info.trigger_type is SavepointTriggerType.PERIODIC
        assert info.trigger_timestamp == 100

        info.reset_trigger()
        assert info.trigger_id is None
        assert info.trigger_timestamp is None
        assert info.trigger_type is None

    def test_update_last_savepoint(self):
        info = SavepointInfo()
        info.set_trigger("t1")
        savepoint = Savepoint.of("file:///sp/1", SavepointTriggerType.MANUAL, time_stamp=5)

        info.update_last_savepoint(savepoint)

        assert info.last_savepoint == savepoint
        assert info.savepoint_history == [savepoint]
        assert not info.trigger_in_progress
        assert info.last_periodic_savepoint_timestamp == 0

    def test_periodic_savepoint_timestamp(self):
        info = SavepointInfo()
        info.update_last_savepoint(Savepoint.of("file:///sp/1", SavepointTriggerType.PERIODIC, time_stamp=42))
        assert info.last_periodic_savepoint_timestamp == 42

    def test_history_is_trimmed(self):
        info = SavepointInfo()
        for i in range(5):
            info.update_last_savepoint(Savepoint.of(f"file:///sp/{i}", time_stamp=i), max_history=3)
        assert [s.location for s in info.savepoint_history] == ["file:///sp/2", "file:///sp/3", "file:///sp/4"]
        assert info.last_savepoint.location == "file:///sp/4"


class TestReconciliationStatus:

    def test_last_reconciled_and_stable_spec(self):
        spec = build_application_cluster().spec
        status = ReconciliationStatus()
        assert status.is_first_deployment()

        status.serialize_and_set_last_reconciled_spec(spec)
        assert not status.is_first_deployment()
        assert status.deserialize_last_reconciled_spec(FlinkDeploymentSpec) == spec
        assert status.deserialize_last_stable_spec(FlinkDeploymentSpec) is None

        status.mark_reconciled_spec_as_stable()
        assert status.deserialize_last_stable_spec(FlinkDeploymentSpec) == spec

    def test_status_serialization(self):
        deployment = build_application_cluster()
        deployment.status.reconciliation_status.serialize_and_set_last_reconciled_spec(deployment.spec)
        status = to_dict(deployment.status)
        assert isinstance(status["reconciliationStatus"]["lastReconciledSpec"], str)
        assert status["jobStatus"]["savepointInfo"]["savepointHistory"] == []
