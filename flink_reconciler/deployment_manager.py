"""FlinkDeployment changes on behalf of users."""
import logging
from typing import Any, Dict, Optional

import yaml

from .exceptions import FlinkReconcilerError, ValidationError
from .kubernetes_client import KubernetesClient
from .models import FlinkDeployment, UpgradeMode
from .validation import ValidatorRegistry

logger = logging.getLogger(__name__)


def _deep_merge(base: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class FlinkDeploymentManager:
    """Manages FlinkDeployment spec changes; every change is validated before it is sent."""

    def __init__(self, k8s_client: KubernetesClient, validators: ValidatorRegistry):
        self.k8s = k8s_client
        self.validators = validators

    def deploy_from_file(self, yaml_path: str, overrides: Optional[Dict] = None) -> str:
        """Deploy from YAML file with optional overrides."""
        with open(yaml_path) as f:
            manifest = yaml.safe_load(f)

        if overrides:
            manifest = self._apply_overrides(manifest, overrides)

        self._check(FlinkDeployment.from_dict(manifest))
        result = self.k8s.create_flink_deployment(manifest)
        name = result["metadata"]["name"]
        logger.info(f"Deployed FlinkDeployment {name}")
        return name

    def suspend(self, name: str):
        """Suspend a running job."""
        self._patch_spec(name, {"job": {"state": "suspended"}})
        logger.info(f"Suspended {name}")

    def resume(self, name: str):
        """Resume a suspended job."""
        self._patch_spec(name, {"job": {"state": "running"}})
        logger.info(f"Resumed {name}")

    def trigger_savepoint(self, name: str) -> int:
        """Request a manual savepoint by bumping the trigger nonce."""
        current = self._get(name)
        nonce = (current.spec.job.savepoint_trigger_nonce or 0) + 1 if current.spec.job else 1
        self._patch_spec(name, {"job": {"savepointTriggerNonce": nonce}})
        logger.info(f"Requested savepoint of {name} (nonce {nonce})")
        return nonce

    def set_upgrade_mode(self, name: str, upgrade_mode: UpgradeMode):
        """Switch the upgrade mode used for future upgrades."""
        self._patch_spec(name, {"job": {"upgradeMode": upgrade_mode.value}})
        logger.info(f"Upgrade mode of {name} set to {upgrade_mode.value}")

    def wait_for_state(self, name: str, state: str = "RUNNING", timeout: int = 300) -> bool:
        """Wait for the deployment's job to reach ``state``."""
        return self.k8s.wait_for_deployment_state(name, state, timeout)

    def cleanup(self, name: str):
        """Delete deployment."""
        self.k8s.delete_flink_deployment(name)

    def _get(self, name: str) -> FlinkDeployment:
        manifest = self.k8s.get_flink_deployment(name)
        if manifest is None:
            raise FlinkReconcilerError(f"FlinkDeployment {name} not found")
        return FlinkDeployment.from_dict(manifest)

    def _patch_spec(self, name: str, spec_patch: Dict[str, Any]):
        manifest = self.k8s.get_flink_deployment(name)
        if manifest is None:
            raise FlinkReconcilerError(f"FlinkDeployment {name} not found")

        self._check(FlinkDeployment.from_dict(_deep_merge(manifest, {"spec": spec_patch})))
        self.k8s.patch_flink_deployment(name, {"spec": spec_patch})

    def _check(self, deployment: FlinkDeployment):
        error = self.validators.validate_deployment(deployment)
        if error is not None:
            raise ValidationError(error)

    def _apply_overrides(self, spec: Dict, overrides: Dict) -> Dict:
        """Apply dotted-path overrides to a manifest."""
        for key, value in overrides.items():
            keys = key.split(".")
            current = spec
            for k in keys[:-1]:
                current = current.setdefault(k, {})
            current[keys[-1]] = value
        return spec
