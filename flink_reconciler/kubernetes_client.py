"""
Kubernetes API client wrapper for Flink resources.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from .models import API_GROUP, API_VERSION, FlinkDeployment, FlinkSessionJob

logger = logging.getLogger(__name__)


class KubernetesClient:
    """Wrapper for Kubernetes API operations."""

    def __init__(self, namespace: str = "default", api_client: Optional[client.ApiClient] = None):
        """Initialize Kubernetes client."""
        if api_client is None:
            try:
                config.load_kube_config()
            except Exception:
                config.load_incluster_config()

        self.namespace = namespace
        self.core_v1 = client.CoreV1Api(api_client)
        self.apps_v1 = client.AppsV1Api(api_client)
        self.custom_api = client.CustomObjectsApi(api_client)

    def _ns(self, namespace: Optional[str]) -> str:
        return namespace or self.namespace

    # =========================================================================
    # Custom resources
    # =========================================================================

    def get_custom_resource(self, plural: str, name: str, namespace: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Get a custom resource, None if it does not exist."""
        try:
            return self.custom_api.get_namespaced_custom_object(
                group=API_GROUP,
                version=API_VERSION,
                namespace=self._ns(namespace),
                plural=plural,
                name=name
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def get_flink_deployment(self, name: str, namespace: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Get a FlinkDeployment custom resource."""
        return self.get_custom_resource(FlinkDeployment.plural, name, namespace)

    def get_flink_session_job(self, name: str, namespace: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Get a FlinkSessionJob custom resource."""
        return self.get_custom_resource(FlinkSessionJob.plural, name, namespace)

    def list_flink_deployments(self, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        """List FlinkDeployment custom resources."""
        result = self.custom_api.list_namespaced_custom_object(
            group=API_GROUP,
            version=API_VERSION,
            namespace=self._ns(namespace),
            plural=FlinkDeployment.plural
        )
        return result.get("items", [])

    def create_flink_deployment(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Create a FlinkDeployment custom resource."""
        return self.custom_api.create_namespaced_custom_object(
            group=API_GROUP,
            version=API_VERSION,
            namespace=body.get("metadata", {}).get("namespace") or self.namespace,
            plural=FlinkDeployment.plural,
            body=body
        )

    def delete_flink_deployment(self, name: str, namespace: Optional[str] = None):
        """Delete a FlinkDeployment custom resource."""
        try:
            self.custom_api.delete_namespaced_custom_object(
                group=API_GROUP,
                version=API_VERSION,
                namespace=self._ns(namespace),
                plural=FlinkDeployment.plural,
                name=name
            )
            logger.info(f"Deleted FlinkDeployment {name}")
        except ApiException as e:
            if e.status != 404:
                logger.error(f"Error deleting FlinkDeployment {name}: {e}")
                raise

    def patch_flink_deployment(self, name: str, patch: Dict[str, Any],
                               namespace: Optional[str] = None) -> Dict[str, Any]:
        """Patch a FlinkDeployment custom resource."""
        return self.custom_api.patch_namespaced_custom_object(
            group=API_GROUP,
            version=API_VERSION,
            namespace=self._ns(namespace),
            plural=FlinkDeployment.plural,
            name=name,
            body=patch
        )

    def replace_status(self, plural: str, name: str, status: Dict[str, Any],
                       namespace: Optional[str] = None) -> Dict[str, Any]:
        """Write the whole status sub-resource of a custom resource in one request."""
        return self.custom_api.patch_namespaced_custom_object_status(
            group=API_GROUP,
            version=API_VERSION,
            namespace=self._ns(namespace),
            plural=plural,
            name=name,
            body={"status": status}
        )

    def wait_for_deployment_state(self, name: str, expected_state: str, timeout: int = 300,
                                  namespace: Optional[str] = None) -> bool:
        """Wait for the FlinkDeployment's job to reach the expected state."""
        start_time = time.time()
        while time.time() - start_time < timeout:
            deployment = self.get_flink_deployment(name, namespace)
            if deployment and deployment.get("status"):
                current_state = deployment["status"].get("jobStatus", {}).get("state")
                if current_state == expected_state:
                    logger.info(f"FlinkDeployment {name} reached state {expected_state}")
                    return True
                logger.debug(f"FlinkDeployment {name} state: {current_state}")
            time.sleep(5)

        logger.error(f"FlinkDeployment {name} did not reach state {expected_state} after {timeout}s")
        return False

    # =========================================================================
    # JobManager deployments
    # =========================================================================

    def get_deployment(self, name: str, namespace: Optional[str] = None) -> Optional[client.V1Deployment]:
        """Get a Kubernetes deployment by name."""
        try:
            return self.apps_v1.read_namespaced_deployment(name, self._ns(namespace))
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def delete_deployment(self, name: str, namespace: Optional[str] = None):
        """Delete a Kubernetes deployment together with its pods."""
        try:
            self.apps_v1.delete_namespaced_deployment(
                name,
                self._ns(namespace),
                body=client.V1DeleteOptions(propagation_policy="Foreground")
            )
            logger.info(f"Deleted deployment {name}")
        except ApiException as e:
            if e.status != 404:
                raise
            logger.info(f"Deployment {name} already deleted")

    def delete_ha_config_maps(self, cluster_id: str, namespace: Optional[str] = None):
        """Delete the config maps holding HA metadata of a cluster."""
        self.core_v1.delete_collection_namespaced_config_map(
            self._ns(namespace),
            label_selector=f"app={cluster_id},configmap-type=high-availability"
        )
        logger.info(f"Deleted HA config maps of {cluster_id}")

    def list_pods(self, label_selector: str = None, namespace: Optional[str] = None) -> List[client.V1Pod]:
        """List pods with optional label selector."""
        try:
            result = self.core_v1.list_namespaced_pod(
                self._ns(namespace),
                label_selector=label_selector
            )
            return result.items
        except ApiException as e:
            logger.error(f"Error listing pods: {e}")
            return []
