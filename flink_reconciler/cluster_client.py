"""
Client for a running Flink cluster.

``ClusterClient`` is the capability the reconciler needs from a cluster;
``RestClusterClient`` implements it against the JobManager REST endpoint.
"""
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import httpx

from .config import CLUSTER_ID, DEFAULT_REST_PORT, NAMESPACE, REST_ADDRESS, REST_PORT
from .exceptions import JobControllerError, JobControllerTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class JobStatusMessage:
    """A job as reported by the cluster."""
    job_id: str
    job_name: str
    job_state: str
    start_time: int


@dataclass
class SavepointFetchResult:
    """Resolution of a savepoint trigger poll."""
    location: Optional[str] = None
    error: Optional[str] = None
    pending: bool = False

    @classmethod
    def in_progress(cls) -> "SavepointFetchResult":
        return cls(pending=True)

    @classmethod
    def completed(cls, location: str) -> "SavepointFetchResult":
        return cls(location=location)

    @classmethod
    def failed(cls, error: str) -> "SavepointFetchResult":
        return cls(error=error)


class ClusterClient(ABC):
    """Operations against one Flink cluster."""

    @abstractmethod
    def list_jobs(self) -> List[JobStatusMessage]:
        ...

    @abstractmethod
    def cancel(self, job_id: str):
        ...

    @abstractmethod
    def stop_with_savepoint(self, job_id: str, advance_to_end_of_event_time: bool,
                            savepoint_dir: Optional[str]) -> str:
        """Stop the job once a savepoint completed and return the savepoint path."""
        ...

    @abstractmethod
    def trigger_savepoint(self, job_id: str, target_directory: Optional[str], cancel_job: bool) -> str:
        """Trigger a savepoint and return its trigger id without waiting for it."""
        ...

    @abstractmethod
    def get_savepoint_status(self, job_id: str, trigger_id: str) -> SavepointFetchResult:
        ...

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def rest_url(conf: Dict[str, str]) -> str:
    """JobManager REST address of the cluster described by ``conf``."""
    port = conf.get(REST_PORT) or DEFAULT_REST_PORT
    address = conf.get(REST_ADDRESS)
    if not address:
        address = f"{conf.get(CLUSTER_ID)}-rest.{conf.get(NAMESPACE, 'default')}"
    return f"http://{address}:{port}"


class RestClusterClient(ClusterClient):
    """
    ClusterClient speaking the Flink REST API.

    ``timeout`` bounds each HTTP request; ``stop_timeout`` bounds the whole
    stop-with-savepoint wait, which spans many requests.
    """

    def __init__(self, base_url: str, timeout: float = 10.0, stop_timeout: float = 60.0,
                 poll_interval: float = 1.0, transport: Optional[httpx.BaseTransport] = None,
                 clock: Callable[[], float] = time.monotonic, sleep: Callable[[float], None] = time.sleep):
        self.base_url = base_url
        self.timeout = timeout
        self.stop_timeout = stop_timeout
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep
        self._client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)

    def close(self):
        self._client.close()

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
            response.raise_for_status()
            return response
        except httpx.TimeoutException as e:
            raise JobControllerTimeoutError(f"{method} {self.base_url}{path} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise JobControllerError(f"{method} {self.base_url}{path} failed: {e}") from e

    def list_jobs(self) -> List[JobStatusMessage]:
        body = self._request("GET", "/jobs/overview").json()
        return [
            JobStatusMessage(
                job_id=job["jid"],
                job_name=job.get("name", ""),
                job_state=job.get("state", "UNKNOWN"),
                start_time=int(job.get("start-time", 0)),
            )
            for job in body.get("jobs", [])
        ]

    def cancel(self, job_id: str):
        self._request("PATCH", f"/jobs/{job_id}", params={"mode": "cancel"})
        logger.info(f"Cancelled job {job_id}")

    def stop_with_savepoint(self, job_id: str, advance_to_end_of_event_time: bool,
                            savepoint_dir: Optional[str]) -> str:
        body = {"drain": advance_to_end_of_event_time}
        if savepoint_dir:
            body["targetDirectory"] = savepoint_dir
        trigger_id = self._request("POST", f"/jobs/{job_id}/stop", json=body).json()["request-id"]
        logger.info(f"Stop-with-savepoint of job {job_id} triggered ({trigger_id})")

        start_time = self._clock()
        while True:
            result = self.get_savepoint_status(job_id, trigger_id)
            if result.error is not None:
                raise JobControllerError(f"Stop-with-savepoint of job {job_id} failed: {result.error}")
            if not result.pending:
                logger.info(f"Job {job_id} stopped with savepoint {result.location}")
                return result.location
            if self._clock() - start_time >= self.stop_timeout:
                raise JobControllerTimeoutError(
                    f"Stop-with-savepoint of job {job_id} did not complete within {self.stop_timeout}s")
            self._sleep(self.poll_interval)

    def trigger_savepoint(self, job_id: str, target_directory: Optional[str], cancel_job: bool) -> str:
        body = {"cancel-job": cancel_job}
        if target_directory:
            body["target-directory"] = target_directory
        trigger_id = self._request("POST", f"/jobs/{job_id}/savepoints", json=body).json()["request-id"]
        logger.info(f"Savepoint of job {job_id} triggered ({trigger_id})")
        return trigger_id

    def get_savepoint_status(self, job_id: str, trigger_id: str) -> SavepointFetchResult:
        body = self._request("GET", f"/jobs/{job_id}/savepoints/{trigger_id}").json()
        if body.get("status", {}).get("id") != "COMPLETED":
            return SavepointFetchResult.in_progress()

        operation = body.get("operation") or {}
        failure = operation.get("failure-cause")
        if failure:
            stack_trace = (failure.get("stack-trace") or "").strip()
            cause = stack_trace.splitlines()[0] if stack_trace else failure.get("class")
            return SavepointFetchResult.failed(cause or "unknown failure")
        return SavepointFetchResult.completed(operation.get("location"))
