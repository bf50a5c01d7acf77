"""
Device-farm adapters for running an APK across a test matrix.

This module translates the orchestrator's intent ("run this artifact on these
devices") into Firebase Test Lab API calls, and normalizes Test Lab's matrix
and execution states into a small fixed vocabulary:

    pending, running, finished, error, cancelled

A simulated client with the same contract is provided for development
setups that have no Test Lab project.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import google.auth
import google.auth.exceptions
import requests
from google.auth.transport.requests import Request as GoogleAuthRequest

from mt_common.devices import DeviceCatalog, ProviderDevice
from mt_common.errors import ProviderRejected, ProviderUnavailable
from mt_common.models import FAILED, PASSED, SKIPPED, TestResult

logger = logging.getLogger(__name__)

TESTLAB_API_URL = "https://testing.googleapis.com/v1"
CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

# Normalized matrix states
PENDING = "pending"
RUNNING = "running"
FINISHED = "finished"
ERROR = "error"
CANCELLED = "cancelled"
TERMINAL_STATES = (FINISHED, ERROR, CANCELLED)

MATRIX_STATES: dict[str, str] = {
    "TEST_STATE_UNSPECIFIED": PENDING,
    "VALIDATING": PENDING,
    "PENDING": PENDING,
    "RUNNING": RUNNING,
    "FINISHED": FINISHED,
    "CANCELLED": CANCELLED,
    "ERROR": ERROR,
    "UNSUPPORTED_ENVIRONMENT": ERROR,
    "INCOMPATIBLE_ENVIRONMENT": ERROR,
    "INCOMPATIBLE_ARCHITECTURE": ERROR,
    "INVALID": ERROR,
}

EXECUTION_OUTCOMES: dict[str, str] = {
    "FINISHED": PASSED,
    "SKIPPED": SKIPPED,
    "CANCELLED": SKIPPED,
}


@dataclass(frozen=True)
class MatrixHandle:
    """A matrix freshly created on the provider."""

    matrix_id: str
    devices: tuple[str, ...]
    status: str = PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class MatrixStatus:
    """Normalized view of a matrix; results are only filled in when terminal."""

    matrix_id: str
    state: str
    results: tuple[TestResult, ...] = ()
    detail: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


def map_matrix_state(state: str | None) -> str:
    """Map a Test Lab matrix state; unrecognised states count as errors."""
    if not state:
        return PENDING
    return MATRIX_STATES.get(state, ERROR)


def map_execution_outcome(state: str | None) -> str:
    return EXECUTION_OUTCOMES.get(state or "", FAILED)


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, dict) and "seconds" in value:
        return datetime.fromtimestamp(int(value["seconds"]), UTC)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


def execution_duration(execution: dict[str, Any]) -> int:
    """Seconds between creation and completion of an execution, 0 if unknown."""
    start = _parse_timestamp(execution.get("creationTime"))
    end = _parse_timestamp(execution.get("completionTime"))
    if start is None or end is None:
        return 0
    return max(0, round((end - start).total_seconds()))


def parse_execution(execution: dict[str, Any], project_id: str) -> TestResult:
    """Build a TestResult from one Test Lab test execution."""
    environment = execution.get("environment") or {}
    device = (environment.get("androidDevice") or {}).get("androidModelId") or "unknown"
    details = execution.get("testDetails") or {}

    log_lines = list(details.get("progressMessages") or [])
    if details.get("errorMessage"):
        log_lines.append(details["errorMessage"])

    console_url = None
    step = execution.get("toolResultsStep") or {}
    if step.get("historyId") and step.get("executionId"):
        console_url = (
            f"https://console.firebase.google.com/project/{project_id}/testlab/"
            f"histories/{step['historyId']}/matrices/{step['executionId']}"
        )

    return TestResult(
        device=device,
        status=map_execution_outcome(execution.get("state")),
        duration=execution_duration(execution),
        logs="\n".join(log_lines),
        screenshots=tuple(details.get("screenshotUrls") or ()),
        video_url=(details.get("videoRecording") or {}).get("videoUrl"),
        console_url=console_url,
    )


def build_matrix_request(
    project_id: str,
    artifact_ref: str,
    devices: list[ProviderDevice],
    timeout_seconds: int,
    results_bucket: str,
) -> dict[str, Any]:
    """Request body for testMatrices.create: one Robo test across all devices."""
    android_devices = []
    for device in dict.fromkeys(devices):
        android_devices.append(
            {
                "androidModelId": device.model_id,
                "androidVersionId": device.version_id,
                "locale": "en_US",
                "orientation": "portrait",
            }
        )

    return {
        "projectId": project_id,
        "testSpecification": {
            "androidRoboTest": {"appApk": {"gcsPath": artifact_ref}},
            "testTimeout": f"{timeout_seconds}s",
        },
        "environmentMatrix": {
            "androidDeviceList": {"androidDevices": android_devices},
        },
        "resultStorage": {
            "googleCloudStorage": {"gcsPath": f"gs://{results_bucket}/"},
        },
    }


class TestMatrixClient(ABC):
    """Contract for device-farm adapters used by the orchestrator."""

    __test__ = False  # not a pytest class

    @abstractmethod
    async def start(
        self, artifact_ref: str, device_ids: list[str], timeout_seconds: int
    ) -> MatrixHandle:
        """
        Create a test matrix. Not idempotent: every call creates a new matrix.

        Raises:
            ProviderRejected: If a device cannot be mapped or the provider refuses
            ProviderUnavailable: If the provider cannot be reached
        """

    @abstractmethod
    async def poll(self, matrix_id: str) -> MatrixStatus:
        """
        Fetch the normalized status of a matrix.

        Raises:
            ProviderUnavailable: On any transient network or HTTP failure
        """

    @abstractmethod
    async def cancel(self, matrix_id: str) -> None:
        """
        Ask the provider to cancel a matrix.

        Raises:
            ProviderError: If the cancel request fails
        """


class GoogleAccessTokenProvider:
    """Supplies OAuth access tokens from Application Default Credentials."""

    def __init__(self, scopes: tuple[str, ...] = (CLOUD_PLATFORM_SCOPE,)):
        self.scopes = scopes
        self._credentials = None

    def __call__(self) -> str:
        if self._credentials is None:
            self._credentials, _ = google.auth.default(scopes=list(self.scopes))
        if not self._credentials.valid:
            self._credentials.refresh(GoogleAuthRequest())
        return self._credentials.token


class FirebaseTestLabClient(TestMatrixClient):
    """
    Test Lab REST adapter.

    HTTP calls are made with requests in worker threads so the event loop
    is never blocked.
    """

    def __init__(
        self,
        project_id: str,
        catalog: DeviceCatalog | None = None,
        results_bucket: str | None = None,
        token_provider: Callable[[], str] | None = None,
        api_url: str = TESTLAB_API_URL,
        request_timeout: float = 30.0,
    ):
        """
        Initialize the Test Lab client.

        Args:
            project_id: Google Cloud project that owns the matrices
            catalog: Device catalog used to translate device ids
            results_bucket: GCS bucket for results (default: <project>_test_results)
            token_provider: Callable returning an OAuth access token
            api_url: Base URL of the Testing API
            request_timeout: Seconds to wait for each HTTP request
        """
        self.project_id = project_id
        self.catalog = catalog or DeviceCatalog()
        self.results_bucket = results_bucket or f"{project_id}_test_results"
        self.token_provider = token_provider or GoogleAccessTokenProvider()
        self.api_url = api_url.rstrip("/")
        self.request_timeout = request_timeout

    def _matrices_url(self) -> str:
        return f"{self.api_url}/projects/{self.project_id}/testMatrices"

    def _headers(self) -> dict[str, str]:
        try:
            token = self.token_provider()
        except google.auth.exceptions.GoogleAuthError as e:
            raise ProviderUnavailable(f"Could not obtain Test Lab credentials: {e}") from e
        return {"Authorization": f"Bearer {token}"}

    async def start(
        self, artifact_ref: str, device_ids: list[str], timeout_seconds: int
    ) -> MatrixHandle:
        return await asyncio.to_thread(
            self._start, artifact_ref, device_ids, timeout_seconds
        )

    def _start(
        self, artifact_ref: str, device_ids: list[str], timeout_seconds: int
    ) -> MatrixHandle:
        try:
            devices = [self.catalog.provider_device(d) for d in device_ids]
        except KeyError as e:
            raise ProviderRejected(f"Device {e} has no Test Lab model mapping") from e

        body = build_matrix_request(
            self.project_id, artifact_ref, devices, timeout_seconds, self.results_bucket
        )

        try:
            response = requests.post(
                self._matrices_url(),
                json=body,
                headers=self._headers(),
                timeout=self.request_timeout,
            )
        except requests.exceptions.RequestException as e:
            raise ProviderUnavailable(f"Failed to reach Test Lab: {e}") from e

        if not response.ok:
            raise ProviderRejected(
                f"Failed to start test matrix: {response.status_code} {response.reason}"
            )

        try:
            matrix_id = response.json().get("testMatrixId")
        except ValueError:
            matrix_id = None
        if not matrix_id:
            raise ProviderRejected("Test Lab response did not include a matrix id")

        logger.info(f"Started test matrix {matrix_id} on {len(devices)} device(s)")
        return MatrixHandle(matrix_id=matrix_id, devices=tuple(device_ids))

    async def poll(self, matrix_id: str) -> MatrixStatus:
        return await asyncio.to_thread(self._poll, matrix_id)

    def _poll(self, matrix_id: str) -> MatrixStatus:
        try:
            response = requests.get(
                f"{self._matrices_url()}/{matrix_id}",
                headers=self._headers(),
                timeout=self.request_timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise ProviderUnavailable(f"Failed to get test matrix status: {e}") from e

        if not isinstance(payload, dict):
            raise ProviderUnavailable(f"Unexpected test matrix response for {matrix_id}")

        state = map_matrix_state(payload.get("state"))
        if state not in TERMINAL_STATES:
            return MatrixStatus(matrix_id=matrix_id, state=state)

        try:
            results = tuple(
                parse_execution(execution, self.project_id)
                for execution in payload.get("testExecutions") or []
            )
        except (AttributeError, TypeError, ValueError) as e:
            raise ProviderUnavailable(
                f"Malformed test executions for matrix {matrix_id}: {e}"
            ) from e
        return MatrixStatus(
            matrix_id=matrix_id,
            state=state,
            results=results,
            detail=payload.get("invalidMatrixDetails"),
        )

    async def cancel(self, matrix_id: str) -> None:
        await asyncio.to_thread(self._cancel, matrix_id)

    def _cancel(self, matrix_id: str) -> None:
        try:
            response = requests.post(
                f"{self._matrices_url()}/{matrix_id}:cancel",
                headers=self._headers(),
                timeout=self.request_timeout,
            )
        except requests.exceptions.RequestException as e:
            raise ProviderUnavailable(f"Failed to reach Test Lab: {e}") from e

        if not response.ok:
            raise ProviderRejected(
                f"Failed to cancel test matrix: {response.status_code} {response.reason}"
            )

        logger.info(f"Cancelled test matrix {matrix_id}")


class SimulatedTestMatrixClient(TestMatrixClient):
    """
    In-process stand-in for the device farm.

    Matrices report running until polled polls_to_finish times, then finish
    with canned results: the second device fails with an ANR, the rest pass.
    A matrix is forgotten once its terminal state has been reported.
    """

    def __init__(self, polls_to_finish: int = 3):
        self.polls_to_finish = polls_to_finish
        self._matrices: dict[str, dict[str, Any]] = {}

    async def start(
        self, artifact_ref: str, device_ids: list[str], timeout_seconds: int
    ) -> MatrixHandle:
        matrix_id = f"sim_{uuid.uuid4().hex[:12]}"
        self._matrices[matrix_id] = {
            "devices": list(device_ids),
            "polls": 0,
            "cancelled": False,
        }
        logger.info(f"Simulated test matrix {matrix_id} on {len(device_ids)} device(s)")
        return MatrixHandle(matrix_id=matrix_id, devices=tuple(device_ids))

    async def poll(self, matrix_id: str) -> MatrixStatus:
        matrix = self._matrices.get(matrix_id)
        if matrix is None:
            return MatrixStatus(matrix_id, ERROR, detail="Unknown test matrix")
        if matrix["cancelled"]:
            del self._matrices[matrix_id]
            return MatrixStatus(matrix_id, CANCELLED)

        matrix["polls"] += 1
        if matrix["polls"] < self.polls_to_finish:
            return MatrixStatus(matrix_id, RUNNING)

        # Terminal states are reported once
        del self._matrices[matrix_id]
        return MatrixStatus(
            matrix_id, FINISHED, results=self._results(matrix["devices"])
        )

    async def cancel(self, matrix_id: str) -> None:
        matrix = self._matrices.get(matrix_id)
        if matrix is not None:
            matrix["cancelled"] = True

    @staticmethod
    def _results(device_ids: list[str]) -> tuple[TestResult, ...]:
        results = []
        for index, device_id in enumerate(device_ids):
            if index == 1:
                results.append(
                    TestResult(
                        device=device_id,
                        status=FAILED,
                        duration=30,
                        logs="ANR detected in MainActivity after 5 seconds.",
                    )
                )
            else:
                results.append(
                    TestResult(
                        device=device_id,
                        status=PASSED,
                        duration=45,
                        logs="Test completed successfully. No crashes detected.",
                    )
                )
        return tuple(results)


def build_matrix_client(
    project_id: str | None,
    catalog: DeviceCatalog | None = None,
    results_bucket: str | None = None,
) -> TestMatrixClient:
    """Use Test Lab when a project is configured, the simulator otherwise."""
    if project_id:
        return FirebaseTestLabClient(
            project_id, catalog=catalog, results_bucket=results_bucket
        )
    logger.warning("No Test Lab project configured, using simulated device farm")
    return SimulatedTestMatrixClient()
