"""
Data models for MobileTester jobs.

These models represent the domain objects used throughout the application,
independent of the underlying storage mechanism.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

# Job statuses
QUEUED = "queued"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"

JOB_STATUSES = (QUEUED, RUNNING, COMPLETED, FAILED)
ACTIVE_STATUSES = (QUEUED, RUNNING)
TERMINAL_STATUSES = (COMPLETED, FAILED)

# Per-device outcomes
PASSED = "passed"
SKIPPED = "skipped"
TEST_OUTCOMES = (PASSED, FAILED, SKIPPED)

SEVERITIES = ("low", "medium", "high", "critical")


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Device:
    """A device in the testing catalog."""

    id: str
    name: str
    manufacturer: str
    android_version: str
    api_level: int
    screen_size: str
    resolution: str
    popular: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "manufacturer": self.manufacturer,
            "android_version": self.android_version,
            "api_level": self.api_level,
            "screen_size": self.screen_size,
            "resolution": self.resolution,
            "popular": self.popular,
        }


@dataclass(frozen=True)
class TestResult:
    """
    Outcome of running the artifact on a single device.

    Missing provider fields are normalized to the defaults below.
    """

    __test__ = False  # not a pytest class

    device: str
    status: str  # "passed", "failed" or "skipped"
    duration: int = 0  # seconds
    logs: str = ""
    screenshots: tuple[str, ...] = ()
    video_url: str | None = None
    console_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert result to dictionary format (for JSON serialization)."""
        result: dict[str, Any] = {
            "device": self.device,
            "status": self.status,
            "duration": self.duration,
            "logs": self.logs,
            "screenshots": list(self.screenshots),
        }
        if self.video_url is not None:
            result["video_url"] = self.video_url
        if self.console_url is not None:
            result["console_url"] = self.console_url
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TestResult":
        return cls(
            device=data["device"],
            status=data["status"],
            duration=int(data.get("duration") or 0),
            logs=data.get("logs") or "",
            screenshots=tuple(data.get("screenshots") or ()),
            video_url=data.get("video_url"),
            console_url=data.get("console_url"),
        )


@dataclass(frozen=True)
class JobIssue:
    """A single problem found by the analysis, with a suggested fix."""

    title: str
    description: str
    severity: str  # "low", "medium", "high" or "critical"
    fix: str
    device: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "title": self.title,
            "description": self.description,
            "severity": self.severity,
            "fix": self.fix,
        }
        if self.device is not None:
            result["device"] = self.device
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobIssue":
        return cls(
            title=data["title"],
            description=data["description"],
            severity=data["severity"],
            fix=data["fix"],
            device=data.get("device"),
        )


@dataclass(frozen=True)
class JobReport:
    """Structured analysis of a completed job."""

    summary: str
    issues: tuple[JobIssue, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "issues": [issue.to_dict() for issue in self.issues],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobReport":
        return cls(
            summary=data["summary"],
            issues=tuple(JobIssue.from_dict(issue) for issue in data.get("issues", [])),
        )


@dataclass
class User:
    """
    Represents a user account.

    Users own API keys and jobs, providing authentication and authorization.
    """

    id: str  # UUID
    name: str
    email: str  # unique
    created_at: datetime
    is_active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "created_at": _iso(self.created_at),
            "is_active": self.is_active,
        }


@dataclass
class APIKey:
    """
    An API key for authentication.

    Only the SHA-256 hash is stored; the plaintext key is shown once.
    """

    id: str
    user_id: str
    key_hash: str
    name: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_used_at: datetime | None = None
    is_active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "created_at": _iso(self.created_at),
            "last_used_at": _iso(self.last_used_at),
            "is_active": self.is_active,
        }


@dataclass
class Job:
    """
    A device-testing job for one uploaded APK.

    Jobs progress through states: queued -> running -> completed | failed.
    Cancellation forces a queued or running job to failed.
    """

    id: str
    owner_id: str
    artifact_ref: str
    device_selection: list[str]
    status: str = QUEUED
    context: str = ""
    provider_matrix_id: str | None = None
    raw_results: list[TestResult] | None = None
    report: JobReport | None = None
    failure_reason: str | None = None
    duration: int | None = None  # seconds between start and terminal state
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def artifact_name(self) -> str:
        """File name of the uploaded artifact, taken from its reference."""
        name = self.artifact_ref.rstrip("/").rsplit("/", 1)[-1]
        return name or "app.apk"

    @property
    def videos(self) -> list[dict[str, str]]:
        return [
            {"device": result.device, "url": result.video_url}
            for result in self.raw_results or []
            if result.video_url
        ]

    def to_dict(self) -> dict[str, Any]:
        """Convert job to dictionary format (for API responses)."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "artifact_ref": self.artifact_ref,
            "context": self.context,
            "devices": list(self.device_selection),
            "status": self.status,
            "provider_matrix_id": self.provider_matrix_id,
            "raw_results": [r.to_dict() for r in self.raw_results]
            if self.raw_results is not None
            else None,
            "report": self.report.to_dict() if self.report else None,
            "failure_reason": self.failure_reason,
            "videos": self.videos,
            "duration": self.duration,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }

    def to_summary_dict(self) -> dict[str, Any]:
        """Convert job to summary format (without results, for listings)."""
        return {
            "job_id": self.id,
            "status": self.status,
            "artifact_name": self.artifact_name,
            "devices": len(self.device_selection),
            "issues": len(self.report.issues) if self.report else None,
            "duration": self.duration,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
        }


@dataclass
class JobUpdate:
    """
    Fields written by a conditional job update.

    Fields left as None are not touched.
    """

    status: str
    provider_matrix_id: str | None = None
    raw_results: list[TestResult] | None = None
    report: JobReport | None = None
    failure_reason: str | None = None
    duration: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
