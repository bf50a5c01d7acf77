"""
Abstract repository interface for job persistence.

This module defines the contract that any database implementation must follow,
allowing easy swapping between SQLite, PostgreSQL, a document store, etc.
Implementations are only required to provide atomic single-row updates;
no multi-record transactions are assumed.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from .models import APIKey, Job, JobUpdate, User


class JobRepository(ABC):
    """
    Abstract base class for job storage operations.

    Implementations must provide async-safe access to job data
    and handle their own connection management.
    """

    @abstractmethod
    async def create_job(self, job: Job) -> None:
        """
        Create a new job in the database.

        Args:
            job: Job object to persist

        Raises:
            Exception: If job with same ID already exists
        """

    @abstractmethod
    async def get_job(self, job_id: str) -> Job | None:
        """
        Retrieve a job by its ID.

        Returns:
            Job object if found, None otherwise
        """

    @abstractmethod
    async def conditional_update(
        self, job_id: str, expected_status: str, update: JobUpdate
    ) -> None:
        """
        Apply an update only if the job is still in the expected status.

        The status check and the write happen atomically, so two handlers
        racing on the same job cannot both succeed.

        Args:
            job_id: UUID of the job to update
            expected_status: Status the job must currently have
            update: Fields to write; None fields are left untouched

        Raises:
            ConflictError: If the job is no longer in expected_status
            JobNotFoundError: If the job does not exist
        """

    @abstractmethod
    async def list_user_jobs(
        self, owner_id: str, status: str | None = None, limit: int | None = None
    ) -> list[Job]:
        """
        List jobs belonging to a user, newest first.

        Args:
            owner_id: UUID of the owner
            status: Optional status filter
            limit: Optional maximum number of jobs
        """

    @abstractmethod
    async def list_jobs(self, statuses: tuple[str, ...] | None = None) -> list[Job]:
        """
        List all jobs, optionally restricted to the given statuses.

        Used by the controller's reconciliation loop.
        """

    @abstractmethod
    async def delete_job(self, job_id: str) -> None:
        """
        Remove a job record.

        Raises:
            JobNotFoundError: If the job does not exist
        """

    # User management methods

    @abstractmethod
    async def create_user(self, user: User) -> None:
        """
        Create a new user.

        Raises:
            Exception: If a user with the same email already exists
        """

    @abstractmethod
    async def get_user(self, user_id: str) -> User | None:
        pass

    @abstractmethod
    async def get_user_by_email(self, email: str) -> User | None:
        pass

    @abstractmethod
    async def list_users(self) -> list[User]:
        pass

    @abstractmethod
    async def update_user_active_status(self, user_id: str, is_active: bool) -> None:
        """Deactivate or reactivate a user."""

    # API key management methods

    @abstractmethod
    async def create_api_key(self, api_key: APIKey) -> None:
        pass

    @abstractmethod
    async def get_api_key_by_hash(self, key_hash: str) -> APIKey | None:
        pass

    @abstractmethod
    async def revoke_api_key(self, key_id: str) -> None:
        """
        Revoke an API key (set is_active to False).

        Raises:
            KeyError: If the API key does not exist
        """

    @abstractmethod
    async def update_api_key_last_used(self, key_id: str, timestamp: datetime) -> None:
        pass

    @abstractmethod
    async def initialize(self) -> None:
        """
        Initialize the database (create tables, etc.).

        Called once at application startup.
        """

    @abstractmethod
    async def close(self) -> None:
        """Close database connections and cleanup resources."""
