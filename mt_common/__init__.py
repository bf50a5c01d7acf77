"""
MobileTester common module.

This module contains shared domain models, the device catalog, error types and
the storage interfaces used across the MobileTester components (server,
controller, persistence).

The common module has no dependencies on other mt_* modules, making it
a pure domain layer that can be imported by any component.
"""

from .devices import DeviceCatalog
from .models import Job, JobIssue, JobReport, JobUpdate, TestResult
from .repository import JobRepository

__all__ = [
    "DeviceCatalog",
    "Job",
    "JobIssue",
    "JobReport",
    "JobRepository",
    "JobUpdate",
    "TestResult",
]
