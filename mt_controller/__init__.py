"""
MobileTester controller module.

This module contains the job orchestrator and the external adapters it drives:
the device-farm client and the AI analysis engine. The orchestrator's
reconciliation loop runs as a separate process from the HTTP server; both
share the job database.
"""

from .analysis import AnalysisEngine, compute_insights, fallback_analyze
from .matrix_client import (
    FirebaseTestLabClient,
    MatrixStatus,
    SimulatedTestMatrixClient,
    TestMatrixClient,
    build_matrix_client,
)
from .orchestrator import JobOrchestrator
from .scheduler import Clock, JobScheduler
from .settings import OrchestratorSettings

__all__ = [
    "AnalysisEngine",
    "Clock",
    "FirebaseTestLabClient",
    "JobOrchestrator",
    "JobScheduler",
    "MatrixStatus",
    "OrchestratorSettings",
    "SimulatedTestMatrixClient",
    "TestMatrixClient",
    "build_matrix_client",
    "compute_insights",
    "fallback_analyze",
]
