"""
Orchestrator timing configuration.

Values come from MT_* environment variables; invalid or non-positive values
fall back to the default with a logged warning.
"""

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 30.0
DEFAULT_INITIAL_DELAY = 10.0
DEFAULT_RETRY_BACKOFF = 60.0
DEFAULT_JOB_TIMEOUT = 900.0  # 15 minutes
DEFAULT_MATRIX_TIMEOUT = 600  # seconds the provider may spend on one device
DEFAULT_RECONCILE_INTERVAL = 5.0


def get_positive_float(name: str, default: float) -> float:
    """
    Read a positive number from the environment.

    Args:
        name: Environment variable name
        default: Value used when unset or invalid

    Returns:
        The configured value, or default
    """
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw}, using default {default}")
        return default
    if value <= 0:
        logger.warning(f"Invalid {name}={value}, using default {default}")
        return default
    return value


@dataclass(frozen=True)
class OrchestratorSettings:
    """Delays and ceilings used by the job state machine, in seconds."""

    poll_interval: float = DEFAULT_POLL_INTERVAL
    initial_delay: float = DEFAULT_INITIAL_DELAY
    retry_backoff: float = DEFAULT_RETRY_BACKOFF
    job_timeout: float = DEFAULT_JOB_TIMEOUT
    matrix_timeout: int = DEFAULT_MATRIX_TIMEOUT
    reconcile_interval: float = DEFAULT_RECONCILE_INTERVAL

    @property
    def timeout_reason(self) -> str:
        minutes = self.job_timeout / 60
        if minutes == int(minutes):
            return f"Test timed out after {int(minutes)} minutes"
        return f"Test timed out after {int(self.job_timeout)} seconds"

    @classmethod
    def from_env(cls) -> "OrchestratorSettings":
        return cls(
            poll_interval=get_positive_float("MT_POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
            initial_delay=get_positive_float("MT_INITIAL_DELAY", DEFAULT_INITIAL_DELAY),
            retry_backoff=get_positive_float("MT_RETRY_BACKOFF", DEFAULT_RETRY_BACKOFF),
            job_timeout=get_positive_float("MT_JOB_TIMEOUT", DEFAULT_JOB_TIMEOUT),
            matrix_timeout=int(
                get_positive_float("MT_MATRIX_TIMEOUT", DEFAULT_MATRIX_TIMEOUT)
            ),
            reconcile_interval=get_positive_float(
                "MT_RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL
            ),
        )
