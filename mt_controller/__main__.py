"""
Standalone entrypoint for running the MobileTester controller.

The controller starts queued jobs on the device farm, polls their test
matrices and writes results and reports back to the shared database.

Usage:
    python -m mt_controller [OPTIONS]
    mt-controller [OPTIONS]  (after pip install)

Environment Variables:
    MT_DB_PATH: Database path (default: mobiletester.db)
    MT_ARTIFACT_DIR: Local artifact directory (default: artifacts)
    BLOB_READ_WRITE_TOKEN: Vercel Blob token; enables blob artifact storage
    MT_TESTLAB_PROJECT_ID: Firebase project; unset runs a simulated device farm
    MT_TESTLAB_RESULTS_BUCKET: GCS bucket for Test Lab results
    GROQ_API_KEY: Groq API key; unset uses rule-based analysis only
    MT_GROQ_MODEL: Groq model name (default: llama-3.1-8b-instant)
    MT_POLL_INTERVAL, MT_INITIAL_DELAY, MT_RETRY_BACKOFF, MT_JOB_TIMEOUT,
    MT_MATRIX_TIMEOUT, MT_RECONCILE_INTERVAL: timing, in seconds
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from dataclasses import replace
from typing import Any

from mt_common.devices import DeviceCatalog
from mt_controller.analysis import DEFAULT_MODEL, AnalysisEngine
from mt_controller.matrix_client import build_matrix_client
from mt_controller.orchestrator import JobOrchestrator
from mt_controller.settings import OrchestratorSettings
from mt_persistence.artifact_store import build_artifact_store
from mt_persistence.sqlite_repository import SQLiteJobRepository

logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="MobileTester Controller - runs APK test jobs on the device farm",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  MT_DB_PATH                 Database path (default: mobiletester.db)
  MT_ARTIFACT_DIR            Local artifact directory (default: artifacts)
  BLOB_READ_WRITE_TOKEN      Use Vercel Blob for artifacts
  MT_TESTLAB_PROJECT_ID      Firebase project (unset: simulated device farm)
  MT_TESTLAB_RESULTS_BUCKET  GCS bucket for Test Lab results
  GROQ_API_KEY               Groq API key (unset: rule-based analysis)
  MT_GROQ_MODEL              Groq model (default: llama-3.1-8b-instant)
  MT_POLL_INTERVAL           Seconds between matrix polls (default: 30)
  MT_INITIAL_DELAY           Seconds before the first poll (default: 10)
  MT_RETRY_BACKOFF           Seconds to wait after a provider error (default: 60)
  MT_JOB_TIMEOUT             Seconds before a running job times out (default: 900)
  MT_MATRIX_TIMEOUT          Per-device test timeout sent to Test Lab (default: 600)
  MT_RECONCILE_INTERVAL      Seconds between reconciliation loops (default: 5)

Note: Command-line arguments override environment variables.

Examples:
  # Run with default settings
  mt-controller

  # Use a custom database and poll more often
  mt-controller --db-path /tmp/mt.db --poll-interval 10

  # Run against a real Test Lab project
  mt-controller --testlab-project my-firebase-project

  # Enable debug logging
  mt-controller --log-level DEBUG
        """,
    )

    parser.add_argument(
        "--db-path",
        type=str,
        default=None,
        help="Path to SQLite database file (default: MT_DB_PATH env or mobiletester.db)",
    )

    parser.add_argument(
        "--testlab-project",
        type=str,
        default=None,
        help="Firebase project id (default: MT_TESTLAB_PROJECT_ID env)",
    )

    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between matrix polls (default: MT_POLL_INTERVAL env or 30)",
    )

    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between reconciliation loops (default: MT_RECONCILE_INTERVAL env or 5)",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )

    return parser.parse_args()


def get_database_path(args: argparse.Namespace) -> str:
    """
    Get the database path from CLI args or environment or use default.

    Args:
        args: Parsed command-line arguments

    Returns:
        Path to the SQLite database file
    """
    if args.db_path:
        return args.db_path
    return os.environ.get("MT_DB_PATH", "mobiletester.db")


def get_testlab_project(args: argparse.Namespace) -> str | None:
    if args.testlab_project:
        return args.testlab_project
    return os.environ.get("MT_TESTLAB_PROJECT_ID") or None


def get_settings(args: argparse.Namespace) -> OrchestratorSettings:
    """
    Build orchestrator settings from environment, then apply CLI overrides.

    Args:
        args: Parsed command-line arguments

    Returns:
        Settings for the orchestrator
    """
    settings = OrchestratorSettings.from_env()

    if args.poll_interval is not None:
        if args.poll_interval <= 0:
            logger.warning(
                f"Invalid poll interval={args.poll_interval}, "
                f"using {settings.poll_interval}"
            )
        else:
            settings = replace(settings, poll_interval=args.poll_interval)

    if args.interval is not None:
        if args.interval <= 0:
            logger.warning(
                f"Invalid interval={args.interval}, using {settings.reconcile_interval}"
            )
        else:
            settings = replace(settings, reconcile_interval=args.interval)

    return settings


async def run_controller(args: argparse.Namespace) -> None:
    """
    Initialize and run the job orchestrator.

    Args:
        args: Parsed command-line arguments

    This function wires the orchestrator's dependencies and runs it until
    interrupted by SIGINT or SIGTERM.
    """
    db_path = get_database_path(args)
    project_id = get_testlab_project(args)
    settings = get_settings(args)
    groq_api_key = os.environ.get("GROQ_API_KEY") or None

    logger.info("Starting MobileTester Controller")
    logger.info(f"  Database: {db_path}")
    logger.info(f"  Test Lab project: {project_id or '(simulated)'}")
    logger.info(f"  AI analysis: {'groq' if groq_api_key else 'rule-based'}")
    logger.info(f"  Poll interval: {settings.poll_interval}s")
    logger.info(f"  Job timeout: {settings.job_timeout}s")
    logger.info(f"  Reconcile interval: {settings.reconcile_interval}s")

    repository = SQLiteJobRepository(db_path)
    await repository.initialize()
    logger.info("Database initialized")

    catalog = DeviceCatalog()
    orchestrator = JobOrchestrator(
        repository=repository,
        matrix_client=build_matrix_client(
            project_id,
            catalog=catalog,
            results_bucket=os.environ.get("MT_TESTLAB_RESULTS_BUCKET") or None,
        ),
        analysis_engine=AnalysisEngine(
            api_key=groq_api_key,
            model=os.environ.get("MT_GROQ_MODEL", DEFAULT_MODEL),
        ),
        catalog=catalog,
        artifact_store=build_artifact_store(
            os.environ.get("BLOB_READ_WRITE_TOKEN"),
            os.environ.get("MT_ARTIFACT_DIR", "artifacts"),
        ),
        settings=settings,
    )

    shutdown_event = asyncio.Event()

    def signal_handler(sig: Any, _frame: Any) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {sig}, initiating graceful shutdown...")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await orchestrator.start()
        logger.info("Controller started successfully")

        await shutdown_event.wait()

    except Exception as e:
        logger.error(f"Controller error: {e}", exc_info=True)
        raise
    finally:
        logger.info("Stopping controller...")
        await orchestrator.stop()
        logger.info("Closing database connections...")
        await repository.close()
        logger.info("Controller stopped cleanly")


def main() -> int:
    """
    Main entrypoint for the controller.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(run_controller(args))
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
