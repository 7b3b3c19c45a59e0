"""
Main entrypoint: Stellar Insights core service (ingestion, aggregation, reputation, anchoring).

Runs until SIGINT/SIGTERM. Configuration comes from the environment and an optional
.env at the repository root (HORIZON_URL, DB_PATH, INGEST_TASKS, CONTRACT_MODE, ...).

    python main.py
"""

import sys

# Configure structured JSON logging before other imports that may log
from stellar_insights.logging import get_logger

logger = get_logger("main")


def main() -> int:
    from stellar_insights.agent_worker.runtime import main as run_service

    logger.info("main_starting")
    code = run_service()
    logger.info("main_exited", exit_code=code)
    return code


if __name__ == "__main__":
    sys.exit(main())
