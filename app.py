#!/usr/bin/env python3
"""
Decision Health Monitor - Main Application Entry Point.

============================================================
SINGLE ENTRYPOINT
============================================================
- serve: run the /decisions HTTP API under uvicorn
- sweep: run one evaluation sweep over the candidate set
  and exit (suitable for cron or a PM2 cron_restart)

============================================================
USAGE
============================================================
    python app.py serve
    python app.py sweep --max-items 200

With PM2:
    pm2 start app.py --interpreter python --name decision-monitor -- serve

Environment:
    DATABASE_URL            Decision store URL
    DECISION_API_HOST       Bind host (default 0.0.0.0)
    DECISION_API_PORT       Bind port (default PORT or 8000)
    LOG_LEVEL               Logging level (default INFO)
    DECISION_ENGINE_*       Engine thresholds
    DECISION_SCHEDULER_*    Scheduling windows and limits

============================================================
"""

import argparse
import logging
import os
import sys
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from sqlalchemy.orm import sessionmaker

from core.exceptions import DecisionMonitorException
from database.engine import get_engine, get_session_factory, initialize_database
from decision_evaluation import (
    DecisionEvaluationConfig,
    DecisionEvaluationEngine,
    EvaluationScheduler,
)
from decision_review.router import get_scheduler, router

load_dotenv()

logger = logging.getLogger(__name__)


# ============================================================
# CONFIGURATION
# ============================================================

def build_config() -> DecisionEvaluationConfig:
    """Engine and scheduling configuration from the environment."""
    return DecisionEvaluationConfig.from_env()


def build_scheduler(
    session_factory: Optional[sessionmaker] = None,
    config: Optional[DecisionEvaluationConfig] = None,
) -> EvaluationScheduler:
    config = config or build_config()
    return EvaluationScheduler(
        session_factory=session_factory or get_session_factory(),
        engine=DecisionEvaluationEngine(config.engine),
        config=config.scheduling,
    )


# ============================================================
# FASTAPI APPLICATION
# ============================================================

def create_app(
    scheduler: Optional[EvaluationScheduler] = None,
    initialize: bool = True,
) -> FastAPI:
    """
    Build the API application.

    Args:
        scheduler: Scheduler to serve; built from the environment
                   when omitted
        initialize: Verify the store and create missing tables
    """
    if initialize:
        initialize_database(get_engine())

    scheduler = scheduler or build_scheduler()

    app = FastAPI(
        title="Decision Health Monitor API",
        description="Evaluate and review the health of organizational decisions",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.include_router(router)
    app.dependency_overrides[get_scheduler] = lambda: scheduler

    @app.get("/health")
    def health():
        return {"status": "ok", "version": "1.0.0"}

    return app


# ============================================================
# CLI
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="decision-monitor",
        description="Decision Health Monitor",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=os.getenv("DECISION_API_HOST", "0.0.0.0"))
    serve.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("DECISION_API_PORT", os.getenv("PORT", "8000"))),
    )

    sweep = subparsers.add_parser("sweep", help="Run one evaluation sweep and exit")
    sweep.add_argument("--max-items", type=int, default=None, help="Cap on decisions attempted")

    return parser


def run_serve(args) -> int:
    import uvicorn

    logger.info(f"Starting Decision Health Monitor API on {args.host}:{args.port}")

    try:
        uvicorn.run(
            create_app(),
            host=args.host,
            port=args.port,
            log_level=args.log_level.lower(),
            access_log=True,
        )
    except Exception as e:
        logger.error(f"Failed to start API: {e}", exc_info=True)
        return 1
    return 0


def run_sweep(args) -> int:
    initialize_database(get_engine())
    scheduler = build_scheduler()

    summary = scheduler.run_sweep(max_items=args.max_items)

    print(f"\nSweep Result: {'OK' if summary.failed == 0 else 'FAILURES'}")
    print(f"Evaluated: {summary.evaluated}")
    print(f"Skipped: {summary.skipped}")
    print(f"Failed: {summary.failed}")
    if summary.truncated:
        print(f"Not attempted: {len(summary.not_attempted)}")

    return 0 if summary.failed == 0 else 1


def main() -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s | %(levelname)s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )

    try:
        if args.command == "serve":
            return run_serve(args)
        return run_sweep(args)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except DecisionMonitorException as e:
        logger.error(e.to_log_format())
        return 1


# ============================================================
# ENTRY POINT
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
