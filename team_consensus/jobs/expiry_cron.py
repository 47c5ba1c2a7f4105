"""
Expiry Cron Job: periodic eager sweep of overdue subjects.

Runs as a scheduled job (cron, Kubernetes CronJob or similar). Lazy expiry
already keeps touched subjects correct; this job catches the untouched ones
so their notifications and activity records are produced on time.

Typical cron schedule: */5 * * * * (every five minutes)
"""

import argparse
import asyncio
import logging
import os
import sys
import traceback
from datetime import datetime, timezone
from typing import Any

import httpx

from ..core.config import get_settings
from ..core.database import build_engine, build_session_factory
from ..services.collaborators import SqlActivityLog
from ..services.consensus_engine import ConsensusEngine
from ..services.expiry_engine import ExpiryConfig, ExpirySweeper
from ..services.sql_store import SqlAlchemySubjectStore


logger = logging.getLogger(__name__)


# =============================================================================
# ALERTING
# =============================================================================


async def send_alert(
    title: str,
    message: str,
    severity: str = "error",
    details: dict | None = None,
) -> None:
    """
    Send an alert when the sweep fails.

    Always logs; additionally posts to ``alert_webhook_url`` when configured
    (PagerDuty, Opsgenie or a chat relay).
    """
    log_message = f"[CRON ALERT] {title}: {message}"
    if details:
        log_message += f" | Details: {details}"

    if severity == "critical":
        logger.critical(log_message)
    else:
        logger.error(log_message)

    settings = get_settings()
    if not settings.alert_webhook_url:
        return

    payload = {
        "title": title,
        "message": message,
        "severity": severity,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "source": "team-consensus-expiry",
        "details": details or {},
    }
    try:
        async with httpx.AsyncClient() as client:
            await client.post(
                settings.alert_webhook_url,
                json=payload,
                timeout=settings.webhook_timeout_seconds,
            )
    except httpx.HTTPError as e:
        logger.error(f"Failed to send webhook alert: {e}")


async def run_expiry_job(
    database_url: str,
    expiry_config: ExpiryConfig | None = None,
) -> dict[str, Any]:
    """
    Main entry point for the expiry cron job.

    Args:
        database_url: async SQLAlchemy URL (postgresql+asyncpg://...)
        expiry_config: batch size / dry-run configuration

    Returns:
        Job result summary
    """
    start_time = datetime.now(timezone.utc)
    logger.info(f"Starting expiry job at {start_time.isoformat()}")

    engine = build_engine(database_url)
    session_factory = build_session_factory(engine)

    results: dict[str, Any] = {
        "started_at": start_time.isoformat(),
        "completed_at": None,
        "checked": 0,
        "expired_count": 0,
        "errors": [],
    }

    try:
        consensus = ConsensusEngine.from_settings(
            SqlAlchemySubjectStore(session_factory),
            activity_log=SqlActivityLog(session_factory),
        )
        sweep = await ExpirySweeper(consensus, expiry_config or ExpiryConfig()).sweep()
        results.update(sweep.to_dict())

    except Exception as e:
        error_msg = f"Expiry job failed: {str(e)}"
        logger.error(error_msg)
        results["errors"].append(error_msg)

        await send_alert(
            title="Expiry Cron Job Failed",
            message="The expiry sweep crashed unexpectedly.",
            severity="critical",
            details={
                "error": str(e),
                "traceback": traceback.format_exc()[-500:],
                "started_at": results["started_at"],
            },
        )
        raise

    finally:
        await engine.dispose()

    end_time = datetime.now(timezone.utc)
    results["completed_at"] = end_time.isoformat()
    results["duration_seconds"] = (end_time - start_time).total_seconds()

    logger.info(
        f"Expiry job completed in {results['duration_seconds']:.2f}s: "
        f"{results['expired_count']} of {results['checked']} overdue subjects expired"
    )

    # Partial failures: the sweep finished but some subjects could not be expired
    if results["errors"]:
        await send_alert(
            title="Expiry Job Completed with Warnings",
            message=f"{len(results['errors'])} overdue subjects could not be expired.",
            severity="warning",
            details={"errors": results["errors"][:5]},
        )

    return results


# =============================================================================
# CLI ENTRY POINT
# =============================================================================


def main() -> None:
    """CLI entry point for the expiry job."""
    parser = argparse.ArgumentParser(description="Expire overdue consensus subjects")
    parser.add_argument(
        "--database-url",
        default=os.environ.get("DATABASE_URL"),
        help="PostgreSQL connection string (defaults to DATABASE_URL or settings)",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=500,
        help="Maximum overdue subjects to process in one run",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log what would expire without making changes",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    database_url = args.database_url or str(get_settings().database_url)
    database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    try:
        results = asyncio.run(run_expiry_job(
            database_url=database_url,
            expiry_config=ExpiryConfig(batch_size=args.batch_size, dry_run=args.dry_run),
        ))
        print(f"Job completed: {results}")
    except Exception as e:
        print(f"Job failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
