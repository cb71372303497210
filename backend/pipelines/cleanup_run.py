"""Standalone job that flags long-sold books as hidden from public listings.

Run it from cron when the API process runs with ``CLEANUP_ENABLED=false``.
"""

from __future__ import annotations

import argparse
import json
from datetime import datetime, timezone
from pathlib import Path

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from boipaben.core.config import Settings, get_settings
from boipaben.db import SessionLocal, init_db
from boipaben.domain.visibility import VisibilityPolicy, as_utc
from boipaben.schemas import CleanupSummary
from boipaben.services.cleanup import CleanupScheduler


class CleanupPipeline:
    """Run a single cleanup sweep outside the API process."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        session_factory: sessionmaker[Session] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory or SessionLocal
        self._policy = VisibilityPolicy.from_settings(self.settings)

    def run(self, *, now: datetime | None = None) -> CleanupSummary:
        init_db(bind=self._session_factory.kw.get("bind"))
        ran_at = as_utc(now) if now else datetime.now(timezone.utc)
        scheduler = CleanupScheduler(
            self._session_factory, self._policy, interval=self.settings.cleanup_interval
        )

        logger.info(
            "Starting sold-book cleanup: now={}, window={}h",
            ran_at,
            self.settings.visibility_window_hours,
        )
        hidden = scheduler.run_cleanup_sweep(ran_at)
        summary = CleanupSummary(ran_at=ran_at, cutoff=self._policy.hide_cutoff(ran_at), hidden=hidden)
        if summary.succeeded:
            logger.info("Sold-book cleanup finished: hidden={}", hidden)
        return summary


def _parse_now(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid ISO timestamp: {value}") from exc


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Hide books sold longer ago than the visibility window from public listings",
    )
    parser.add_argument(
        "--now",
        type=_parse_now,
        default=None,
        help="Evaluate the sweep as of this ISO-8601 timestamp instead of the current time",
    )
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args(argv)


def _write_summary(summary: CleanupSummary, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.model_dump(mode="json"), indent=2))
    logger.info("Cleanup summary written to {}", path)


def main(argv: list[str] | None = None) -> CleanupSummary:
    args = _parse_args(argv)
    summary = CleanupPipeline(get_settings()).run(now=args.now)
    if args.summary_path:
        _write_summary(summary, args.summary_path)
    return summary


if __name__ == "__main__":
    raise SystemExit(0 if main().succeeded else 1)
