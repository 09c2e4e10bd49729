#!/usr/bin/env python3
"""Approval auto-approval sweep — advance steps whose time limit has passed.

Intended to run from cron (e.g. every 15 minutes). Each run loads every
in-progress approval instance, auto-approves current steps configured with
``auto_approve_after_hours`` once that many hours have elapsed since the
step became current, and commits.

Usage:
    python -m scripts.run_approval_sweep                          # sweep now
    python -m scripts.run_approval_sweep --now 2026-03-01T09:00:00+00:00
    python -m scripts.run_approval_sweep --dry-run                # report, then roll back

Requires in .env (project root):
    DATABASE_URL, JWT_SECRET
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# ── Path setup ────────────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

env_path = PROJECT_ROOT / ".env"
if env_path.exists():
    load_dotenv(env_path)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("approval_sweep")

from hrflow.approvals.service import ApprovalService  # noqa: E402
from hrflow.database import async_session_factory, engine  # noqa: E402


async def run_sweep(now: Optional[datetime], dry_run: bool) -> int:
    async with async_session_factory() as session:
        try:
            advanced = await ApprovalService.sweep(session, now)
            if dry_run:
                await session.rollback()
                logger.info("[DRY RUN] Would advance %d instance(s)", len(advanced))
            else:
                await session.commit()
                logger.info("Advanced %d instance(s)", len(advanced))
            for instance_id in advanced:
                logger.info("  • %s", instance_id)
            return len(advanced)
        except Exception:
            await session.rollback()
            raise
        finally:
            await engine.dispose()


def _parse_now(value: str) -> datetime:
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


# ══════════════════════════════════════════════════════════════════════
# Main
# ══════════════════════════════════════════════════════════════════════

def main():
    parser = argparse.ArgumentParser(
        description="Approval auto-approval sweep",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--now", type=_parse_now,
                        help="Evaluate time limits as of this ISO-8601 instant (default: current time)")
    parser.add_argument("--dry-run", action="store_true",
                        help="Compute the sweep but roll back instead of committing")
    args = parser.parse_args()

    try:
        asyncio.run(run_sweep(args.now, args.dry_run))
    except Exception:
        logger.exception("Approval sweep failed")
        sys.exit(1)


if __name__ == "__main__":
    main()
