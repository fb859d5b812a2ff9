#!/usr/bin/env python3
"""
Repair script for chat session counters and status.

Finds sessions whose stored fields disagree with their data:
- total_messages differs from the number of stored messages
- status is "unassigned" although a counselor is set, or a session with no
  counselor is in any status other than "unassigned"

Usage:
    # Dry run (show what would change)
    python scripts/repair_chat_sessions.py

    # Actually write the fixes
    python scripts/repair_chat_sessions.py --apply
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import async_session_factory
from models.message import ChatMessage
from models.session import ChatSession, SessionStatus

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


@dataclass
class SessionRepair:
    session: ChatSession
    message_count: int
    expected_status: Optional[str]

    @property
    def count_mismatch(self) -> bool:
        return self.session.total_messages != self.message_count


def expected_status(session: ChatSession) -> Optional[str]:
    """Status the session should have, or None if its status is consistent."""
    if session.counselor_id is None and session.status != SessionStatus.UNASSIGNED.value:
        return SessionStatus.UNASSIGNED.value
    if session.counselor_id is not None and session.status == SessionStatus.UNASSIGNED.value:
        return SessionStatus.ACTIVE.value
    return None


async def find_inconsistent_sessions(db: AsyncSession) -> list[SessionRepair]:
    """Find sessions whose counters or status need repair."""
    counts = (
        select(ChatMessage.session_id, func.count(ChatMessage.id).label("message_count"))
        .group_by(ChatMessage.session_id)
        .subquery()
    )
    query = (
        select(ChatSession, func.coalesce(counts.c.message_count, 0))
        .outerjoin(counts, counts.c.session_id == ChatSession.id)
        .order_by(ChatSession.created_at.asc())
    )

    repairs = []
    result = await db.execute(query)
    for session, message_count in result.all():
        repair = SessionRepair(session, message_count, expected_status(session))
        if repair.count_mismatch or repair.expected_status:
            repairs.append(repair)
    return repairs


async def apply_repairs(db: AsyncSession, repairs: list[SessionRepair]) -> int:
    """Write the repaired fields."""
    for repair in repairs:
        if repair.count_mismatch:
            repair.session.total_messages = repair.message_count
        if repair.expected_status:
            repair.session.status = repair.expected_status
    await db.commit()
    return len(repairs)


async def main(apply: bool = False) -> int:
    """Main repair function. Returns the number of inconsistent sessions."""
    async with async_session_factory() as db:
        repairs = await find_inconsistent_sessions(db)

        if not repairs:
            logger.info("No inconsistent sessions found. Database is clean!")
            return 0

        logger.info("Found %d inconsistent session(s):", len(repairs))
        for repair in repairs:
            session = repair.session
            changes = []
            if repair.count_mismatch:
                changes.append(f"total_messages {session.total_messages} -> {repair.message_count}")
            if repair.expected_status:
                changes.append(f"status {session.status} -> {repair.expected_status}")
            logger.info("  - %s (%s)", session.id, ", ".join(changes))

        if not apply:
            logger.info("Dry run mode - nothing written.")
            logger.info("Run with --apply to write these fixes.")
        else:
            count = await apply_repairs(db, repairs)
            logger.info("Repaired %d session(s).", count)

        return len(repairs)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Repair chat session counters and status")
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Write fixes (default is dry-run)",
    )
    args = parser.parse_args()

    asyncio.run(main(apply=args.apply))
