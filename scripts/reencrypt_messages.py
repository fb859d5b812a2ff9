#!/usr/bin/env python3
"""
Re-encode stored messages with the configured content strategy.

Run after changing MESSAGE_ENCRYPTION_MODE so older rows stop depending on
the previous strategy. MESSAGE_ENCRYPTION_KEY must still decode any fernet
rows being moved back to plaintext. Rows that cannot be decoded
are reported and left untouched.

Usage:
    # Dry run (count what would be rewritten)
    python scripts/reencrypt_messages.py

    # Rewrite in batches
    python scripts/reencrypt_messages.py --apply --batch-size 500
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import async_session_factory
from core.security import ContentDecodeError, ContentStrategy, decode_content, get_content_strategy
from models.message import ChatMessage

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


async def reencode_batch(
    db: AsyncSession,
    target: ContentStrategy,
    batch_size: int,
    after_id: Optional[str],
    apply: bool,
) -> tuple[int, int, Optional[str]]:
    """
    Re-encode one batch of messages stored under another strategy.

    Returns:
        (rewritten, failed, last_id) - last_id is None when no rows remain
    """
    query = (
        select(ChatMessage)
        .where(ChatMessage.content_encoding != target.name)
        .order_by(ChatMessage.id.asc())
        .limit(batch_size)
    )
    if after_id:
        query = query.where(ChatMessage.id > after_id)

    result = await db.execute(query)
    messages = list(result.scalars().all())
    if not messages:
        return 0, 0, None

    rewritten = failed = 0
    for message in messages:
        try:
            plaintext = decode_content(message.content, message.content_encoding)
        except ContentDecodeError as e:
            logger.warning("  - %s in chat %s could not be decoded: %s", message.id, message.session_id, e)
            failed += 1
            continue
        if apply:
            message.content = target.encode(plaintext)
            message.content_encoding = target.name
        rewritten += 1

    if apply:
        await db.commit()
    return rewritten, failed, messages[-1].id


async def main(apply: bool = False, batch_size: int = 500) -> tuple[int, int]:
    """Main re-encode function. Returns (rewritten, failed)."""
    target = get_content_strategy()
    logger.info("Target content strategy: %s", target.name)

    total_rewritten = total_failed = 0
    after_id = None
    while True:
        async with async_session_factory() as db:
            rewritten, failed, after_id = await reencode_batch(db, target, batch_size, after_id, apply)
        total_rewritten += rewritten
        total_failed += failed
        if after_id is None:
            break

    if apply:
        logger.info("Re-encoded %d message(s), %d could not be decoded.", total_rewritten, total_failed)
    else:
        logger.info("Dry run mode - %d message(s) would be re-encoded, %d could not be decoded.", total_rewritten, total_failed)
        logger.info("Run with --apply to rewrite them.")
    return total_rewritten, total_failed


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Re-encode stored chat messages")
    parser.add_argument("--apply", action="store_true", help="Rewrite rows (default is dry-run)")
    parser.add_argument("--batch-size", type=int, default=500, help="Rows per transaction")
    args = parser.parse_args()

    asyncio.run(main(apply=args.apply, batch_size=args.batch_size))
