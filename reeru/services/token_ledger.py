"""
Per-user token balance and single-flight guard.

Both mutations that matter for correctness are single conditional UPDATE
statements, so two near-simultaneous submissions for the same user cannot
both win:

    claim_processing  UPDATE ... SET is_processing = true  WHERE is_processing = false
    deduct_token      UPDATE ... SET token_count = token_count - 1 WHERE token_count > 0
"""
from typing import Optional

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from reeru.errors import InvalidInput
from reeru.models.clip_job import utcnow
from reeru.models.token_account import TokenAccount
from reeru.utils.logger import logger


async def get_account(db: AsyncSession, user_id: str) -> Optional[TokenAccount]:
    result = await db.execute(select(TokenAccount).where(TokenAccount.user_id == user_id))
    return result.scalar_one_or_none()


async def ensure_account(db: AsyncSession, user_id: str, initial_tokens: int = 0) -> TokenAccount:
    """Return the user's ledger entry, creating it with initial_tokens if missing"""
    account = await get_account(db, user_id)
    if account is not None:
        return account
    account = TokenAccount(user_id=user_id, token_count=max(0, initial_tokens), is_processing=False)
    db.add(account)
    await db.commit()
    logger.info("ledger.account_created", extra={"user_id": user_id})
    return account


async def get_balance(db: AsyncSession, user_id: str) -> int:
    """Token count; users without a ledger entry have nothing to spend"""
    result = await db.execute(select(TokenAccount.token_count).where(TokenAccount.user_id == user_id))
    count = result.scalar_one_or_none()
    return count or 0


async def is_processing(db: AsyncSession, user_id: str) -> bool:
    result = await db.execute(select(TokenAccount.is_processing).where(TokenAccount.user_id == user_id))
    return bool(result.scalar_one_or_none())


async def claim_processing(db: AsyncSession, user_id: str) -> bool:
    """Atomically set is_processing if it was clear. True if this caller won."""
    result = await db.execute(
        update(TokenAccount)
        .where(and_(TokenAccount.user_id == user_id, TokenAccount.is_processing == False))  # noqa: E712
        .values(is_processing=True, updated_at=utcnow())
    )
    await db.commit()
    claimed = result.rowcount == 1
    logger.info("ledger.claim", extra={"user_id": user_id, "status": "claimed" if claimed else "busy"})
    return claimed


async def release_processing(db: AsyncSession, user_id: str) -> None:
    await db.execute(
        update(TokenAccount)
        .where(TokenAccount.user_id == user_id)
        .values(is_processing=False, updated_at=utcnow())
    )
    await db.commit()
    logger.info("ledger.released", extra={"user_id": user_id})


async def deduct_token(db: AsyncSession, user_id: str) -> bool:
    """Take one token. False (and no change) when the balance is already zero."""
    result = await db.execute(
        update(TokenAccount)
        .where(and_(TokenAccount.user_id == user_id, TokenAccount.token_count > 0))
        .values(token_count=TokenAccount.token_count - 1, updated_at=utcnow())
    )
    await db.commit()
    return result.rowcount == 1


async def credit_tokens(db: AsyncSession, user_id: str, amount: int) -> int:
    """Top up a balance. Returns the new token count."""
    if amount <= 0:
        raise InvalidInput("Token amount must be positive")
    await ensure_account(db, user_id)
    await db.execute(
        update(TokenAccount)
        .where(TokenAccount.user_id == user_id)
        .values(token_count=TokenAccount.token_count + amount, updated_at=utcnow())
    )
    await db.commit()
    balance = await get_balance(db, user_id)
    logger.info("ledger.credited", extra={"user_id": user_id, "balance": balance})
    return balance


async def link_chat(db: AsyncSession, user_id: str, chat_id: int) -> None:
    """Attach a Telegram chat to the user so bot submissions resolve to them"""
    await ensure_account(db, user_id)
    await db.execute(
        update(TokenAccount)
        .where(TokenAccount.user_id == user_id)
        .values(telegram_chat_id=chat_id, updated_at=utcnow())
    )
    await db.commit()


async def resolve_user_id(db: AsyncSession, chat_id: int) -> Optional[str]:
    result = await db.execute(select(TokenAccount.user_id).where(TokenAccount.telegram_chat_id == chat_id))
    return result.scalar_one_or_none()
