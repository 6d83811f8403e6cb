"""
Ledger sync job.

Polls the ledger for incoming payments to every watched wallet and records
each one as a TOP_UP transaction. Each wallet keeps a paging-token cursor, so
a run only reads entries after the last one it stored.
"""

import asyncio
from datetime import UTC, datetime

from app.config import Settings, settings
from app.db.pool import DatabasePoolManager
from app.infrastructure.observability.logging import get_logger
from app.repositories.ledger_repository import LedgerCursorRepository
from app.services.payments.payment_service import LedgerEntryStream

logger = get_logger(__name__)

JOB_INTERVAL_SECONDS = 60
ERROR_BACKOFF_SECONDS = 60


class LedgerSyncJob:
    def __init__(self, cursor_repository: LedgerCursorRepository, stream: LedgerEntryStream):
        self.cursor_repository = cursor_repository
        self.stream = stream
        self.is_running = False
        self.last_run_time: datetime | None = None

    async def run_once(self) -> dict:
        """
        Sync every watched wallet once.

        Returns:
            Dict with wallets scanned, payments seen, top-ups recorded and per-wallet errors
        """
        if self.is_running:
            logger.warning("Ledger sync already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        self.is_running = True
        metrics = {"wallets": 0, "payments_seen": 0, "top_ups_recorded": 0, "errors": []}
        try:
            wallets = await self.cursor_repository.list_watched_wallets()
            for wallet in wallets:
                metrics["wallets"] += 1
                try:
                    seen, recorded = await self._sync_wallet(wallet["user_id"], wallet["wallet_address"])
                except Exception as e:
                    logger.error(
                        "Ledger sync failed for wallet",
                        user_id=wallet["user_id"],
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    metrics["errors"].append({"user_id": wallet["user_id"], "error": str(e)})
                    continue
                metrics["payments_seen"] += seen
                metrics["top_ups_recorded"] += recorded

            self.last_run_time = datetime.now(UTC)
            logger.info("Ledger sync completed", **{k: v for k, v in metrics.items() if k != "errors"})
            return metrics
        finally:
            self.is_running = False

    async def _sync_wallet(self, user_id: str, account: str) -> tuple[int, int]:
        cursor = await self.cursor_repository.get_cursor(account)
        seen = recorded = 0
        async for payment in self.stream.iter_payments(account, cursor):
            seen += 1
            if await self.cursor_repository.record_top_up(
                account, user_id, payment.tx_hash, payment.amount, payment.asset_code, payment.paging_token
            ):
                recorded += 1
                logger.info(
                    "Wallet top-up recorded",
                    user_id=user_id,
                    tx_hash=payment.tx_hash,
                    amount=payment.amount,
                    asset_code=payment.asset_code,
                )
        return seen, recorded


async def run_ledger_sync_once(app_settings: Settings = settings) -> dict:
    """Sync every watched wallet once and exit."""
    db = DatabasePoolManager(app_settings)
    await db.initialize()
    stream = LedgerEntryStream(app_settings)
    try:
        return await LedgerSyncJob(LedgerCursorRepository(db), stream).run_once()
    finally:
        await stream.close()
        await db.close()


async def start_ledger_sync_scheduler(app_settings: Settings = settings) -> None:
    """Run the ledger sync forever in its own process."""
    db = DatabasePoolManager(app_settings)
    await db.initialize()
    stream = LedgerEntryStream(app_settings)
    job = LedgerSyncJob(LedgerCursorRepository(db), stream)
    logger.info("Starting ledger sync scheduler", interval_seconds=JOB_INTERVAL_SECONDS)

    try:
        while True:
            try:
                await job.run_once()
                await asyncio.sleep(JOB_INTERVAL_SECONDS)
            except Exception as e:
                logger.error("Error in ledger sync scheduler", error=str(e), error_type=type(e).__name__)
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)
    finally:
        await stream.close()
        await db.close()
