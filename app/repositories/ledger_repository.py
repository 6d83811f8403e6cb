"""
High-water marks and top-up rows for ledger synchronisation.

Each watched wallet keeps the paging token of the last payment processed, so
a sync run only looks at entries after it.
"""

from decimal import Decimal

from app.db.helpers import execute_query, fetch_all, fetch_val
from app.db.pool import DatabasePoolManager


class LedgerCursorRepository:
    def __init__(self, db: DatabasePoolManager):
        self.db = db

    async def list_watched_wallets(self) -> list[dict]:
        """Users with a wallet address, as ``{user_id, wallet_address}`` rows."""
        async with self.db.connection() as conn:
            return await fetch_all(
                "SELECT user_id, wallet_address FROM users WHERE wallet_address IS NOT NULL ORDER BY user_id",
                connection=conn,
            )

    async def get_cursor(self, account: str) -> str | None:
        async with self.db.connection() as conn:
            return await fetch_val("SELECT cursor FROM ledger_cursors WHERE account = %s", (account,), connection=conn)

    async def record_top_up(
        self, account: str, user_id: str, tx_hash: str, amount: str, asset_code: str | None, cursor: str
    ) -> bool:
        """Insert a top-up transaction and advance the cursor together; False if already recorded."""
        async with self.db.transaction() as conn:
            inserted = await execute_query(
                """
                INSERT INTO transactions (tx_hash, category, amount, asset_code, user_id)
                VALUES (%s, 'TOP_UP', %s, %s, %s)
                ON CONFLICT (tx_hash) DO NOTHING
                """,
                (tx_hash, Decimal(amount), asset_code, user_id),
                connection=conn,
            )
            await self._save_cursor(account, cursor, conn)
        return inserted == 1

    async def save_cursor(self, account: str, cursor: str) -> None:
        async with self.db.connection() as conn:
            await self._save_cursor(account, cursor, conn)

    @staticmethod
    async def _save_cursor(account: str, cursor: str, conn) -> None:
        await execute_query(
            """
            INSERT INTO ledger_cursors (account, cursor)
            VALUES (%s, %s)
            ON CONFLICT (account) DO UPDATE SET cursor = EXCLUDED.cursor, updated_at = NOW()
            """,
            (account, cursor),
            connection=conn,
        )
