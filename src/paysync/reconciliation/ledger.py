from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from structlog import get_logger

from paysync.common.db.models import LedgerEntry, LedgerState
from paysync.common.db.repositories import LedgerRepository
from paysync.common.db.session import SessionFactory, get_db_session

logger = get_logger()


class ClaimKind(str, Enum):
    FIRST = "first"
    RECLAIMED = "reclaimed"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class Claim:
    kind: ClaimKind
    tracking_id: str
    retry_count: int
    processing_state: str

    @property
    def should_process(self) -> bool:
        return self.kind is not ClaimKind.DUPLICATE


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdempotencyLedger:
    """
    First-arrival-wins gate for gateway notifications.

    Each claim runs in its own committed transaction so a concurrent arrival
    for the same tracking id always observes it. A later arrival may take over
    an entry marked 'failed', and, with a positive `lock_timeout_seconds`, one
    left in 'processing' longer than that (process crashed after claiming).
    """

    def __init__(
        self,
        session_factory: SessionFactory = get_db_session,
        lock_timeout_seconds: int = 300,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_factory = session_factory
        self.lock_timeout_seconds = lock_timeout_seconds
        self._clock = clock

    async def claim(self, tracking_id: str) -> Claim:
        now = self._clock()
        async with self._session_factory() as session:
            entry = await LedgerRepository(session).upsert_arrival(tracking_id, now)
            claim = self._snapshot(entry, ClaimKind.FIRST if entry.retry_count == 0 else ClaimKind.DUPLICATE)

        if claim.kind is ClaimKind.DUPLICATE and claim.processing_state != LedgerState.COMPLETED.value:
            stale_before = None
            if self.lock_timeout_seconds > 0:
                stale_before = now - timedelta(seconds=self.lock_timeout_seconds)
            async with self._session_factory() as session:
                reclaimed = await LedgerRepository(session).reclaim(tracking_id, now, stale_before)
                if reclaimed is not None:
                    claim = self._snapshot(reclaimed, ClaimKind.RECLAIMED)
                    logger.warning("ledger_entry_reclaimed", tracking_id=tracking_id,
                                   retry_count=reclaimed.retry_count)

        logger.info("ledger_claim", tracking_id=tracking_id, kind=claim.kind.value,
                    retry_count=claim.retry_count)
        return claim

    async def mark_completed(self, tracking_id: str, result_status: str) -> None:
        async with self._session_factory() as session:
            await LedgerRepository(session).mark(
                tracking_id, LedgerState.COMPLETED, self._clock(), result_status=result_status
            )

    async def mark_failed(self, tracking_id: str, error: str) -> None:
        async with self._session_factory() as session:
            await LedgerRepository(session).mark(
                tracking_id, LedgerState.FAILED, self._clock(), error=error
            )

    async def get(self, tracking_id: str) -> Optional[LedgerEntry]:
        async with self._session_factory() as session:
            return await LedgerRepository(session).get(tracking_id)

    @staticmethod
    def _snapshot(entry: LedgerEntry, kind: ClaimKind) -> Claim:
        return Claim(
            kind=kind,
            tracking_id=entry.tracking_id,
            retry_count=entry.retry_count,
            processing_state=entry.processing_state,
        )
