from __future__ import annotations

import contextlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from formsync.models import RunStatus, RunType
from formsync.repositories.sync_logs import SyncLogRepository

log = structlog.get_logger(__name__)


@dataclass
class SyncTally:
    """Counts for one sync run; owned by that run alone."""
    log_id: str
    fetched: int = 0
    new: int = 0
    updated: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def status(self) -> RunStatus:
        # A run that got as far as tallying began; only an aborted run is failed.
        return RunStatus.COMPLETED if self.failed == 0 else RunStatus.PARTIAL

    def error_summary(self, limit: int) -> Optional[str]:
        if not self.failed:
            return None
        head = f"{self.failed} of {self.fetched} responses failed"
        shown = "; ".join(self.errors[:limit])
        more = f" (+{len(self.errors) - limit} more)" if len(self.errors) > limit else ""
        return f"{head}: {shown}{more}" if shown else head


class SyncLogRecorder:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = SyncLogRepository(db)

    async def open(self, questionnaire_id: str, run_type: RunType, triggered_by: str | None = None) -> str:
        log_id = await self.repo.create(
            questionnaire_id, run_type.value, datetime.now(timezone.utc), triggered_by
        )
        log.info("sync_log.opened", log_id=log_id, questionnaire_id=questionnaire_id, run_type=run_type.value)
        return log_id

    async def close(
        self,
        log_id: str,
        status: RunStatus,
        fetched: int = 0,
        new: int = 0,
        updated: int = 0,
        failed: int = 0,
        error: str | None = None,
    ) -> None:
        await self.repo.finish(
            log_id,
            status.value,
            datetime.now(timezone.utc),
            fetched=fetched,
            new=new,
            updated=updated,
            failed=failed,
            error_message=error,
        )
        log.info("sync_log.closed", log_id=log_id, status=status.value,
                 fetched=fetched, new=new, updated=updated, failed=failed)

    @contextlib.asynccontextmanager
    async def run(
        self,
        questionnaire_id: str,
        run_type: RunType,
        triggered_by: str | None = None,
        error_items: int = 5,
    ) -> AsyncIterator[SyncTally]:
        """
        Open a log row, yield the run's tally, and close the row exactly once
        on the way out: with the tally's status on normal exit, or ``failed``
        and the error text when the body raises (the error is re-raised).
        """
        tally = SyncTally(log_id=await self.open(questionnaire_id, run_type, triggered_by))
        try:
            yield tally
        except Exception as exc:
            await self.db.rollback()
            await self.close(
                tally.log_id,
                RunStatus.FAILED,
                fetched=tally.fetched,
                new=tally.new,
                updated=tally.updated,
                failed=tally.failed,
                error=getattr(exc, "detail", None) or str(exc) or type(exc).__name__,
            )
            raise
        await self.close(
            tally.log_id,
            tally.status,
            fetched=tally.fetched,
            new=tally.new,
            updated=tally.updated,
            failed=tally.failed,
            error=tally.error_summary(error_items),
        )
