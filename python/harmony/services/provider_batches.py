"""Provider batch registry.

Tracks each externally submitted batch independently of the jobs inside it.
A late or duplicate registration never downgrades a terminal status.
"""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from harmony.db.dml import upsert_insert
from harmony.db.models import (
    TERMINAL_BATCH_STATUSES,
    ProviderBatchStatus,
    RewriteProviderBatch,
)
from harmony.db.types import utc_now
from harmony.logging import get_logger

logger = get_logger(__name__)

batches = RewriteProviderBatch.__table__

DEFAULT_ENDPOINT = "/v1/responses"


@dataclass(frozen=True)
class PendingBatch:
    provider_batch_id: str
    status: ProviderBatchStatus
    input_file_id: str | None
    output_file_id: str | None
    error_file_id: str | None
    endpoint: str
    job_count: int
    last_checked_at: datetime | None


def register_batch(
    db: Session,
    provider_batch_id: str,
    input_file_id: str | None,
    job_count: int,
    endpoint: str = DEFAULT_ENDPOINT,
    provider: str = "openai",
) -> ProviderBatchStatus:
    """Insert or refresh a batch row. Returns the stored status."""
    now = utc_now()
    stmt = upsert_insert(db, batches).values(
        provider_batch_id=provider_batch_id,
        provider=provider,
        endpoint=endpoint,
        status=ProviderBatchStatus.submitted,
        input_file_id=input_file_id,
        job_count=job_count or 0,
        created_at=now,
        updated_at=now,
    )
    status = db.execute(
        stmt.on_conflict_do_update(
            index_elements=[batches.c.provider_batch_id],
            set_={
                "input_file_id": stmt.excluded.input_file_id,
                "job_count": stmt.excluded.job_count,
                "status": case(
                    (batches.c.status.in_(TERMINAL_BATCH_STATUSES), batches.c.status),
                    else_=stmt.excluded.status,
                ),
                "updated_at": now,
            },
        ).returning(batches.c.status)
    ).scalar_one()

    logger.info(
        "provider_batch_registered",
        provider_batch_id=provider_batch_id,
        job_count=job_count,
        status=status.value,
    )
    return status


def update_batch(
    db: Session,
    provider_batch_id: str,
    status: ProviderBatchStatus,
    output_file_id: str | None = None,
    error_file_id: str | None = None,
) -> bool:
    """Record a poll result. Artifact ids are only ever filled in, never cleared.

    Returns:
        True if the batch exists.
    """
    now = utc_now()
    result = db.execute(
        update(batches)
        .where(batches.c.provider_batch_id == provider_batch_id)
        .values(
            status=status,
            output_file_id=func.coalesce(output_file_id, batches.c.output_file_id),
            error_file_id=func.coalesce(error_file_id, batches.c.error_file_id),
            last_checked_at=now,
            updated_at=now,
        )
    )
    return result.rowcount > 0


def list_pending_batches(db: Session, limit: int = 20) -> list[PendingBatch]:
    """Batches still submitted or running, least recently checked first."""
    rows = db.execute(
        select(batches)
        .where(
            batches.c.status.in_((ProviderBatchStatus.submitted, ProviderBatchStatus.running))
        )
        .order_by(func.coalesce(batches.c.last_checked_at, batches.c.created_at))
        .limit(limit)
    ).mappings()
    return [
        PendingBatch(
            provider_batch_id=row["provider_batch_id"],
            status=row["status"],
            input_file_id=row["input_file_id"],
            output_file_id=row["output_file_id"],
            error_file_id=row["error_file_id"],
            endpoint=row["endpoint"],
            job_count=row["job_count"],
            last_checked_at=row["last_checked_at"],
        )
        for row in rows
    ]


def get_batch(db: Session, provider_batch_id: str) -> RewriteProviderBatch | None:
    return db.execute(
        select(RewriteProviderBatch)
        .where(RewriteProviderBatch.provider_batch_id == provider_batch_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
