"""Recipient snapshot store.

Write-once copies of the recipient set and the recipient's preference payload
captured when a rewrite request is created. The first writer wins; later
callers get the existing ids back.
"""

from dataclasses import dataclass
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from harmony.db.dml import upsert_insert
from harmony.db.models import RecipientPreferenceSnapshot, RecipientSnapshot
from harmony.db.types import utc_now
from harmony.errors import ApiErrorCode, InvalidRequestError

recipient_snapshots = RecipientSnapshot.__table__
preference_snapshots = RecipientPreferenceSnapshot.__table__


@dataclass(frozen=True)
class SnapshotIds:
    recipient_snapshot_id: UUID
    recipient_preference_snapshot_id: UUID


def build_recipient_snapshots(
    db: Session,
    rewrite_request_id: UUID,
    home_id: UUID,
    recipient_user_id: UUID,
    preference_payload: dict,
) -> SnapshotIds:
    """Create (or fetch) both snapshots for one (request, recipient).

    Raises:
        InvalidRequestError: If preference_payload is not a JSON object.
    """
    if not isinstance(preference_payload, dict):
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_REQUEST, "preference_payload must be an object"
        )

    now = utc_now()

    db.execute(
        upsert_insert(db, recipient_snapshots)
        .values(
            recipient_snapshot_id=uuid4(),
            rewrite_request_id=rewrite_request_id,
            home_id=home_id,
            recipient_user_ids=[str(recipient_user_id)],
            created_at=now,
        )
        .on_conflict_do_nothing(index_elements=[recipient_snapshots.c.rewrite_request_id])
    )
    recipient_snapshot_id = db.execute(
        select(recipient_snapshots.c.recipient_snapshot_id).where(
            recipient_snapshots.c.rewrite_request_id == rewrite_request_id
        )
    ).scalar_one()

    db.execute(
        upsert_insert(db, preference_snapshots)
        .values(
            recipient_preference_snapshot_id=uuid4(),
            rewrite_request_id=rewrite_request_id,
            recipient_user_id=recipient_user_id,
            preference_payload=preference_payload,
            created_at=now,
        )
        .on_conflict_do_nothing(
            index_elements=[
                preference_snapshots.c.rewrite_request_id,
                preference_snapshots.c.recipient_user_id,
            ]
        )
    )
    preference_snapshot_id = db.execute(
        select(preference_snapshots.c.recipient_preference_snapshot_id).where(
            preference_snapshots.c.rewrite_request_id == rewrite_request_id,
            preference_snapshots.c.recipient_user_id == recipient_user_id,
        )
    ).scalar_one()

    return SnapshotIds(
        recipient_snapshot_id=recipient_snapshot_id,
        recipient_preference_snapshot_id=preference_snapshot_id,
    )


def get_preference_snapshot_payload(db: Session, snapshot_id: UUID) -> dict | None:
    """Return the stored payload for a preference snapshot, or None."""
    return db.execute(
        select(preference_snapshots.c.preference_payload).where(
            preference_snapshots.c.recipient_preference_snapshot_id == snapshot_id
        )
    ).scalar_one_or_none()
