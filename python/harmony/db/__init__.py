"""Database module for harmony.

Provides engine creation, session management, transaction helpers, and ORM models.
"""

from harmony.db.engine import create_db_engine, get_engine
from harmony.db.models import (
    Base,
    ComplaintAIProvider,
    ComplaintEntry,
    ComplaintRewriteJob,
    ComplaintRewriteRequest,
    ComplaintRewriteRoute,
    ComplaintRewriteTrigger,
    Home,
    Membership,
    PreferenceReport,
    PreferenceResponse,
    Profile,
    ProviderBatchStatus,
    RecipientPreferenceSnapshot,
    RecipientSnapshot,
    RewriteJobStatus,
    RewriteOutput,
    RewriteProviderBatch,
    RewriteRequestStatus,
    TriggerStatus,
)
from harmony.db.session import get_db, transaction
from harmony.db.types import UTCDateTime, utc_now

__all__ = [
    # Engine and session
    "create_db_engine",
    "get_engine",
    "get_db",
    "transaction",
    # Types
    "UTCDateTime",
    "utc_now",
    # Base
    "Base",
    # Enums
    "TriggerStatus",
    "RewriteRequestStatus",
    "RewriteJobStatus",
    "ProviderBatchStatus",
    # Boundary models
    "Home",
    "Membership",
    "Profile",
    "ComplaintEntry",
    "PreferenceReport",
    "PreferenceResponse",
    # Pipeline models
    "ComplaintRewriteTrigger",
    "ComplaintRewriteRequest",
    "ComplaintRewriteJob",
    "RecipientSnapshot",
    "RecipientPreferenceSnapshot",
    "RewriteOutput",
    "ComplaintAIProvider",
    "ComplaintRewriteRoute",
    "RewriteProviderBatch",
]
