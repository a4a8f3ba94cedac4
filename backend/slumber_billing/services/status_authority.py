"""Status Authority - decides which of two subscription records for a user wins.

Pure functions only: no database, no processor calls. Both stored
``SubscriptionRecord`` rows and in-flight ``Candidate`` objects are accepted,
since only ``status``, ``cancel_at_period_end``, ``current_period_end`` and
``candidate_source`` are read.

Webhook delivery is not ordered, so the newest arrival is not necessarily the
newest truth. Arbitration is by rank, then by billing-cycle information, then
by how complete the source object was.
"""
from datetime import datetime, timezone
from typing import Any, Optional

from slumber_billing.core.enums import SubscriptionStatus, CandidateSource

STATUS_RANK = {
    SubscriptionStatus.ACTIVE: 3,
    SubscriptionStatus.TRIALING: 3,
    SubscriptionStatus.PAST_DUE: 2,
    SubscriptionStatus.UNPAID: 2,
    SubscriptionStatus.INCOMPLETE: 2,
    SubscriptionStatus.CANCELED: 1,
    SubscriptionStatus.NONE: 0,
}

USABLE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite hands back naive values)"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _now(now: Optional[datetime]) -> datetime:
    return as_utc(now) if now is not None else datetime.now(timezone.utc)


def coerce_status(value: Any) -> SubscriptionStatus:
    if isinstance(value, SubscriptionStatus):
        return value
    return SubscriptionStatus(value or SubscriptionStatus.NONE.value)


def effective_status(record: Any, now: Optional[datetime] = None) -> SubscriptionStatus:
    """Display status: a canceled subscription still inside its paid period is active"""
    status = coerce_status(record.status)
    if status == SubscriptionStatus.CANCELED and record.cancel_at_period_end:
        period_end = as_utc(record.current_period_end)
        if period_end is not None and period_end > _now(now):
            return SubscriptionStatus.ACTIVE
    return status


def is_usable(record: Any, now: Optional[datetime] = None) -> bool:
    if record is None:
        return False
    return effective_status(record, now) in USABLE_STATUSES


def rank(record: Any, now: Optional[datetime] = None) -> int:
    """Authority rank of a record, based on its effective status"""
    return STATUS_RANK[effective_status(record, now)]


def _defending_rank(current: Any, now: Optional[datetime]) -> int:
    # A stored record whose paid period has already ended no longer holds its rank
    period_end = as_utc(current.current_period_end)
    if period_end is not None and period_end <= _now(now):
        return STATUS_RANK[SubscriptionStatus.NONE]
    return rank(current, now)


def _source_weight(record: Any) -> int:
    source = getattr(record, "candidate_source", None) or CandidateSource.SUBSCRIPTION.value
    if isinstance(source, CandidateSource):
        source = source.value
    return 1 if source == CandidateSource.SUBSCRIPTION.value else 0


def candidate_wins(current: Any, candidate: Any, now: Optional[datetime] = None) -> bool:
    """True when ``candidate`` should replace ``current``"""
    # 1. Nothing stored yet
    if current is None:
        return True

    # 2. Rank
    candidate_rank = rank(candidate, now)
    current_rank = _defending_rank(current, now)
    if candidate_rank != current_rank:
        return candidate_rank > current_rank

    # 3. More billing-cycle information
    candidate_end = as_utc(candidate.current_period_end) or _EPOCH
    current_end = as_utc(current.current_period_end) or _EPOCH
    if candidate_end != current_end:
        return candidate_end > current_end

    # 4. Subscription object beats a synthesized session; full ties go to the candidate
    return _source_weight(candidate) >= _source_weight(current)


def winner(current: Any, candidate: Any, now: Optional[datetime] = None) -> Any:
    """Return whichever of ``current`` and ``candidate`` should be persisted"""
    return candidate if candidate_wins(current, candidate, now) else current
