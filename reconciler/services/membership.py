"""Membership tiers, plan catalog lookup and the purchase window calculation."""
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from reconciler.core.clock import as_utc
from reconciler.core.config import MembershipPlan
from reconciler.models import User

TIER_RANK = {"free": 0, "plus": 1, "pro": 2, "business": 3}
FREE_TIER = "free"


@dataclass(frozen=True)
class Membership:
    tier: str = FREE_TIER
    status: str = "active"
    started_at: datetime | None = None
    expires_at: datetime | None = None
    source: str | None = None
    order_id: int | None = None

    @classmethod
    def from_user(cls, user: User) -> "Membership":
        return cls(
            tier=normalize_tier(user.membership_tier) or FREE_TIER,
            status=(user.membership_status or "active").lower(),
            started_at=user.membership_started_at,
            expires_at=user.membership_expires_at,
            source=user.membership_source,
            order_id=user.membership_order_id,
        )

    def is_active(self, now: datetime) -> bool:
        """Paid tier, active status, and either no expiry (lifetime) or expiry in the future."""
        if self.tier == FREE_TIER or self.status != "active":
            return False
        return self.expires_at is None or as_utc(self.expires_at) > as_utc(now)


def normalize_tier(value: str | None) -> str | None:
    tier = (value or "").strip().lower()
    return tier if tier in TIER_RANK else None


def resolve_plan(plans: dict[str, MembershipPlan], plan_id: str | None, tier: str | None = None) -> MembershipPlan | None:
    """
    Plan by id; an order that only carries a tier falls back to '<tier>_month'.
    Plans whose tier is unknown are treated as missing.
    """
    candidates = []
    if plan_id:
        candidates.append(plan_id.strip().lower())
    fallback_tier = normalize_tier(tier) or normalize_tier(plan_id)
    if fallback_tier:
        candidates.append(f"{fallback_tier}_month")
    for candidate in candidates:
        plan = plans.get(candidate)
        if plan is not None and normalize_tier(plan.tier) and plan.duration_days > 0:
            return plan
    return None


def compute_new_membership(
    current: Membership | None,
    purchased_tier: str,
    duration_days: int,
    now: datetime,
) -> Membership:
    """
    Membership after buying `duration_days` of `purchased_tier` at `now`.

    - No active membership, or an active lower tier: new window [now, now + duration].
    - Active membership of the same or a higher tier: the purchase stacks, expiry moves
      forward from the current expiry and the held tier is kept. A lifetime membership
      (no expiry) stays lifetime.
    """
    current = current or Membership()
    purchased_tier = normalize_tier(purchased_tier) or FREE_TIER
    duration = timedelta(days=duration_days)

    if current.is_active(now) and TIER_RANK[current.tier] >= TIER_RANK[purchased_tier]:
        expires_at = as_utc(current.expires_at) + duration if current.expires_at is not None else None
        return replace(current, started_at=as_utc(current.started_at), expires_at=expires_at, status="active")

    now = as_utc(now)
    return Membership(
        tier=purchased_tier,
        status="active",
        started_at=now,
        expires_at=now + duration,
    )
