"""Route resolution for rewrite requests.

A route maps (surface, lane, rewrite_strength) to a provider, model, prompt
and policy version. The first active route whose provider is also active wins,
lowest priority value first.
"""

from dataclasses import asdict, dataclass
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from harmony.db.models import ComplaintAIProvider, ComplaintRewriteRoute
from harmony.errors import ApiErrorCode, NotFoundError


@dataclass(frozen=True)
class RoutingDecision:
    route_id: UUID
    provider: str
    adapter_kind: str
    base_url: str | None
    model: str
    prompt_version: str
    policy_version: str
    execution_mode: str
    cache_eligible: bool
    max_retries: int
    supports_translation: bool = True

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["route_id"] = str(self.route_id)
        return data


def resolve_route(
    db: Session, surface: str, lane: str, rewrite_strength: str
) -> RoutingDecision:
    """Pick the route for a request.

    Raises:
        NotFoundError: E_ROUTE_NOT_FOUND when no active route matches.
    """
    row = db.execute(
        select(ComplaintRewriteRoute, ComplaintAIProvider)
        .join(ComplaintAIProvider, ComplaintAIProvider.provider == ComplaintRewriteRoute.provider)
        .where(
            ComplaintRewriteRoute.surface == surface,
            ComplaintRewriteRoute.lane == lane,
            ComplaintRewriteRoute.rewrite_strength == rewrite_strength,
            ComplaintRewriteRoute.active.is_(True),
            ComplaintAIProvider.active.is_(True),
        )
        .order_by(ComplaintRewriteRoute.priority, ComplaintRewriteRoute.created_at)
        .limit(1)
    ).first()

    if row is None:
        raise NotFoundError(
            ApiErrorCode.E_ROUTE_NOT_FOUND,
            f"no active route for surface={surface} lane={lane} strength={rewrite_strength}",
        )

    route, provider = row
    return RoutingDecision(
        route_id=route.route_id,
        provider=route.provider,
        adapter_kind=provider.adapter_kind,
        base_url=provider.base_url,
        model=route.model,
        prompt_version=route.prompt_version,
        policy_version=route.policy_version,
        execution_mode=route.execution_mode,
        cache_eligible=route.cache_eligible,
        max_retries=route.max_retries,
    )
