"""
Winner Computation Engine.

Ranks contestants by summed judge scores minus applied deductions and gates
release of the ranked list behind winner sign-offs.

Ranking rules:
- Certified scores only (FEATURE_WINNERS_CERTIFIED_ONLY), whatever the
  category certification status
- Totals clamp at zero after deductions
- Ties ordered by contestant_number ascending, then contestant id;
  equal totals share a rank (1, 1, 3)
"""
import hashlib
import logging
from collections import OrderedDict
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from eventscore.config.feature_flags import feature_flags
from eventscore.config.settings import settings
from eventscore.errors import NotFoundError
from eventscore.orm.base import utcnow
from eventscore.orm.certification import Certification, CertificationStatus, ScopeLevel
from eventscore.orm.competition import Contest, Category, Contestant
from eventscore.orm.score import Score
from eventscore.orm.winner_signature import WinnerSignature
from eventscore.rbac import Actor, Capability, has_capability, require_capability
from eventscore.services.score_ledger import ScoreLedger, to_decimal

logger = logging.getLogger(__name__)


def compute_signature_hash(
    user_id: str,
    category_id: str,
    role: str,
    timestamp: str,
    ip_address: Optional[str],
    user_agent: Optional[str]
) -> str:
    data = f"{user_id}-{category_id}-{role}-{timestamp}-{ip_address or ''}-{user_agent or ''}"
    return hashlib.sha256(data.encode()).hexdigest()


def rank_entries(entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Sort by total desc, contestant_number asc, id asc; assign competition ranks."""
    ordered = sorted(
        entries,
        key=lambda e: (-e["total_score"], e["contestant_number"], e["contestant_id"])
    )
    previous_total = None
    rank = 0
    for position, entry in enumerate(ordered, start=1):
        if entry["total_score"] != previous_total:
            rank = position
            previous_total = entry["total_score"]
        entry["rank"] = rank
    return ordered


def redact_for(actor: Actor, result: Dict[str, Any]) -> Dict[str, Any]:
    """Withhold the ranked list from callers who may not see unreleased results."""
    if result["can_show_winners"] or has_capability(actor.role, Capability.VIEW_UNRELEASED_RESULTS):
        return {**result, "winners_withheld": False}
    return {**result, "winners": [], "winners_withheld": True}


class WinnerComputationEngine:

    def __init__(self, db: AsyncSession, ledger: Optional[ScoreLedger] = None):
        self.db = db
        self.ledger = ledger or ScoreLedger(db)

    # =========================================================================
    # Results
    # =========================================================================

    async def get_winners_by_category(self, category_id: str, actor: Actor) -> Dict[str, Any]:
        """
        Ranked results for a category. The list is always computed;
        ``can_show_winners`` tells callers whether it may be released.
        """
        require_capability(actor, Capability.VIEW_WINNERS)
        category = await self.ledger.get_category(category_id, actor.tenant_id)

        cert = (await self.db.execute(
            select(Certification).where(
                Certification.tenant_id == actor.tenant_id,
                Certification.scope_level == ScopeLevel.CATEGORY,
                Certification.category_id == category_id,
            ).execution_options(populate_existing=True)
        )).scalar_one_or_none()
        certified_only = feature_flags.FEATURE_WINNERS_CERTIFIED_ONLY

        query = (
            select(Score, Contestant)
            .join(Contestant, Contestant.id == Score.contestant_id)
            .where(Score.tenant_id == actor.tenant_id, Score.category_id == category_id)
        )
        if certified_only:
            query = query.where(Score.is_certified.is_(True))
        rows = (await self.db.execute(query)).all()

        aggregates: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        judges = set()
        for score, contestant in rows:
            judges.add(score.judge_id)
            entry = aggregates.setdefault(contestant.id, {
                "contestant_id": contestant.id,
                "contestant_number": contestant.contestant_number,
                "name": contestant.name,
                "raw_total": Decimal("0.00"),
                "score_count": 0,
            })
            entry["raw_total"] += to_decimal(score.score)
            entry["score_count"] += 1

        deductions = await self.ledger.deduction_totals(category_id, actor.tenant_id)
        entries = []
        for entry in aggregates.values():
            deducted = deductions.get(entry["contestant_id"], Decimal("0.00"))
            total = max(entry["raw_total"] - deducted, Decimal("0.00"))
            entries.append({
                **entry,
                "raw_total": float(entry["raw_total"]),
                "deductions": float(deducted),
                "total_score": float(total),
            })
        winners = rank_entries(entries)

        signature_status = await self._signature_status(category_id, actor.tenant_id)
        max_score = to_decimal(category.max_score)
        return {
            "category_id": category.id,
            "category_name": category.name,
            "contest_id": category.contest_id,
            "certification_status": cert.status.value if cert else CertificationStatus.PENDING.value,
            "counted_scores": "certified" if certified_only else "all",
            "max_score": float(max_score),
            "judge_count": len(judges),
            "total_possible_score": float(max_score * len(judges)),
            "contestant_count": len(winners),
            "winners": winners,
            **signature_status,
        }

    async def get_winners_by_contest(self, contest_id: str, actor: Actor) -> Dict[str, Any]:
        """Per-category results plus overall totals over the categories the caller may see."""
        require_capability(actor, Capability.VIEW_WINNERS)
        contest = (await self.db.execute(
            select(Contest).where(Contest.id == contest_id, Contest.tenant_id == actor.tenant_id)
        )).scalar_one_or_none()
        if not contest:
            raise NotFoundError("Contest", contest_id)

        category_ids = (await self.db.execute(
            select(Category.id)
            .where(Category.contest_id == contest_id, Category.tenant_id == actor.tenant_id)
            .order_by(Category.created_at, Category.id)
        )).scalars().all()

        categories = []
        overall: Dict[str, Dict[str, Any]] = {}
        for category_id in category_ids:
            result = redact_for(actor, await self.get_winners_by_category(category_id, actor))
            categories.append(result)
            for winner in result["winners"]:
                entry = overall.setdefault(winner["contestant_id"], {
                    "contestant_id": winner["contestant_id"],
                    "contestant_number": winner["contestant_number"],
                    "name": winner["name"],
                    "total_score": 0.0,
                    "categories_counted": 0,
                })
                entry["total_score"] = round(entry["total_score"] + winner["total_score"], 2)
                entry["categories_counted"] += 1

        return {
            "contest_id": contest.id,
            "contest_name": contest.name,
            "categories": categories,
            "overall": rank_entries(list(overall.values())),
            "can_show_winners": bool(categories) and all(c["can_show_winners"] for c in categories),
        }

    # =========================================================================
    # Sign-off
    # =========================================================================

    async def sign_winners(
        self,
        category_id: str,
        actor: Actor,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> Dict[str, Any]:
        """Idempotent per (category, user): signing again returns the existing signature."""
        require_capability(actor, Capability.SIGN_WINNERS)
        await self.ledger.get_category(category_id, actor.tenant_id)

        existing = await self._find_signature(category_id, actor)
        already_signed = existing is not None

        if existing is None:
            signed_at = utcnow()
            signature = WinnerSignature(
                tenant_id=actor.tenant_id,
                category_id=category_id,
                user_id=actor.user_id,
                role=actor.role.value,
                signature=compute_signature_hash(
                    actor.user_id, category_id, actor.role.value,
                    signed_at.isoformat(), ip_address, user_agent
                ),
                ip_address=ip_address,
                user_agent=user_agent,
                signed_at=signed_at,
            )
            self.db.add(signature)
            try:
                await self.db.commit()
                existing = signature
                logger.info(f"Winners for category {category_id} signed by {actor.user_id} ({actor.role.value})")
            except IntegrityError:
                await self.db.rollback()
                existing = await self._find_signature(category_id, actor)
                if existing is None:
                    raise
                already_signed = True

        status = await self._signature_status(category_id, actor.tenant_id)
        return {
            "signature": existing.to_dict(),
            "already_signed": already_signed,
            **status,
        }

    async def get_signature_status(self, category_id: str, actor: Actor) -> Dict[str, Any]:
        require_capability(actor, Capability.VIEW_WINNERS)
        await self.ledger.get_category(category_id, actor.tenant_id)
        status = await self._signature_status(category_id, actor.tenant_id)
        status["signed_by_me"] = any(s["user_id"] == actor.user_id for s in status["signatures"])
        return {"category_id": category_id, **status}

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _find_signature(self, category_id: str, actor: Actor) -> Optional[WinnerSignature]:
        result = await self.db.execute(
            select(WinnerSignature).where(
                WinnerSignature.tenant_id == actor.tenant_id,
                WinnerSignature.category_id == category_id,
                WinnerSignature.user_id == actor.user_id,
            )
        )
        return result.scalar_one_or_none()

    async def _signature_status(self, category_id: str, tenant_id: str) -> Dict[str, Any]:
        signatures = (await self.db.execute(
            select(WinnerSignature).where(
                WinnerSignature.tenant_id == tenant_id,
                WinnerSignature.category_id == category_id,
            ).order_by(WinnerSignature.signed_at, WinnerSignature.id)
        )).scalars().all()

        required = list(settings.WINNER_REQUIRED_ROLES)
        roles_signed = sorted({s.role for s in signatures})
        roles_missing = [role for role in required if role not in roles_signed]
        return {
            "can_show_winners": not roles_missing,
            "required_roles": required,
            "roles_signed": roles_signed,
            "roles_missing": roles_missing,
            "signatures": [s.to_dict() for s in signatures],
        }
