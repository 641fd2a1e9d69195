"""
Score Ledger.

Bulk certify / uncertify / delete primitives over sets of score rows.

Ledger operations join the caller's transaction: they flush but never
commit. Uncertification and deletion are reachable only from consensus
execution, so every reversal of certified scores passes through
multi-signature approval.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from eventscore.errors import (
    NotFoundError, ValidationError, AlreadyTerminalError, ConcurrentModificationError,
    UnauthorizedError
)
from eventscore.orm.base import utcnow
from eventscore.orm.certification import Certification, CertificationStatus, ScopeLevel
from eventscore.orm.competition import Category, Contest, Contestant, Judge
from eventscore.orm.consensus import ConsensusRequest, ScoreDeduction
from eventscore.orm.score import Score
from eventscore.rbac import Actor, Capability, Role, require_capability

logger = logging.getLogger(__name__)


def to_decimal(value) -> Decimal:
    """Coerce driver numerics (float on SQLite) into two-place Decimals."""
    if value is None:
        return Decimal("0.00")
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except InvalidOperation:
        raise ValidationError(f"'{value}' is not a valid number", details={"value": str(value)})


@dataclass(frozen=True)
class ScoreScope:
    """
    Set of score rows a ledger operation acts on:
    category only, judge + category, contestant + category, or all three.
    """
    category_id: str
    judge_id: Optional[str] = None
    contestant_id: Optional[str] = None

    def conditions(self, tenant_id: str) -> list:
        clauses = [Score.tenant_id == tenant_id, Score.category_id == self.category_id]
        if self.judge_id:
            clauses.append(Score.judge_id == self.judge_id)
        if self.contestant_id:
            clauses.append(Score.contestant_id == self.contestant_id)
        return clauses

    def to_dict(self) -> dict:
        return {
            "category_id": self.category_id,
            "judge_id": self.judge_id,
            "contestant_id": self.contestant_id,
        }


class ScoreLedger:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_category(self, category_id: str, tenant_id: str) -> Category:
        result = await self.db.execute(
            select(Category).where(
                Category.id == category_id,
                Category.tenant_id == tenant_id
            )
        )
        category = result.scalar_one_or_none()
        if not category:
            raise NotFoundError("Category", category_id)
        return category

    async def get_event_id_for_category(self, category: Category) -> str:
        result = await self.db.execute(
            select(Contest.event_id).where(Contest.id == category.contest_id)
        )
        return result.scalar_one()

    # =========================================================================
    # Certification
    # =========================================================================

    async def certify_scores(self, scope: ScoreScope, actor: Actor) -> int:
        """
        Certify every uncertified score in scope.
        Idempotent: a second call with nothing left to certify returns 0.
        """
        require_capability(actor, Capability.CERTIFY_SCORES)
        await self.get_category(scope.category_id, actor.tenant_id)

        result = await self.db.execute(
            update(Score)
            .where(*scope.conditions(actor.tenant_id), Score.is_certified.is_(False))
            .values(
                is_certified=True,
                certified_at=utcnow(),
                certified_by=actor.user_id,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0
        logger.info(f"Certified {count} scores in scope {scope.to_dict()} by {actor.user_id}")
        return count

    async def uncertify_scores(self, scope: ScoreScope, tenant_id: str) -> int:
        """Return certified scores in scope to uncertified. Consensus execution only."""
        await self.get_category(scope.category_id, tenant_id)

        result = await self.db.execute(
            update(Score)
            .where(*scope.conditions(tenant_id), Score.is_certified.is_(True))
            .values(
                is_certified=False,
                certified_at=None,
                certified_by=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0
        logger.warning(f"Uncertified {count} scores in scope {scope.to_dict()}")
        return count

    async def delete_scores(self, scope: ScoreScope, tenant_id: str) -> int:
        """Remove score rows in scope. Consensus execution only."""
        await self.get_category(scope.category_id, tenant_id)

        result = await self.db.execute(
            delete(Score)
            .where(*scope.conditions(tenant_id))
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0
        logger.warning(f"Deleted {count} scores in scope {scope.to_dict()}")
        return count

    # =========================================================================
    # Scoring
    # =========================================================================

    async def record_score(
        self,
        category_id: str,
        judge_id: str,
        contestant_id: str,
        value,
        actor: Actor
    ) -> Score:
        """
        Create or update a judge's score for a contestant.

        Validations:
        - Category, judge and contestant exist in the actor's tenant
        - Judges write only under their own judge record (ADMIN excepted)
        - Category has not passed the judge stage
        - 0 <= value <= category.max_score
        - Existing score is neither certified nor locked
        """
        require_capability(actor, Capability.RECORD_SCORE)
        category = await self.get_category(category_id, actor.tenant_id)
        await self._require_open_for_scoring(category_id, actor.tenant_id)

        judge = (await self.db.execute(
            select(Judge).where(Judge.id == judge_id, Judge.tenant_id == actor.tenant_id)
        )).scalar_one_or_none()
        if not judge:
            raise NotFoundError("Judge", judge_id)
        if actor.role != Role.ADMIN and judge.user_id != actor.user_id:
            raise UnauthorizedError(
                "Judges may only record their own scores",
                details={"judge_id": judge_id, "user_id": actor.user_id}
            )

        contestant = (await self.db.execute(
            select(Contestant).where(
                Contestant.id == contestant_id,
                Contestant.tenant_id == actor.tenant_id
            )
        )).scalar_one_or_none()
        if not contestant:
            raise NotFoundError("Contestant", contestant_id)

        amount = to_decimal(value)
        max_score = to_decimal(category.max_score)
        if amount < 0 or amount > max_score:
            raise ValidationError(
                f"Score must be between 0 and {max_score}",
                details={"score": str(amount), "max_score": str(max_score)}
            )

        existing = (await self.db.execute(
            select(Score).where(
                Score.tenant_id == actor.tenant_id,
                Score.category_id == category_id,
                Score.judge_id == judge_id,
                Score.contestant_id == contestant_id,
            ).with_for_update()
        )).scalar_one_or_none()

        if existing is None:
            score = Score(
                tenant_id=actor.tenant_id,
                category_id=category_id,
                judge_id=judge_id,
                contestant_id=contestant_id,
                score=amount,
            )
            self.db.add(score)
            try:
                await self.db.flush()
            except IntegrityError:
                await self.db.rollback()
                raise ConcurrentModificationError(
                    "Score was recorded concurrently; retry the request",
                    details={"category_id": category_id, "judge_id": judge_id, "contestant_id": contestant_id}
                )
            return score

        # Certified rows are immutable until a consensus reversal executes
        result = await self.db.execute(
            update(Score)
            .where(
                Score.id == existing.id,
                Score.is_certified.is_(False),
                Score.is_locked.is_(False),
            )
            .values(score=amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            raise AlreadyTerminalError(
                "Score is certified or locked and cannot be changed",
                details={"score_id": existing.id}
            )

        refreshed = await self.db.execute(
            select(Score).where(Score.id == existing.id).execution_options(populate_existing=True)
        )
        return refreshed.scalar_one()

    async def _require_open_for_scoring(self, category_id: str, tenant_id: str) -> None:
        """Once the judge stage is done, scores change only through consensus reversals."""
        row = (await self.db.execute(
            select(Certification.id, Certification.judge_certified, Certification.status).where(
                Certification.tenant_id == tenant_id,
                Certification.scope_level == ScopeLevel.CATEGORY,
                Certification.category_id == category_id,
            )
        )).first()
        if row and (row.judge_certified or row.status == CertificationStatus.CERTIFIED):
            raise AlreadyTerminalError(
                "Category scores are certified; new scores cannot be recorded",
                details={"category_id": category_id, "certification_id": row.id, "status": row.status.value}
            )

    # =========================================================================
    # Deductions
    # =========================================================================

    async def apply_deduction(self, request: ConsensusRequest) -> ScoreDeduction:
        """Record an approved deduction. The unique request_id makes this happen once."""
        deduction = ScoreDeduction(
            tenant_id=request.tenant_id,
            request_id=request.id,
            category_id=request.category_id,
            contestant_id=request.contestant_id,
            amount=to_decimal(request.amount),
            reason=request.reason,
        )
        self.db.add(deduction)
        await self.db.flush()
        logger.info(
            f"Applied deduction {deduction.amount} to contestant {request.contestant_id} "
            f"in category {request.category_id} (request {request.id})"
        )
        return deduction

    async def deduction_totals(self, category_id: str, tenant_id: str) -> Dict[str, Decimal]:
        result = await self.db.execute(
            select(ScoreDeduction.contestant_id, func.sum(ScoreDeduction.amount))
            .where(
                ScoreDeduction.tenant_id == tenant_id,
                ScoreDeduction.category_id == category_id
            )
            .group_by(ScoreDeduction.contestant_id)
        )
        return {contestant_id: to_decimal(total) for contestant_id, total in result.all()}
