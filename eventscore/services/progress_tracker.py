"""
Certification Progress Tracker.

Read-only completion figures for dashboards. One tracker serves every
scope level; percentages are rounded to two decimals and an empty scope
reports 0.0 percent and complete.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func, case
from sqlalchemy.ext.asyncio import AsyncSession

from eventscore.errors import NotFoundError
from eventscore.orm.certification import (
    Certification, CertificationStatus, ScopeLevel, TOTAL_STEPS, build_scope_key
)
from eventscore.orm.competition import Event, Contest, Category, Judge
from eventscore.orm.score import Score
from eventscore.rbac import Actor, Capability, require_capability

logger = logging.getLogger(__name__)


class ProgressLevel(str, enum.Enum):
    CATEGORY = "CATEGORY"
    CONTEST = "CONTEST"
    EVENT = "EVENT"
    JUDGE = "JUDGE"


@dataclass(frozen=True)
class ProgressScope:
    level: ProgressLevel
    id: str


def percentage(done: int, total: int) -> float:
    if not total:
        return 0.0
    return round(done / total * 100, 2)


def completion(done: int, total: int) -> Dict[str, Any]:
    return {
        "total": total,
        "completed": done,
        "percentage": percentage(done, total),
        "is_complete": done >= total,
    }


def stage_summary(cert: Optional[Certification]) -> Dict[str, Any]:
    if cert is None:
        return {
            "certification_id": None,
            "status": CertificationStatus.PENDING.value,
            "current_step": 1,
            "total_steps": TOTAL_STEPS,
            "judge_certified": False,
            "tally_certified": False,
            "auditor_certified": False,
            "board_approved": False,
            "completed_stages": 0,
            "stage_percentage": 0.0,
        }
    return {
        "certification_id": cert.id,
        "status": cert.status.value,
        "current_step": cert.current_step,
        "total_steps": cert.total_steps,
        "judge_certified": bool(cert.judge_certified),
        "tally_certified": bool(cert.tally_certified),
        "auditor_certified": bool(cert.auditor_certified),
        "board_approved": bool(cert.board_approved),
        "completed_stages": cert.completed_stages,
        "stage_percentage": percentage(cert.completed_stages, TOTAL_STEPS),
    }


class CertificationProgressTracker:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_progress(self, scope: ProgressScope, actor: Actor) -> Dict[str, Any]:
        require_capability(actor, Capability.VIEW_PROGRESS)
        level = ProgressLevel(scope.level)
        if level == ProgressLevel.CATEGORY:
            return await self._category_progress(scope.id, actor.tenant_id)
        if level == ProgressLevel.CONTEST:
            return await self._contest_progress(scope.id, actor.tenant_id)
        if level == ProgressLevel.EVENT:
            return await self._event_progress(scope.id, actor.tenant_id)
        return await self._judge_progress(scope.id, actor.tenant_id)

    # =========================================================================
    # Levels
    # =========================================================================

    async def _category_progress(self, category_id: str, tenant_id: str) -> Dict[str, Any]:
        row = (await self.db.execute(
            select(Category, Contest.event_id)
            .join(Contest, Contest.id == Category.contest_id)
            .where(Category.id == category_id, Category.tenant_id == tenant_id)
        )).first()
        if not row:
            raise NotFoundError("Category", category_id)
        category, event_id = row

        total, certified = await self._score_counts(tenant_id, Score.category_id == category_id)
        cert = await self._certification(
            tenant_id, build_scope_key(ScopeLevel.CATEGORY, event_id, category.contest_id, category.id)
        )
        stages = stage_summary(cert)
        return {
            "level": ProgressLevel.CATEGORY.value,
            "id": category.id,
            "name": category.name,
            "scores": completion(certified, total),
            "certification": stages,
            "is_certified": stages["status"] == CertificationStatus.CERTIFIED.value,
        }

    async def _contest_progress(self, contest_id: str, tenant_id: str) -> Dict[str, Any]:
        contest = (await self.db.execute(
            select(Contest).where(Contest.id == contest_id, Contest.tenant_id == tenant_id)
        )).scalar_one_or_none()
        if not contest:
            raise NotFoundError("Contest", contest_id)

        categories = await self._categories(tenant_id, Category.contest_id == contest_id)
        summary = await self._categories_summary(tenant_id, contest.event_id, categories)

        own = await self._certification(
            tenant_id, build_scope_key(ScopeLevel.CONTEST, contest.event_id, contest.id)
        )
        summary.update({
            "level": ProgressLevel.CONTEST.value,
            "id": contest.id,
            "name": contest.name,
            "certification": stage_summary(own),
            "organizer_certified": bool(own and own.organizer_certified),
        })
        return summary

    async def _event_progress(self, event_id: str, tenant_id: str) -> Dict[str, Any]:
        event = (await self.db.execute(
            select(Event).where(Event.id == event_id, Event.tenant_id == tenant_id)
        )).scalar_one_or_none()
        if not event:
            raise NotFoundError("Event", event_id)

        contest_count = (await self.db.execute(
            select(func.count(Contest.id)).where(Contest.event_id == event_id, Contest.tenant_id == tenant_id)
        )).scalar_one()
        categories = await self._categories(tenant_id, Contest.event_id == event_id)
        summary = await self._categories_summary(tenant_id, event_id, categories)

        own = await self._certification(tenant_id, build_scope_key(ScopeLevel.EVENT, event_id))
        summary.update({
            "level": ProgressLevel.EVENT.value,
            "id": event.id,
            "name": event.name,
            "contests_total": contest_count,
            "certification": stage_summary(own),
        })
        return summary

    async def _judge_progress(self, judge_id: str, tenant_id: str) -> Dict[str, Any]:
        judge = (await self.db.execute(
            select(Judge).where(Judge.id == judge_id, Judge.tenant_id == tenant_id)
        )).scalar_one_or_none()
        if not judge:
            raise NotFoundError("Judge", judge_id)

        rows = (await self.db.execute(
            select(
                Category.id,
                Category.name,
                func.count(Score.id),
                func.sum(case((Score.is_certified.is_(True), 1), else_=0)),
            )
            .join(Category, Category.id == Score.category_id)
            .where(Score.tenant_id == tenant_id, Score.judge_id == judge_id)
            .group_by(Category.id, Category.name)
            .order_by(Category.name)
        )).all()

        breakdown = []
        total = certified = 0
        for category_id, name, count, done in rows:
            done = int(done or 0)
            total += count
            certified += done
            breakdown.append({
                "category_id": category_id,
                "name": name,
                **completion(done, count),
            })

        return {
            "level": ProgressLevel.JUDGE.value,
            "id": judge.id,
            "name": judge.name,
            "scores": completion(certified, total),
            "categories": breakdown,
        }

    # =========================================================================
    # Shared aggregation
    # =========================================================================

    async def _categories_summary(
        self,
        tenant_id: str,
        event_id: str,
        categories: List[Category]
    ) -> Dict[str, Any]:
        keys = {
            build_scope_key(ScopeLevel.CATEGORY, event_id, c.contest_id, c.id): c for c in categories
        }
        certs: Dict[str, Certification] = {}
        if keys:
            result = await self.db.execute(
                select(Certification).where(
                    Certification.tenant_id == tenant_id,
                    Certification.scope_key.in_(list(keys))
                )
            )
            certs = {c.category_id: c for c in result.scalars().all()}

        by_status = {status.value: 0 for status in CertificationStatus}
        stage_percentages = []
        details = []
        for category in categories:
            stages = stage_summary(certs.get(category.id))
            by_status[stages["status"]] += 1
            stage_percentages.append(stages["stage_percentage"])
            details.append({"category_id": category.id, "name": category.name, **stages})

        certified = by_status[CertificationStatus.CERTIFIED.value]
        average = round(sum(stage_percentages) / len(stage_percentages), 2) if stage_percentages else 0.0
        return {
            "categories": completion(certified, len(categories)),
            "categories_by_status": by_status,
            "average_stage_percentage": average,
            "category_details": details,
        }

    async def _categories(self, tenant_id: str, *conditions) -> List[Category]:
        result = await self.db.execute(
            select(Category)
            .join(Contest, Contest.id == Category.contest_id)
            .where(Category.tenant_id == tenant_id, *conditions)
            .order_by(Category.created_at, Category.id)
        )
        return list(result.scalars().all())

    async def _score_counts(self, tenant_id: str, *conditions) -> tuple:
        row = (await self.db.execute(
            select(
                func.count(Score.id),
                func.sum(case((Score.is_certified.is_(True), 1), else_=0)),
            ).where(Score.tenant_id == tenant_id, *conditions)
        )).one()
        return int(row[0] or 0), int(row[1] or 0)

    async def _certification(self, tenant_id: str, scope_key: str) -> Optional[Certification]:
        result = await self.db.execute(
            select(Certification).where(
                Certification.tenant_id == tenant_id,
                Certification.scope_key == scope_key
            ).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
