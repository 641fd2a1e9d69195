"""
eventscore/routes/__init__.py
Route registration
"""
from fastapi import APIRouter

from eventscore.routes import (
    admin, certifications, deductions, judge_uncertification,
    progress, score_removal, scores, winners
)

router = APIRouter()

router.include_router(certifications.router)
router.include_router(scores.router)
router.include_router(judge_uncertification.router)
router.include_router(score_removal.router)
router.include_router(deductions.router)
router.include_router(winners.router)
router.include_router(progress.router)
router.include_router(admin.router)
