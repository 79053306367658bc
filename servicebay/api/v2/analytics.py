from fastapi import APIRouter
import logging

from servicebay.api.deps import DbSession
from servicebay.schemas.analytics import (
    AnalyticsOverview,
    Bottleneck,
    LeaderboardEntry,
    TrainingSuggestion,
    WeeklyTrend,
)
from servicebay.security.rbac import ManagerUser
from servicebay.services import analytics

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/leaderboard", response_model=list[LeaderboardEntry])
async def leaderboard(db: DbSession, manager: ManagerUser):
    """Technicians ranked by efficiency ratio (flagged / clocked)."""
    return await analytics.leaderboard(db, manager.shop_id)


@router.get("/bottlenecks", response_model=list[Bottleneck])
async def bottlenecks(db: DbSession, manager: ManagerUser):
    """Certifications whose jobs consistently run over book time."""
    return await analytics.bottlenecks(db, manager.shop_id)


@router.get("/training-suggestions", response_model=list[TrainingSuggestion])
async def training_suggestions(db: DbSession, manager: ManagerUser):
    return await analytics.training_suggestions(db, manager.shop_id)


@router.get("/overview", response_model=AnalyticsOverview)
async def overview(db: DbSession, manager: ManagerUser):
    return await analytics.overview(db, manager.shop_id)


@router.get("/weekly-trends", response_model=list[WeeklyTrend])
async def weekly_trends(db: DbSession, manager: ManagerUser):
    return await analytics.weekly_trends(db, manager.shop_id)
