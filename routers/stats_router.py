"""
Stats Router - user counts for the dashboard
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user
from crud.subscription import SubscriptionStore
from database import get_db
from database_models import User
from utils.clock import Clock, get_clock
from utils.responses import success_response

stats_router = APIRouter(prefix="/api/stats", tags=["stats"])


@stats_router.get("")
async def get_stats(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Totals over active accounts plus a breakdown by subscription status"""
    stats = await SubscriptionStore(db).user_stats(clock.now())
    return success_response(data={"stats": stats})
