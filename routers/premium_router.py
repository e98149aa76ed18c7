"""
Premium Router - driver metrics available during the trial or a paid period
Every route here depends on require_access; denied users get 402
"""

from fastapi import APIRouter, Depends

from auth import require_access
from services.access_policy import AccessDecision
from utils.responses import success_response

premium_router = APIRouter(prefix="/api/premium", tags=["premium"])

# Demand snapshot per ride-hailing / delivery platform
PLATFORM_SNAPSHOT = {
    "uber": {"demand": 85, "surge": 1.5, "avgEarnings": 1200},
    "didi": {"demand": 72, "surge": 1.3, "avgEarnings": 950},
    "pedidosya": {"demand": 90, "surge": 1.8, "avgEarnings": 1400},
    "rappi": {"demand": 88, "surge": 1.6, "avgEarnings": 1300},
}


def _recommendations(platforms: dict) -> list:
    name, best = max(platforms.items(), key=lambda item: item[1]["avgEarnings"] * item[1]["surge"])
    return [{
        "type": "platform",
        "priority": "high",
        "platform": name,
        "detail": f"Average earnings ${best['avgEarnings']}/trip ({best['surge']}x surge)",
    }]


@premium_router.get("/metrics")
async def premium_metrics(decision: AccessDecision = Depends(require_access)):
    return success_response(data={
        "platforms": PLATFORM_SNAPSHOT,
        "recommendations": _recommendations(PLATFORM_SNAPSHOT),
        "subscription": decision.to_dict(),
    })
