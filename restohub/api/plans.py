"""Public plan catalogue route."""
from fastapi import APIRouter

from restohub.features.plans.service import list_active_plans


router = APIRouter(tags=["plans"])


@router.get("/subscription-plans")
def get_subscription_plans():
    plans = list_active_plans()
    return {"success": True, "plans": [plan.model_dump(mode="json") for plan in plans]}
