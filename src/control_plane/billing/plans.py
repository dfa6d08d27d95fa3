"""Partner plan tiers and their limits."""

from control_plane.db.models import PLAN_CONFIG, PlanTier


def get_plan_monthly_minutes_limit(plan_tier: str | None) -> int:
    """Monthly minutes for a tier; unknown tiers get the starter limit."""
    try:
        tier = PlanTier(plan_tier)
    except ValueError:
        tier = PlanTier.STARTER
    return PLAN_CONFIG[tier]["monthly_minutes"]


def get_plan_max_workspaces(plan_tier: str | None) -> int | None:
    """Workspace cap for a tier; None means unlimited."""
    try:
        tier = PlanTier(plan_tier)
    except ValueError:
        tier = PlanTier.STARTER
    return PLAN_CONFIG[tier]["max_workspaces"]
