"""
Grant Policy - static price table lookups

Pure lookups with no mutable state:
- what a tool costs
- how many credits a purchase plan grants
- how large the signup bonus is
- how plan tiers rank against each other

Unknown identifiers raise instead of falling back to a default.
"""

import logging
import os
from typing import Any, Dict, List, Optional

from .config import PLAN_TIER_RANKS, PURCHASE_PLANS, SIGNUP_BONUS, TOOL_COSTS
from .errors import UnknownPlan, UnknownTool

logger = logging.getLogger(__name__)


class GrantPolicy:
    """Read-only view over the credit price table."""

    def __init__(
        self,
        tool_costs: Optional[Dict[str, int]] = None,
        plans: Optional[Dict[str, Dict[str, Any]]] = None,
        signup_bonus: int = SIGNUP_BONUS,
    ):
        self._tool_costs = dict(tool_costs if tool_costs is not None else TOOL_COSTS)
        self._plans = dict(plans if plans is not None else PURCHASE_PLANS)
        self._signup_bonus = signup_bonus

    def cost_of(self, tool_id: str) -> int:
        cost = self._tool_costs.get(tool_id)
        if cost is None:
            logger.error(f"Unknown tool requested: {tool_id!r}")
            raise UnknownTool(tool_id)
        return cost

    def credits_for(self, plan_id: Optional[str]) -> int:
        return self.plan(plan_id)["credits"]

    def signup_bonus(self) -> int:
        return self._signup_bonus

    def plan(self, plan_id: Optional[str]) -> Dict[str, Any]:
        plan = self._plans.get(plan_id) if plan_id else None
        if plan is None:
            logger.error(f"Unknown plan requested: {plan_id!r}")
            raise UnknownPlan(plan_id)
        return plan

    def stripe_price_id(self, plan_id: str) -> str:
        """Stripe price id for a plan; empty string when not configured."""
        plan = self.plan(plan_id)
        return os.environ.get(plan.get("price_env", ""), "")

    @staticmethod
    def plan_rank(plan_tier: Optional[str]) -> int:
        return PLAN_TIER_RANKS.get(plan_tier or "", 0)

    def list_tools(self) -> Dict[str, int]:
        return dict(self._tool_costs)

    def list_plans(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": plan_id,
                "name": plan["name"],
                "credits": plan["credits"],
                "price_usd": plan["price_usd"],
                "features": list(plan.get("features", [])),
            }
            for plan_id, plan in self._plans.items()
        ]
