"""
Test Suite: Grant Policy
========================

- Tool costs and plan grants come from the price table
- Unknown tools and plans are rejected, never defaulted
- Plan tiers rank free < flex < personal < creator < studio
"""

import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from credit_ledger.config import PURCHASE_PLANS, SIGNUP_BONUS, TOOL_COSTS
from credit_ledger.errors import UnknownPlan, UnknownTool
from credit_ledger.grant_policy import GrantPolicy


class TestToolCosts:

    @pytest.fixture
    def policy(self):
        return GrantPolicy()

    @pytest.mark.parametrize("tool_id,cost", [
        ("general_intelligence", 2),
        ("voice_chat", 2),
        ("image_editor", 8),
        ("image_generate", 12),
        ("photo_animator", 45),
        ("prompt_video", 45),
    ])
    def test_known_tool_costs(self, policy, tool_id, cost):
        assert policy.cost_of(tool_id) == cost

    def test_unknown_tool_raises(self, policy):
        with pytest.raises(UnknownTool) as exc:
            policy.cost_of("crypto_miner")
        assert exc.value.error_code == "UNKNOWN_TOOL"
        assert exc.value.tool_id == "crypto_miner"

    def test_list_tools_is_a_copy(self, policy):
        tools = policy.list_tools()
        tools["image_generate"] = 0
        assert policy.cost_of("image_generate") == 12
        assert set(policy.list_tools()) == set(TOOL_COSTS)


class TestPlans:

    @pytest.fixture
    def policy(self):
        return GrantPolicy()

    @pytest.mark.parametrize("plan_id,credits", [
        ("personal", 600),
        ("creator", 1800),
        ("studio", 5000),
        ("flex", 100),
    ])
    def test_plan_credits(self, policy, plan_id, credits):
        assert policy.credits_for(plan_id) == credits

    @pytest.mark.parametrize("plan_id", ["enterprise", "", None])
    def test_unknown_plan_raises(self, policy, plan_id):
        with pytest.raises(UnknownPlan):
            policy.credits_for(plan_id)

    def test_signup_bonus(self, policy):
        assert policy.signup_bonus() == SIGNUP_BONUS == 100

    def test_list_plans_shape(self, policy):
        plans = {p["id"]: p for p in policy.list_plans()}
        assert set(plans) == set(PURCHASE_PLANS)
        assert plans["creator"]["price_usd"] == 49.00
        assert plans["creator"]["credits"] == 1800
        assert "price_env" not in plans["creator"]

    def test_stripe_price_id_from_environment(self, policy, monkeypatch):
        monkeypatch.setenv("STRIPE_PRICE_STUDIO", "price_studio_123")
        monkeypatch.delenv("STRIPE_PRICE_FLEX", raising=False)
        assert policy.stripe_price_id("studio") == "price_studio_123"
        assert policy.stripe_price_id("flex") == ""

    def test_custom_price_table(self):
        policy = GrantPolicy(tool_costs={"echo": 1}, plans={}, signup_bonus=5)
        assert policy.cost_of("echo") == 1
        assert policy.signup_bonus() == 5
        with pytest.raises(UnknownTool):
            policy.cost_of("image_generate")
        with pytest.raises(UnknownPlan):
            policy.plan("personal")


class TestPlanRanks:

    def test_tier_ladder(self):
        rank = GrantPolicy.plan_rank
        assert rank("free") == 0
        assert rank("free") < rank("flex") < rank("personal") < rank("creator") < rank("studio")

    def test_unknown_tier_ranks_lowest(self):
        assert GrantPolicy.plan_rank("mystery") == 0
        assert GrantPolicy.plan_rank(None) == 0
