"""
Tool Guard - Pre-execution credit charge

Enforces:
- Known tool with a priced cost (no silent default)
- Rate limiting (charges per minute, video charges per 10 minutes)
- Atomic debit before the AI provider is called

IMPORTANT: The charge happens BEFORE the paid AI operation. A failed AI call
after a successful charge is not refunded automatically.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Tuple

from .config import ERROR_CODES, RATE_LIMITS, VIDEO_TOOLS
from .errors import AccountNotProvisioned, UnknownTool
from .models import ChargeResult, EstimateResponse
from .balance_service import BalanceService

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    In-memory sliding windows per principal.

    Lives for the process; the HTTP layer keeps one instance shared by
    every request.
    """

    def __init__(self, limits: Optional[Dict[str, int]] = None):
        self.limits = dict(limits if limits is not None else RATE_LIMITS)

        # Format: {principal_id: [timestamp, ...]}
        self._recent_charges: Dict[str, List[float]] = {}
        self._recent_video_charges: Dict[str, List[float]] = {}

        self._lock = asyncio.Lock()

    async def reserve(self, principal_id: str, tool_id: str) -> Tuple[bool, str, Optional[float]]:
        """
        Check the limits and take a slot in the same critical section.

        Returns (allowed, message, stamp). Pass the stamp to ``release`` if
        the charge does not go through.
        """
        async with self._lock:
            now = time.time()

            recent = self._prune(self._recent_charges, principal_id, now, 60)
            if len(recent) >= self.limits["max_charges_per_minute"]:
                wait_time = int(60 - (now - recent[0]))
                return False, f"{ERROR_CODES['RATE_LIMIT']} Retry in {wait_time} seconds.", None

            if tool_id in VIDEO_TOOLS:
                window = self.limits["video_window_seconds"]
                videos = self._prune(self._recent_video_charges, principal_id, now, window)
                if len(videos) >= self.limits["max_video_charges"]:
                    wait_time = int(window - (now - videos[0]))
                    return False, f"Too many video requests. Retry in {wait_time} seconds.", None

            recent.append(now)
            if tool_id in VIDEO_TOOLS:
                self._recent_video_charges.setdefault(principal_id, []).append(now)
            return True, "", now

    async def release(self, principal_id: str, tool_id: str, stamp: float):
        """Give back a slot taken by a charge that was refused."""
        async with self._lock:
            caches = [self._recent_charges]
            if tool_id in VIDEO_TOOLS:
                caches.append(self._recent_video_charges)
            for cache in caches:
                stamps = cache.get(principal_id, [])
                if stamp in stamps:
                    stamps.remove(stamp)

    @staticmethod
    def _prune(cache: Dict[str, List[float]], principal_id: str, now: float, window: int) -> List[float]:
        cache[principal_id] = [ts for ts in cache.get(principal_id, []) if now - ts < window]
        return cache[principal_id]


class ToolGuard:
    """
    Credit guard in front of every AI tool call.

    Usage:
        guard = ToolGuard(balance_service)
        result = await guard.charge(principal_id, "image_generate")
        if not result.allowed:
            raise HTTPException(status_code=402, detail=result.error_message)
        # call the AI provider
    """

    def __init__(self, balance_service: BalanceService, rate_limiter: Optional[RateLimiter] = None):
        self.balance_service = balance_service
        self.policy = balance_service.policy
        self.rate_limiter = rate_limiter or RateLimiter()

    async def estimate(self, principal_id: str, tool_id: str) -> EstimateResponse:
        """Cost of a tool against the current balance, without charging."""
        cost = self.policy.cost_of(tool_id)
        balance = await self.balance_service.get_balance(principal_id)

        return EstimateResponse(
            tool=tool_id,
            cost=cost,
            current_balance=balance,
            sufficient_credits=balance >= cost
        )

    async def charge(self, principal_id: str, tool_id: str) -> ChargeResult:
        """
        Full guard check: tool price, rate limit, atomic debit.

        Returns:
            ChargeResult indicating success/failure
        """
        # 1. Price the tool
        try:
            cost = self.policy.cost_of(tool_id)
        except UnknownTool as e:
            return ChargeResult(
                allowed=False,
                tool=tool_id,
                error_code=e.error_code,
                error_message=e.message
            )

        # 2. Rate limit
        allowed, message, stamp = await self.rate_limiter.reserve(principal_id, tool_id)
        if not allowed:
            logger.warning(f"Rate limit hit for {principal_id} on {tool_id}")
            return ChargeResult(
                allowed=False,
                tool=tool_id,
                cost=cost,
                error_code="RATE_LIMIT",
                error_message=message
            )

        # 3. Debit; the slot is only kept for a charge that lands
        try:
            result = await self.balance_service.debit(principal_id, cost, f"Used: {tool_id}")
        except AccountNotProvisioned as e:
            await self.rate_limiter.release(principal_id, tool_id, stamp)
            return ChargeResult(
                allowed=False,
                tool=tool_id,
                cost=cost,
                error_code=e.error_code,
                error_message=e.message
            )
        except Exception:
            await self.rate_limiter.release(principal_id, tool_id, stamp)
            raise

        if not result.success:
            await self.rate_limiter.release(principal_id, tool_id, stamp)
            return ChargeResult(
                allowed=False,
                tool=tool_id,
                cost=cost,
                remaining_balance=result.remaining_balance,
                error_code="INSUFFICIENT_CREDITS",
                error_message=(
                    f"Not enough credits. Need {cost}, have {result.remaining_balance}. "
                    "Please top up."
                )
            )

        return ChargeResult(
            allowed=True,
            tool=tool_id,
            cost=cost,
            remaining_balance=result.remaining_balance,
            entry_id=result.entry_id
        )
