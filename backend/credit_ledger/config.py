"""
Credit Ledger Configuration and Constants

Tool costs, purchase plans, signup bonus and rate limits are defined here.
All prices are in USD, all balances in whole credits.
"""

import os

# ==================== SIGNUP BONUS ====================
SIGNUP_BONUS = 100

# ==================== TOOL CREDIT COSTS ====================
# Personal plan: $22 = 600 credits -> ~$0.0367 per credit
TOOL_COSTS = {
    "general_intelligence": 2,
    "image_analyzer": 2,
    "video_analyzer": 2,
    "audio_transcriber": 2,
    "voice_chat": 2,
    "image_editor": 8,
    "image_cloner": 8,
    "image_generate": 12,
    "photo_animator": 45,
    "prompt_video": 45,
}

# Tools that hit the slower video rate limit
VIDEO_TOOLS = {"photo_animator", "prompt_video"}

# ==================== PURCHASE PLANS (USD) ====================
# One-time payments. Credits stack on top of the existing balance.
PURCHASE_PLANS = {
    "personal": {
        "name": "Personal",
        "credits": 600,
        "price_usd": 22.00,
        "price_env": "STRIPE_PRICE_PERSONAL",
        "features": [
            "600 credits",
            "Text, image & voice tools",
            "Image generation & editing",
            "Limited short video access",
        ],
    },
    "creator": {
        "name": "Creator",
        "credits": 1800,
        "price_usd": 49.00,
        "price_env": "STRIPE_PRICE_CREATOR",
        "features": [
            "1,800 credits",
            "Full video generation",
            "Batch processing",
            "Commercial use",
        ],
    },
    "studio": {
        "name": "Studio",
        "credits": 5000,
        "price_usd": 99.00,
        "price_env": "STRIPE_PRICE_STUDIO",
        "features": [
            "5,000 credits",
            "Team access",
            "White-label exports",
            "Early access tools",
        ],
    },
    "flex": {
        "name": "Flex Credit",
        "credits": 100,
        "price_usd": 10.00,
        "price_env": "STRIPE_PRICE_FLEX",
        "features": [
            "~8 Images",
            "~2 Videos",
            "~50 Chats",
            "One-time purchase",
        ],
    },
}

# ==================== PLAN TIERS ====================
# A purchase only ever moves an account up this ladder
PLAN_TIER_RANKS = {
    "free": 0,
    "flex": 1,
    "personal": 2,
    "creator": 3,
    "studio": 4,
}

DEFAULT_PLAN_TIER = "free"

# ==================== RATE LIMITS (ABUSE PREVENTION) ====================
RATE_LIMITS = {
    "max_charges_per_minute": 30,
    "max_video_charges": 5,
    "video_window_seconds": 600,
}

# ==================== ERROR CODES ====================
ERROR_CODES = {
    "INSUFFICIENT_CREDITS": "Not enough credits. Please top up to continue.",
    "UNKNOWN_TOOL": "This tool is not available for purchase with credits.",
    "UNKNOWN_PLAN": "Unknown plan.",
    "RATE_LIMIT": "Too many requests. Please wait a moment and try again.",
    "ACCOUNT_NOT_PROVISIONED": "Credit account not initialized. Please sign in again.",
    "EMAIL_ALREADY_BOUND": "This email is already linked to another account.",
    "LEDGER_UNAVAILABLE": "Credit ledger temporarily unavailable. Please retry.",
    "PAYMENT_NOT_COMPLETED": "Payment not completed.",
    "OWNERSHIP_MISMATCH": "This payment does not belong to you.",
    "PAYMENT_PROVIDER_ERROR": "Payment provider unavailable. Please retry.",
    "INVALID_SIGNATURE": "Invalid webhook signature.",
}

# ==================== STRIPE CONFIGURATION ====================
STRIPE_CHECKOUT_COMPLETED_EVENT = "checkout.session.completed"
STRIPE_PAID_STATUS = "paid"


def frontend_url() -> str:
    return os.environ.get("FRONTEND_URL", "http://localhost:3000").rstrip("/")


def checkout_success_url(plan_id: str) -> str:
    # Stripe substitutes {CHECKOUT_SESSION_ID} itself
    return f"{frontend_url()}/?payment=success&plan={plan_id}&session_id={{CHECKOUT_SESSION_ID}}"


def checkout_cancel_url() -> str:
    return f"{frontend_url()}/?payment=canceled"
