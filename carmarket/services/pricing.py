from __future__ import annotations

from carmarket.utils.money import format_kes, format_usd_cents


USD_TO_KES_RATE = 150

# Placement fees in USD cents.
LISTING_PRICES = {
    "FEATURED": 1000,
    "PREMIUM": 2500,
    "SPOTLIGHT": 5000,
    "FEATURED_RENTAL": 1500,
    "PREMIUM_FLEET": 3500,
    "SPOTLIGHT_RENTAL": 6000,
}

UPGRADE_DURATIONS = (7, 14, 30)

# USD by duration in days.
UPGRADE_PRICING = {
    "FEATURED": {7: 15, 14: 25, 30: 45},
    "PREMIUM": {7: 25, 14: 45, 30: 75},
    "SPOTLIGHT": {7: 45, 14: 75, 30: 125},
}

UPGRADE_FEATURES = {
    "FEATURED": {
        "name": "Featured Listing",
        "description": "Enhanced visibility with blue badge",
        "benefits": [
            'Blue "Featured" badge',
            "Higher search ranking",
            "Appears in featured carousel",
            "2x more visibility",
        ],
    },
    "PREMIUM": {
        "name": "Premium Listing",
        "description": "Priority placement with purple badge",
        "benefits": [
            'Purple "Premium" badge',
            "Priority search placement",
            "Featured in premium section",
            "Advanced analytics",
            "3x more visibility",
        ],
    },
    "SPOTLIGHT": {
        "name": "Spotlight Listing",
        "description": "Top placement with gold badge and glow effect",
        "benefits": [
            'Gold "Spotlight" badge with glow',
            "Top search placement",
            "Homepage spotlight section",
            "Premium analytics dashboard",
            "Priority customer support",
            "5x more visibility",
        ],
    },
}

# Days a listing stays live after creation or extension, by tier.
EXPIRY_DAYS = {
    "free": 30,
    "featured": 60,
    "premium": 90,
    "spotlight": 120,
}

FREE_LISTING_LIMIT = 5

SUBSCRIPTION_PLANS = {
    "starter": {
        "name": "Starter",
        "price": {"monthly": 29, "yearly": 290},
        "features": {
            "listings": 10,
            "photos": 5,
            "videos": 0,
            "support": "basic",
            "analytics": "basic",
            "api": False,
            "custom_branding": False,
        },
    },
    "professional": {
        "name": "Professional",
        "price": {"monthly": 79, "yearly": 790},
        "features": {
            "listings": 50,
            "photos": 15,
            "videos": 3,
            "support": "priority",
            "analytics": "advanced",
            "api": True,
            "custom_branding": False,
        },
    },
    "enterprise": {
        "name": "Enterprise",
        "price": {"monthly": 199, "yearly": 1990},
        "features": {
            "listings": -1,
            "photos": -1,
            "videos": -1,
            "support": "24/7",
            "analytics": "premium",
            "api": True,
            "custom_branding": True,
        },
    },
}

BILLING_CYCLES = ("monthly", "yearly")


def usd_cents_to_kes(cents: int) -> int:
    return int(round((int(cents or 0) / 100.0) * USD_TO_KES_RATE))


def price_row(listing_type: str) -> dict | None:
    key = (listing_type or "").strip().upper()
    cents = LISTING_PRICES.get(key)
    if cents is None:
        return None
    kes = usd_cents_to_kes(cents)
    return {
        "listing_type": key,
        "usd_cents": cents,
        "usd": format_usd_cents(cents),
        "kes": kes,
        "kes_formatted": format_kes(kes),
    }


def pricing_table() -> list[dict]:
    return [price_row(key) for key in LISTING_PRICES]


def upgrade_price_usd(listing_type: str, duration: int) -> int | None:
    table = UPGRADE_PRICING.get((listing_type or "").strip().upper())
    if not table:
        return None
    return table.get(int(duration))


def tier_for_listing_type(listing_type: str) -> str:
    """FEATURED_RENTAL -> featured, PREMIUM_FLEET -> premium."""
    key = (listing_type or "").strip().upper()
    for suffix in ("_RENTAL", "_FLEET"):
        if key.endswith(suffix):
            key = key[: -len(suffix)]
    return key.lower()


def expiry_days(listing_type: str) -> int:
    return EXPIRY_DAYS.get((listing_type or "free").strip().lower(), EXPIRY_DAYS["free"])


def plan_price_usd(plan: str, billing_cycle: str) -> int | None:
    row = SUBSCRIPTION_PLANS.get((plan or "").strip().lower())
    if not row:
        return None
    return row["price"].get((billing_cycle or "").strip().lower())


def plan_listing_limit(plan: str | None) -> int:
    row = SUBSCRIPTION_PLANS.get((plan or "").strip().lower())
    if not row:
        return FREE_LISTING_LIMIT
    return int(row["features"]["listings"])
