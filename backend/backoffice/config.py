# backend/backoffice/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/backoffice.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///backoffice.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Products in this category may be sold from operator-chosen batches
    FRESH_CATEGORY = os.environ.get("FRESH_CATEGORY", "fresh")

    # Fresh auto-promotion: discount applied to batches expiring within the window
    FRESH_PROMOTION_DISCOUNT_PERCENT = int(os.environ.get("FRESH_PROMOTION_DISCOUNT_PERCENT", "30"))
    FRESH_PROMOTION_WINDOW_HOURS = int(os.environ.get("FRESH_PROMOTION_WINDOW_HOURS", "48"))

    # Order discount (percent) resolved from the customer tier at order creation
    CUSTOMER_TIER_DISCOUNTS = {
        "guest": 0,
        "retail": 10,
        "wholesale": 15,
        "vip": 20,
    }
