"""
Django settings for the pricing engine - Base Configuration.
"""

import os
from pathlib import Path
from typing import Any

# ===============================================================================
# CORE DJANGO SETTINGS
# ===============================================================================

BASE_DIR = Path(__file__).resolve().parent.parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "")

# Application definition
DJANGO_APPS: list[str] = [
    "django.contrib.auth",
    "django.contrib.contenttypes",
]

LOCAL_APPS: list[str] = [
    "apps.promotions",
]

INSTALLED_APPS: list[str] = DJANGO_APPS + LOCAL_APPS

# ===============================================================================
# DATABASE CONFIGURATION
# ===============================================================================

DATABASES: dict[str, dict[str, Any]] = {
    "default": {
        "ENGINE": "django.db.backends.postgresql",
        "NAME": os.environ.get("DB_NAME", "pricing"),
        "USER": os.environ.get("DB_USER", "pricing"),
        "PASSWORD": os.environ.get("DB_PASSWORD", "development_password"),
        "HOST": os.environ.get("DB_HOST", "localhost"),
        "PORT": os.environ.get("DB_PORT", "5432"),
        "CONN_MAX_AGE": 60,
        "OPTIONS": {
            "application_name": "pricing_engine",
        },
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# ===============================================================================
# INTERNATIONALIZATION
# ===============================================================================

LANGUAGE_CODE = "en"
TIME_ZONE = "Europe/Bucharest"
USE_I18N = True
USE_TZ = True

# ===============================================================================
# PRICING ENGINE
# ===============================================================================

# How long a priced cart keeps its promotion/coupon usage slots
PRICING_RESERVATION_TTL_SECONDS = int(os.environ.get("PRICING_RESERVATION_TTL_SECONDS", "900"))

# Attempts on a contended usage counter before pricing fails
PRICING_RESERVE_MAX_ATTEMPTS = int(os.environ.get("PRICING_RESERVE_MAX_ATTEMPTS", "3"))

# "promotions_first": automatic promotions stack before coupons
# "priority": one ranking by priority for promotions and coupons alike
PRICING_COUPON_PRECEDENCE = os.environ.get("PRICING_COUPON_PRECEDENCE", "promotions_first")
