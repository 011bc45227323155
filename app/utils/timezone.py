# FILE: app/utils/timezone.py
from __future__ import annotations

import os
from datetime import datetime, date
from zoneinfo import ZoneInfo

HOSPITAL_TZ = ZoneInfo(os.getenv("APP_TIMEZONE", "Asia/Kolkata"))


def now_local() -> datetime:
    """
    Returns a *naive* datetime in the hospital's timezone.
    DateTime columns are naive (MySQL DATETIME).
    """
    return datetime.now(HOSPITAL_TZ).replace(tzinfo=None)


def today_local() -> date:
    return now_local().date()
