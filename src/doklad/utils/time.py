from __future__ import annotations

import datetime as dt


def utc_now_naive() -> dt.datetime:
    """Vrátí aktuální UTC čas jako naive datetime (SQLite sloupce jsou bez zóny)."""
    return dt.datetime.now(dt.UTC).replace(tzinfo=None)


def today() -> dt.date:
    return utc_now_naive().date()


def add_days(day: dt.date, days: int) -> dt.date:
    return day + dt.timedelta(days=int(days))
