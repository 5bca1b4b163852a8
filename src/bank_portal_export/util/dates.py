from __future__ import annotations

from datetime import date
from typing import Iterator

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta


def parse_date(value: str) -> date:
    """
    Parse CLI/config dates like:
    - "2024-09-01"
    - "09/01/2024"
    - "1 Sep 2024"
    """
    if value is None:
        raise ValueError("parse_date: value is None")
    s = value.strip()
    if not s:
        raise ValueError("parse_date: empty string")
    return date_parser.parse(s, dayfirst=False, yearfirst=True).date()


def month_bounds(year: int, month: int) -> tuple[date, date]:
    start = date(year, month, 1)
    return start, start + relativedelta(day=31)


def iter_months(start: date, end: date) -> Iterator[date]:
    """
    Yield the first day of every calendar month touched by [start, end], in order.
    """
    cur = start.replace(day=1)
    while cur <= end:
        yield cur
        cur = cur + relativedelta(months=1)
