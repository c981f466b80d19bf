"""
License Tracker — Expiry Status Classification & Summaries

Everything here is a pure function of its inputs. "now" is always passed in;
`local_now` exists only for callers at the edge (CLI, services).
"""
from __future__ import annotations
import logging
import math
from datetime import date, datetime, time
from typing import Iterable, Optional, Union
from zoneinfo import ZoneInfo

from models import (
    ExpiryStatus, FeatureEntry, LicenseSummary, ParsedLicense,
    ProductStatus, StatusResult,
)

logger = logging.getLogger(__name__)

SOON_DAYS = 7
WARNING_DAYS = 30

Now = Union[date, datetime]


def local_now(tz_name: str) -> datetime:
    return datetime.now(ZoneInfo(tz_name))


def _as_date(value: Union[date, str]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


def days_until(expiry_date: Union[date, str], now: Now) -> int:
    """Whole days from now to expiry midnight, truncated toward zero."""
    expiry = _as_date(expiry_date)
    if isinstance(now, datetime):
        expiry_start = datetime.combine(expiry, time.min, tzinfo=now.tzinfo)
        return math.trunc((expiry_start - now).total_seconds() / 86400)
    return (expiry - now).days


def classify_days(days_left: int) -> ExpiryStatus:
    if days_left < 0:
        return ExpiryStatus.EXPIRED
    if days_left == 0:
        return ExpiryStatus.EXPIRES_TODAY
    if days_left <= SOON_DAYS:
        return ExpiryStatus.EXPIRES_SOON
    if days_left <= WARNING_DAYS:
        return ExpiryStatus.EXPIRES_WARNING
    return ExpiryStatus.ACTIVE


def classify_status(expiry_date: Union[date, str], now: Now) -> StatusResult:
    days_left = days_until(expiry_date, now)
    return StatusResult(status=classify_days(days_left), days_left=days_left)


def document_status(expiry_dates: Iterable[Optional[date]], now: Now) -> ProductStatus:
    """Collapse per-feature statuses into expired / warning / active."""
    status = ProductStatus.ACTIVE
    for d in expiry_dates:
        if d is None:
            continue
        s = classify_status(d, now).status
        if s == ExpiryStatus.EXPIRED:
            return ProductStatus.EXPIRED
        if s != ExpiryStatus.ACTIVE:
            status = ProductStatus.WARNING
    return status


def summarize_features(features: Iterable[FeatureEntry], now: Now) -> LicenseSummary:
    summary = LicenseSummary()
    for f in features:
        summary.total_features += 1
        if f.expiry_date is None:
            summary.undated_features += 1
            continue

        summary.by_status[classify_status(f.expiry_date, now).status] += 1

        if summary.earliest_expiry is None or f.expiry_date < summary.earliest_expiry:
            summary.earliest_expiry = f.expiry_date
        if summary.latest_expiry is None or f.expiry_date > summary.latest_expiry:
            summary.latest_expiry = f.expiry_date
    return summary


def summarize(parsed: ParsedLicense, now: Now) -> LicenseSummary:
    summary = summarize_features(parsed.features, now)
    summary.site_info = parsed.site_info
    summary.part_info = parsed.part_info
    if summary.undated_features:
        logger.warning("%d feature(s) without expiry date excluded from status counts",
                       summary.undated_features)
    return summary
