"""Membership payment-period reconciliation.

A membership is billed once per plan duration: period ``k`` starts on
``start_date + k * duration_days`` and lasts ``duration_days`` days. A
period is *expected* once it has started (its start is on or before
``today``) and it starts before the membership's ``end_date``.

Payments are tagged with a ``YYYY-MM`` payment month (or fall back to
the month of their payment date). A completed, non-partial payment
covers one period when its month is one of the calendar months the
period touches. Matching walks periods and payments in chronological
order and always hands a period the earliest usable payment, so each
payment covers at most one period and each period at most one payment.

Everything here is pure: callers pass the rows they already loaded and
an explicit ``today`` when they need deterministic results.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from dateutil.relativedelta import relativedelta

logger = logging.getLogger("gymdesk.billing")

MONTH_NAMES = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]
INACTIVE_CLIENT_STATUSES = {"inactive", "suspended"}
ACTIVE_MEMBERSHIP_STATES = {"active", "upcoming_expiry"}


@dataclass
class BillingPeriod:
    index: int
    start: date
    end: date
    months: List[str]
    payment_id: Optional[int] = None

    @property
    def month(self) -> str:
        return self.months[0]

    @property
    def is_covered(self) -> bool:
        return self.payment_id is not None


@dataclass
class PaymentStatus:
    is_up_to_date: bool = True
    is_overdue: bool = False
    periods_paid: int = 0
    periods_owed: int = 0
    periods_prepaid: int = 0
    total_owed: float = 0.0
    partial_credit: float = 0.0
    owed_months: List[str] = field(default_factory=list)
    next_payment_date: Optional[date] = None
    next_payment_month: Optional[str] = None
    last_payment_date: Optional[date] = None
    last_payment_month: Optional[str] = None
    period_label: str = "month"
    period_label_singular: str = "month"
    period_label_plural: str = "months"
    days_owed: int = 0
    days_owed_label: str = "days"


# -- month tags ---------------------------------------------------------------

def month_key(d: date) -> str:
    """Return the `YYYY-MM` tag of a date."""
    return f"{d.year:04d}-{d.month:02d}"


def parse_month(tag: str) -> date:
    """Parse a `YYYY-MM` tag into the first day of that month."""
    parts = tag.split("-") if isinstance(tag, str) else []
    if len(parts) != 2 or len(parts[0]) != 4 or len(parts[1]) != 2 or not all(p.isdigit() for p in parts):
        raise ValueError(f"invalid payment month: {tag!r}")
    try:
        return date(int(parts[0]), int(parts[1]), 1)
    except ValueError:
        raise ValueError(f"invalid payment month: {tag!r}") from None


def add_months(tag: str, n: int) -> str:
    return month_key(parse_month(tag) + relativedelta(months=n))


def current_month(today: Optional[date] = None) -> str:
    return month_key(today or date.today())


def next_month(tag: Optional[str] = None, today: Optional[date] = None) -> str:
    """Month after `tag`, or after the current month when no tag is given."""
    return add_months(tag or current_month(today), 1)


def format_month(tag: str) -> str:
    """Human readable month, e.g. `2024-01` -> `January 2024`."""
    d = parse_month(tag)
    return f"{MONTH_NAMES[d.month - 1]} {d.year}"


def months_between(start: date, end: date) -> List[str]:
    """All month tags from `start` to `end`, both inclusive."""
    out = []
    cursor = start.replace(day=1)
    while cursor <= end:
        out.append(month_key(cursor))
        cursor = cursor + relativedelta(months=1)
    return out


# -- labels -------------------------------------------------------------------

def period_labels(duration_days: int) -> Dict[str, str]:
    """Singular/plural names for one billing period of a plan."""
    if duration_days == 1:
        return {"singular": "day", "plural": "day"}
    if duration_days < 7:
        return {"singular": "day", "plural": "days"}
    if duration_days == 7:
        return {"singular": "week", "plural": "weeks"}
    if duration_days < 30:
        return {"singular": "day", "plural": "days"}
    if duration_days == 30:
        return {"singular": "month", "plural": "months"}
    if duration_days < 60:
        return {"singular": "day", "plural": "days"}
    return {"singular": "month", "plural": "months"}


def days_owed_label(days_owed: int) -> str:
    if days_owed >= 365:
        return "year" if days_owed // 365 == 1 else "years"
    if days_owed == 1:
        return "day"
    return "days"


# -- periods ------------------------------------------------------------------

def membership_end_date(start: date, duration_days: int, periods: int = 1) -> date:
    """End date of a membership covering `periods` billing periods."""
    if duration_days < 1:
        raise ValueError("duration_days must be >= 1")
    if periods < 1:
        raise ValueError("periods must be >= 1")
    return start + timedelta(days=duration_days * periods)


def _period(index: int, start: date, duration_days: int) -> BillingPeriod:
    p_start = start + timedelta(days=index * duration_days)
    p_end = p_start + timedelta(days=duration_days - 1)
    return BillingPeriod(index=index, start=p_start, end=p_end, months=months_between(p_start, p_end))


def billing_periods(start: date, end: date, duration_days: int, today: Optional[date] = None) -> List[BillingPeriod]:
    """Return the billing periods that have started by `today`.

    A membership that has not started yet, or whose end is not after its
    start, expects no periods.
    """
    if duration_days < 1:
        raise ValueError("duration_days must be >= 1")
    today = today or date.today()
    periods = []
    index = 0
    while True:
        period = _period(index, start, duration_days)
        if period.start > today or period.start >= end:
            break
        periods.append(period)
        index += 1
    return periods


def payment_month_of(payment) -> str:
    """The month a payment is tagged with, inferred from its date when missing."""
    if getattr(payment, "payment_month", None):
        return payment.payment_month
    return month_key(payment.payment_date)


def collected_amount(payment) -> float:
    """Money actually received; mixed payments count both halves."""
    split = getattr(payment, "split_payment", None)
    if split:
        return float(split.get("cash", 0) or 0) + float(split.get("transfer", 0) or 0)
    return float(payment.amount)


def _match(periods: Sequence[BillingPeriod], payments: Sequence, start_at: int = 0) -> int:
    """Assign payments (sorted by month) to periods in place.

    Returns the index of the first payment that was not consumed.
    """
    i = start_at
    for period in periods:
        first, last = period.months[0], period.months[-1]
        while i < len(payments) and payment_month_of(payments[i]) < first:
            i += 1
        if i < len(payments) and payment_month_of(payments[i]) <= last:
            period.payment_id = payments[i].id
            i += 1
    return i


# -- status -------------------------------------------------------------------

def _empty_status() -> PaymentStatus:
    return PaymentStatus()


def calculate_payment_status(client, membership, membership_type, payments: Iterable, today: Optional[date] = None) -> PaymentStatus:
    """Reconcile a membership's expected billing periods against its payments.

    `payments` may contain rows of other clients or memberships; only the
    completed payments of this client for this membership are used.
    """
    if membership is None or membership_type is None:
        return _empty_status()

    today = today or date.today()
    duration = int(membership_type.duration_days)
    price = float(membership_type.price)

    eligible = [
        p for p in payments
        if p.client_id == client.id and p.membership_id == membership.id and p.status == "completed"
    ]
    full = sorted(
        (p for p in eligible if not getattr(p, "is_partial", False)),
        key=lambda p: (payment_month_of(p), p.payment_date, p.id or 0),
    )
    partial_credit = round(sum(collected_amount(p) for p in eligible if getattr(p, "is_partial", False)), 2)

    periods = billing_periods(membership.start_date, membership.end_date, duration, today)
    consumed = _match(periods, full)

    owed = [p for p in periods if not p.is_covered]
    periods_paid = len(periods) - len(owed)
    periods_owed = len(owed)

    # look ahead: prepaid periods push the next due date forward
    prepaid = 0
    next_period: Optional[BillingPeriod] = owed[0] if owed else None
    if next_period is None:
        index = len(periods)
        while True:
            candidate = _period(index, membership.start_date, duration)
            if candidate.start >= membership.end_date:
                break
            consumed = _match([candidate], full, consumed)
            if not candidate.is_covered:
                next_period = candidate
                break
            prepaid += 1
            index += 1

    unmatched = len(full) - periods_paid - prepaid
    if unmatched:
        logger.debug("membership %s: %d payment(s) did not match a billing period", membership.id, unmatched)

    last_payment = max(eligible, key=lambda p: (p.payment_date, p.id or 0)) if eligible else None
    labels = period_labels(duration)
    days_owed = periods_owed * duration

    return PaymentStatus(
        is_up_to_date=periods_owed == 0,
        is_overdue=periods_owed > 0,
        periods_paid=periods_paid,
        periods_owed=periods_owed,
        periods_prepaid=prepaid,
        total_owed=max(0.0, round(periods_owed * price - partial_credit, 2)),
        partial_credit=partial_credit,
        owed_months=[p.month for p in owed],
        next_payment_date=next_period.start if next_period else None,
        next_payment_month=next_period.month if next_period else None,
        last_payment_date=last_payment.payment_date if last_payment else None,
        last_payment_month=payment_month_of(last_payment) if last_payment else None,
        period_label=labels["singular"] if periods_owed == 1 else labels["plural"],
        period_label_singular=labels["singular"],
        period_label_plural=labels["plural"],
        days_owed=days_owed,
        days_owed_label=days_owed_label(days_owed),
    )


def calculate_total_overdue_debt(memberships: Iterable, membership_types: Iterable, payments: Sequence, clients: Iterable, today: Optional[date] = None) -> float:
    """Sum what every client with pending periods owes.

    Memberships whose plan or client is missing are skipped, as are
    clients that are inactive or suspended.
    """
    today = today or date.today()
    types_by_id = {t.id: t for t in membership_types}
    clients_by_id = {c.id: c for c in clients}
    total = 0.0
    for membership in memberships:
        membership_type = types_by_id.get(membership.membership_type_id)
        client = clients_by_id.get(membership.client_id)
        if membership_type is None or client is None:
            continue
        if client.status in INACTIVE_CLIENT_STATUSES:
            continue
        status = calculate_payment_status(client, membership, membership_type, payments, today)
        if status.periods_owed > 0:
            total += status.total_owed
    return round(total, 2)


def week_start(today: Optional[date] = None) -> date:
    """The Sunday that starts the week containing `today`."""
    today = today or date.today()
    return today - timedelta(days=(today.weekday() + 1) % 7)


def calculate_weekly_revenue(payments: Iterable, today: Optional[date] = None) -> float:
    """Money collected by completed payments since the start of this week."""
    start = week_start(today)
    return round(sum(
        collected_amount(p) for p in payments
        if p.status == "completed" and p.payment_date >= start
    ), 2)


def membership_state(membership, today: Optional[date] = None, warning_days: int = 7) -> str:
    """Lifecycle state derived from the membership's end date."""
    if membership.status == "cancelled":
        return "cancelled"
    today = today or date.today()
    if membership.end_date < today:
        return "expired"
    if (membership.end_date - today).days <= warning_days:
        return "upcoming_expiry"
    return "active"
