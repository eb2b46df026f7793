from datetime import date
from types import SimpleNamespace

import pytest

from gymdesk import billing


def _client(client_id=1, status='active'):
    return SimpleNamespace(id=client_id, status=status)


def _plan(plan_id=1, price=50000, duration_days=30):
    return SimpleNamespace(id=plan_id, price=price, duration_days=duration_days)


def _membership(start, end, membership_id=1, client_id=1, plan_id=1, status='active'):
    return SimpleNamespace(id=membership_id, client_id=client_id, membership_type_id=plan_id,
                           start_date=start, end_date=end, status=status)


def _payment(payment_id, month, amount=50000, payment_date=None, status='completed', is_partial=False,
             split=None, client_id=1, membership_id=1):
    return SimpleNamespace(
        id=payment_id, client_id=client_id, membership_id=membership_id, amount=amount,
        payment_date=payment_date or billing.parse_month(month), payment_month=month,
        status=status, is_partial=is_partial, split_payment=split, method='mixed' if split else 'cash',
    )


# start 2024-01-10, 30-day periods:
# P0 Jan 10 - Feb 8, P1 Feb 9 - Mar 9, P2 Mar 10 - Apr 8, P3 Apr 9 - May 8
START = date(2024, 1, 10)
END = date(2025, 1, 10)


def test_month_helpers():
    assert billing.month_key(date(2024, 3, 5)) == '2024-03'
    assert billing.add_months('2024-12', 1) == '2025-01'
    assert billing.add_months('2024-01', -1) == '2023-12'
    assert billing.next_month('2024-12') == '2025-01'
    assert billing.next_month(today=date(2024, 5, 20)) == '2024-06'
    assert billing.current_month(date(2024, 5, 20)) == '2024-05'
    assert billing.format_month('2024-01') == 'January 2024'
    assert billing.months_between(date(2024, 1, 15), date(2024, 3, 1)) == ['2024-01', '2024-02', '2024-03']


@pytest.mark.parametrize('tag', ['2024-13', '2024-1', 'abc', '', None, '24-01'])
def test_parse_month_rejects_bad_tags(tag):
    with pytest.raises(ValueError):
        billing.parse_month(tag)


def test_period_labels_and_days_owed_label():
    assert billing.period_labels(1) == {'singular': 'day', 'plural': 'day'}
    assert billing.period_labels(7) == {'singular': 'week', 'plural': 'weeks'}
    assert billing.period_labels(15) == {'singular': 'day', 'plural': 'days'}
    assert billing.period_labels(30) == {'singular': 'month', 'plural': 'months'}
    assert billing.period_labels(45) == {'singular': 'day', 'plural': 'days'}
    assert billing.period_labels(90) == {'singular': 'month', 'plural': 'months'}
    assert billing.days_owed_label(1) == 'day'
    assert billing.days_owed_label(5) == 'days'
    assert billing.days_owed_label(365) == 'year'
    assert billing.days_owed_label(800) == 'years'


def test_billing_periods_respect_today_and_exclusive_end():
    end = billing.membership_end_date(date(2024, 1, 1), 30, 3)
    assert end == date(2024, 3, 31)
    assert len(billing.billing_periods(date(2024, 1, 1), end, 30, today=date(2024, 2, 15))) == 2
    periods = billing.billing_periods(date(2024, 1, 1), end, 30, today=date(2024, 12, 1))
    assert [p.start for p in periods] == [date(2024, 1, 1), date(2024, 1, 31), date(2024, 3, 1)]
    assert periods[1].months == ['2024-01', '2024-02']
    assert billing.billing_periods(date(2024, 5, 1), date(2024, 6, 1), 30, today=date(2024, 4, 1)) == []
    with pytest.raises(ValueError):
        billing.membership_end_date(date(2024, 1, 1), 0)


def test_status_up_to_date():
    payments = [_payment(1, '2024-01'), _payment(2, '2024-02'), _payment(3, '2024-03')]
    status = billing.calculate_payment_status(_client(), _membership(START, END), _plan(), payments, date(2024, 3, 15))
    assert status.is_up_to_date and not status.is_overdue
    assert status.periods_paid == 3
    assert status.periods_owed == 0
    assert status.total_owed == 0
    assert status.next_payment_date == date(2024, 4, 9)
    assert status.next_payment_month == '2024-04'
    assert status.last_payment_month == '2024-03'


def test_status_overdue_lists_owed_months():
    status = billing.calculate_payment_status(
        _client(), _membership(START, END), _plan(), [_payment(1, '2024-01')], date(2024, 3, 15))
    assert status.is_overdue
    assert status.periods_paid == 1
    assert status.periods_owed == 2
    assert status.total_owed == 100000
    assert status.owed_months == ['2024-02', '2024-03']
    assert status.next_payment_date == date(2024, 2, 9)
    assert status.days_owed == 60
    assert status.days_owed_label == 'days'
    assert status.period_label == 'months'


def test_partial_payments_reduce_debt_without_covering_periods():
    payments = [_payment(1, '2024-01'), _payment(2, '2024-02', amount=20000, is_partial=True)]
    status = billing.calculate_payment_status(_client(), _membership(START, END), _plan(), payments, date(2024, 3, 15))
    assert status.periods_owed == 2
    assert status.partial_credit == 20000
    assert status.total_owed == 80000


def test_prepaid_periods_push_next_payment_forward():
    payments = [_payment(1, '2024-01'), _payment(2, '2024-02'), _payment(3, '2024-03')]
    status = billing.calculate_payment_status(_client(), _membership(START, END), _plan(), payments, date(2024, 1, 20))
    assert status.periods_paid == 1
    assert status.periods_prepaid == 2
    assert status.next_payment_date == date(2024, 4, 9)
    assert status.next_payment_month == '2024-04'


def test_only_completed_payments_of_this_membership_count():
    payments = [
        _payment(1, '2024-01', status='cancelled'),
        _payment(2, '2024-01', membership_id=99),
        _payment(3, '2024-01', client_id=42),
    ]
    status = billing.calculate_payment_status(_client(), _membership(START, END), _plan(), payments, date(2024, 1, 20))
    assert status.periods_owed == 1
    assert status.last_payment_date is None


def test_payment_tagged_before_membership_is_ignored():
    status = billing.calculate_payment_status(
        _client(), _membership(START, END), _plan(), [_payment(1, '2023-12')], date(2024, 1, 20))
    assert status.periods_owed == 1
    assert status.owed_months == ['2024-01']


def test_membership_not_started_expects_nothing():
    status = billing.calculate_payment_status(
        _client(), _membership(date(2024, 6, 1), date(2024, 7, 1)), _plan(), [], date(2024, 5, 1))
    assert status.is_up_to_date
    assert status.periods_owed == 0
    assert status.next_payment_date == date(2024, 6, 1)


def test_end_date_closes_billing():
    membership = _membership(date(2024, 1, 1), date(2024, 1, 31))
    status = billing.calculate_payment_status(_client(), membership, _plan(), [_payment(1, '2024-01')], date(2024, 6, 1))
    assert status.periods_paid == 1
    assert status.periods_owed == 0
    assert status.next_payment_date is None


def test_missing_plan_gives_empty_status():
    status = billing.calculate_payment_status(_client(), _membership(START, END), None, [], date(2024, 3, 15))
    assert status == billing.PaymentStatus()


def test_collected_amount_counts_split_halves():
    p = _payment(1, '2024-01', amount=50000, split={'cash': 30000, 'transfer': 20000})
    assert billing.collected_amount(p) == 50000


def test_total_overdue_debt_skips_inactive_clients_and_missing_plans():
    clients = [_client(1), _client(2, status='inactive'), _client(3)]
    memberships = [
        _membership(START, END, membership_id=1, client_id=1),
        _membership(START, END, membership_id=2, client_id=2),
        _membership(START, END, membership_id=3, client_id=3, plan_id=77),
    ]
    payments = [_payment(1, '2024-01')]
    total = billing.calculate_total_overdue_debt(memberships, [_plan()], payments, clients, date(2024, 3, 15))
    assert total == 100000


def test_weekly_revenue_starts_on_sunday():
    today = date(2024, 3, 13)  # Wednesday
    assert billing.week_start(today) == date(2024, 3, 10)
    assert billing.week_start(date(2024, 3, 10)) == date(2024, 3, 10)
    payments = [
        _payment(1, '2024-03', amount=30000, payment_date=date(2024, 3, 10)),
        _payment(2, '2024-03', amount=20000, payment_date=date(2024, 3, 12), split={'cash': 10000, 'transfer': 10000}),
        _payment(3, '2024-03', amount=50000, payment_date=date(2024, 3, 9)),
        _payment(4, '2024-03', amount=1000, payment_date=date(2024, 3, 11), status='cancelled'),
    ]
    assert billing.calculate_weekly_revenue(payments, today) == 50000


def test_membership_state():
    today = date(2024, 3, 13)
    assert billing.membership_state(_membership(START, date(2024, 3, 12)), today) == 'expired'
    assert billing.membership_state(_membership(START, today), today) == 'upcoming_expiry'
    assert billing.membership_state(_membership(START, date(2024, 3, 20)), today) == 'upcoming_expiry'
    assert billing.membership_state(_membership(START, date(2024, 3, 21)), today) == 'active'
    assert billing.membership_state(_membership(START, date(2024, 3, 21), status='cancelled'), today) == 'cancelled'


@pytest.mark.parametrize('duration, today, tagged, paid, owed, prepaid', [
    # weekly plan from Mar 1: periods Mar 1, Mar 8, Mar 15 have started by Mar 20
    (7, date(2024, 3, 20), 3, 3, 0, 0),
    (7, date(2024, 3, 20), 2, 2, 1, 0),
    (7, date(2024, 3, 20), 4, 3, 0, 1),
    # day pass: Mar 1, 2, 3
    (1, date(2024, 3, 3), 3, 3, 0, 0),
    (1, date(2024, 3, 3), 1, 1, 2, 0),
])
def test_short_plans_use_one_payment_per_period_within_a_month(duration, today, tagged, paid, owed, prepaid):
    payments = [_payment(i, '2024-03') for i in range(1, tagged + 1)]
    status = billing.calculate_payment_status(
        _client(), _membership(date(2024, 3, 1), END), _plan(duration_days=duration), payments, today)
    assert status.periods_paid == paid
    assert status.periods_owed == owed
    assert status.periods_prepaid == prepaid
    assert status.total_owed == owed * 50000


@pytest.mark.parametrize('duration', [0, -5])
def test_billing_periods_reject_non_positive_duration(duration):
    with pytest.raises(ValueError):
        billing.billing_periods(START, END, duration, today=date(2024, 6, 1))


@pytest.mark.parametrize('end', [START, date(2024, 1, 1)])
def test_billing_periods_empty_when_end_not_after_start(end):
    assert billing.billing_periods(START, end, 30, today=date(2024, 6, 1)) == []
    status = billing.calculate_payment_status(
        _client(), _membership(START, end), _plan(), [_payment(1, '2024-01')], date(2024, 6, 1))
    assert status.periods_paid == 0
    assert status.periods_owed == 0
    assert status.next_payment_date is None


@pytest.mark.parametrize('months, today', [
    ([], date(2024, 3, 15)),
    (['2024-01'], date(2024, 3, 15)),
    (['2024-02', '2024-02', '2024-02'], date(2024, 4, 20)),
    (['2023-11', '2024-03', '2024-05'], date(2024, 5, 1)),
    (['2024-01', '2024-02', '2024-03', '2024-04'], date(2024, 2, 1)),
    (['2024-06'], date(2024, 12, 31)),
])
def test_paid_and_owed_always_add_up_to_expected_periods(months, today):
    payments = [_payment(i, month) for i, month in enumerate(months, start=1)]
    status = billing.calculate_payment_status(_client(), _membership(START, END), _plan(), payments, today)
    expected = billing.billing_periods(START, END, 30, today)
    assert status.periods_paid + status.periods_owed == len(expected)
    assert status.periods_paid <= len(payments)
