from datetime import date, timedelta

from fastapi.testclient import TestClient
from gymdesk import billing
from gymdesk.main import app

client = TestClient(app)


def _setup(headers, start_offset_days=45):
    """Monthly-basic plan plus one client whose membership started `start_offset_days` ago."""
    plan = client.post('/api/membership-types/templates/monthly-basic', headers=headers).json()
    c = client.post('/api/clients', json={'name': 'Maria Lopez', 'phone': '3001234567'}, headers=headers).json()
    start = date.today() - timedelta(days=start_offset_days)
    m = client.post('/api/memberships', json={
        'client_id': c['id'], 'membership_type_id': plan['id'], 'start_date': start.isoformat(), 'periods': 12,
    }, headers=headers)
    assert m.status_code == 201, m.text
    return plan, c, m.json(), start


def _pay(headers, c, m, month, amount=80000, **extra):
    return client.post('/api/payments', json={
        'client_id': c['id'], 'membership_id': m['id'], 'amount': amount, 'method': 'cash', 'payment_month': month, **extra,
    }, headers=headers)


def test_client_crud_and_search(new_gym):
    headers, _ = new_gym()
    r = client.post('/api/clients', json={'name': 'Juan Perez', 'email': 'juan@example.com', 'document_id': 'CC123'},
                    headers=headers)
    assert r.status_code == 201
    cid = r.json()['id']
    assert r.json()['status'] == 'active'
    assert [x['id'] for x in client.get('/api/clients', params={'q': 'cc12'}, headers=headers).json()] == [cid]
    assert client.get('/api/clients', params={'q': 'nobody'}, headers=headers).json() == []

    u = client.patch(f'/api/clients/{cid}', json={'status': 'suspended', 'notes': 'knee injury'}, headers=headers)
    assert u.status_code == 200
    assert u.json()['status'] == 'suspended'
    assert [x['id'] for x in client.get('/api/clients', params={'status': 'suspended'}, headers=headers).json()] == [cid]

    assert client.post('/api/clients', json={'name': ''}, headers=headers).status_code == 422
    assert client.patch(f'/api/clients/{cid}', json={'status': 'gone'}, headers=headers).status_code == 422

    assert client.delete(f'/api/clients/{cid}', headers=headers).status_code == 204
    assert client.get(f'/api/clients/{cid}', headers=headers).status_code == 404


def test_plan_templates(new_gym):
    headers, _ = new_gym()
    templates = client.get('/api/membership-types/templates', headers=headers).json()
    assert {'day-pass', 'weekly', 'monthly-basic', 'monthly-full', 'quarterly', 'annual'} <= {t['id'] for t in templates}
    first = client.post('/api/membership-types/templates/weekly', headers=headers)
    assert first.status_code == 201
    assert first.json()['suggested_template_id'] == 'weekly'
    assert first.json()['duration_days'] == 7
    second = client.post('/api/membership-types/templates/annual', headers=headers).json()
    assert second['sort_order'] == 1
    assert client.post('/api/membership-types/templates/unknown', headers=headers).status_code == 404
    assert client.post('/api/membership-types', json={'name': 'Bad', 'price': 10, 'duration_days': 0},
                       headers=headers).status_code == 422


def test_payment_status_tracks_periods(new_gym):
    headers, _ = new_gym()
    plan, c, m, start = _setup(headers)
    assert m['status'] == 'active'
    assert m['end_date'] == (start + timedelta(days=360)).isoformat()

    assert _pay(headers, c, m, billing.month_key(start)).status_code == 201
    status = client.get(f"/api/memberships/{m['id']}/payment-status", headers=headers).json()
    assert status['periods_paid'] == 1
    assert status['periods_owed'] == 1
    assert status['total_owed'] == 80000
    assert status['is_overdue'] is True
    assert status['next_payment_date'] == (start + timedelta(days=30)).isoformat()

    debtors = client.get('/api/payments/debtors', headers=headers).json()
    assert [d['client_id'] for d in debtors] == [c['id']]
    assert debtors[0]['periods_owed'] == 1

    assert _pay(headers, c, m, billing.month_key(start + timedelta(days=30))).status_code == 201
    status = client.get(f"/api/memberships/{m['id']}/payment-status", headers=headers).json()
    assert status['is_up_to_date'] is True
    assert status['total_owed'] == 0
    assert client.get('/api/payments/debtors', headers=headers).json() == []

    detail = client.get(f"/api/clients/{c['id']}", headers=headers).json()
    assert detail['memberships'][0]['payment_status']['periods_paid'] == 2
    assert len(detail['payments']) == 2


def test_payment_validation_and_split(new_gym):
    headers, _ = new_gym()
    _plan, c, m, start = _setup(headers)
    month = billing.month_key(start)
    bad_split = _pay(headers, c, m, month, amount=50000, split_payment={'cash': 20000, 'transfer': 20000})
    assert bad_split.status_code == 400
    assert _pay(headers, c, m, '2024-13').status_code == 422
    assert _pay(headers, c, m, month, amount=0).status_code == 422

    split = _pay(headers, c, m, month, amount=80000, split_payment={'cash': 50000, 'transfer': 30000})
    assert split.status_code == 201
    assert split.json()['method'] == 'mixed'

    default_month = client.post('/api/payments', json={'client_id': c['id'], 'amount': 1000}, headers=headers).json()
    assert default_month['payment_month'] == billing.month_key(date.today())
    assert default_month['status'] == 'completed'

    other = client.post('/api/clients', json={'name': 'Someone Else'}, headers=headers).json()
    wrong = client.post('/api/payments', json={'client_id': other['id'], 'membership_id': m['id'], 'amount': 1000},
                        headers=headers)
    assert wrong.status_code == 400


def test_update_and_cancel_payment(new_gym):
    headers, _ = new_gym()
    _plan, c, m, start = _setup(headers)
    p = _pay(headers, c, m, billing.month_key(start)).json()
    u = client.patch(f"/api/payments/{p['id']}", json={'amount': 75000, 'notes': 'discount'}, headers=headers)
    assert u.status_code == 200
    assert u.json()['amount'] == 75000
    assert u.json()['notes'] == 'discount'

    cancelled = client.post(f"/api/payments/{p['id']}/cancel", headers=headers)
    assert cancelled.status_code == 200
    assert cancelled.json()['status'] == 'cancelled'
    assert client.post(f"/api/payments/{p['id']}/cancel", headers=headers).status_code == 409
    status = client.get(f"/api/memberships/{m['id']}/payment-status", headers=headers).json()
    assert status['periods_paid'] == 0


def test_delete_rules_for_clients_and_plans(new_gym):
    headers, _ = new_gym()
    plan, c, m, start = _setup(headers)
    _pay(headers, c, m, billing.month_key(start))
    assert client.delete(f"/api/clients/{c['id']}", headers=headers).status_code == 409
    assert client.delete(f"/api/membership-types/{plan['id']}", headers=headers).status_code == 409
    unused = client.post('/api/membership-types', json={'name': 'Temp', 'price': 1000, 'duration_days': 1},
                         headers=headers).json()
    assert client.delete(f"/api/membership-types/{unused['id']}", headers=headers).status_code == 204


def test_membership_lifecycle(new_gym):
    headers, _ = new_gym()
    plan, c, m, _start = _setup(headers)
    today = date.today()
    bad = client.post('/api/memberships', json={
        'client_id': c['id'], 'membership_type_id': plan['id'],
        'start_date': today.isoformat(), 'end_date': (today - timedelta(days=1)).isoformat(),
    }, headers=headers)
    assert bad.status_code == 400

    old = client.post('/api/memberships', json={
        'client_id': c['id'], 'membership_type_id': plan['id'],
        'start_date': (today - timedelta(days=40)).isoformat(), 'end_date': (today - timedelta(days=10)).isoformat(),
    }, headers=headers).json()
    assert old['status'] == 'expired'
    forced = client.patch(f"/api/memberships/{old['id']}", json={'status': 'active'}, headers=headers)
    assert forced.json()['status'] == 'active'
    r = client.post('/api/memberships/refresh-statuses', headers=headers)
    assert r.status_code == 200
    assert r.json()['changed'] >= 1
    assert client.get(f"/api/memberships/{old['id']}", headers=headers).json()['status'] == 'expired'

    cancelled = client.post(f"/api/memberships/{m['id']}/cancel", headers=headers)
    assert cancelled.json()['status'] == 'cancelled'
    assert client.post(f"/api/memberships/{m['id']}/cancel", headers=headers).status_code == 409
    listed = client.get('/api/memberships', params={'client_id': c['id']}, headers=headers).json()
    assert len(listed) == 2


def test_updates_reject_null_for_required_fields(new_gym):
    headers, _ = new_gym()
    plan, c, m, start = _setup(headers)
    p = _pay(headers, c, m, billing.month_key(start)).json()
    trainer = client.post('/api/trainers', json={'name': 'Coach Null'}, headers=headers).json()
    gym_class = client.post('/api/classes', json={'name': 'Core', 'trainer_id': trainer['id'], 'start_time': '08:00',
                                                  'duration': 30, 'capacity': 5}, headers=headers).json()
    product = client.post('/api/products', json={'name': 'Shaker', 'price': 15000}, headers=headers).json()

    cases = [
        (f"/api/memberships/{m['id']}", {'end_date': None}),
        (f"/api/memberships/{m['id']}", {'start_date': None}),
        (f"/api/membership-types/{plan['id']}", {'is_active': None}),
        (f"/api/membership-types/{plan['id']}", {'includes': None}),
        (f"/api/payments/{p['id']}", {'is_partial': None}),
        (f"/api/payments/{p['id']}", {'amount': None}),
        (f"/api/clients/{c['id']}", {'name': None}),
        (f"/api/trainers/{trainer['id']}", {'is_active': None}),
        (f"/api/classes/{gym_class['id']}", {'capacity': None}),
        (f"/api/classes/{gym_class['id']}", {'days_of_week': None}),
        (f"/api/products/{product['id']}", {'price': None}),
        ('/api/gym', {'payment_methods': None}),
    ]
    for path, body in cases:
        r = client.patch(path, json=body, headers=headers)
        assert r.status_code == 400, (path, body, r.text)
        assert 'cannot be null' in r.json()['detail']

    # nullable columns still accept an explicit null
    cleared = client.patch(f"/api/clients/{c['id']}", json={'phone': None}, headers=headers)
    assert cleared.status_code == 200
    assert cleared.json()['phone'] is None
    assert client.get(f"/api/memberships/{m['id']}", headers=headers).json()['end_date'] == m['end_date']
