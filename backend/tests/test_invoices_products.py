import re

import pytest
from fastapi.testclient import TestClient
from gymdesk.main import app

client = TestClient(app)


def _product(headers, **overrides):
    body = {'name': 'Protein bar', 'price': 10000, 'category': 'supplement', 'stock': 5, 'low_stock_alert': 3}
    body.update(overrides)
    r = client.post('/api/products', json=body, headers=headers)
    assert r.status_code == 201, r.text
    return r.json()


def _invoice(headers, product, quantity=2, **extra):
    return client.post('/api/invoices', json={
        'items': [
            {'item_type': 'product', 'item_id': product['id'], 'quantity': quantity},
            {'item_type': 'service', 'description': 'Towel rental', 'unit_price': 5000, 'discount': 1000},
        ],
        'tax_rate': 0.19,
        'discount': 500,
        **extra,
    }, headers=headers)


def _stock(headers, product):
    return client.get(f"/api/products/{product['id']}", headers=headers).json()['stock']


def test_invoice_totals_numbering_and_stock(new_gym):
    headers, _ = new_gym()
    product = _product(headers)
    r = _invoice(headers, product)
    assert r.status_code == 201, r.text
    inv = r.json()
    assert re.match(r'^INV-\d{4}-\d{6}$', inv['invoice_number'])
    assert inv['invoice_number'].endswith('000001')
    assert inv['subtotal'] == pytest.approx(24000)
    assert inv['tax'] == pytest.approx(4560)
    assert inv['total'] == pytest.approx(28060)
    assert inv['status'] == 'pending'
    assert [i['total'] for i in inv['items']] == [pytest.approx(20000), pytest.approx(4000)]
    assert inv['items'][0]['description'] == 'Protein bar'
    assert _stock(headers, product) == 3

    second = _invoice(headers, product, quantity=1).json()
    assert second['invoice_number'].endswith('000002')
    assert _stock(headers, product) == 2


def test_insufficient_stock_writes_nothing(new_gym):
    headers, _ = new_gym()
    product = _product(headers, stock=1)
    r = _invoice(headers, product, quantity=3)
    assert r.status_code == 409
    assert _stock(headers, product) == 1
    assert client.get('/api/invoices', headers=headers).json() == []
    assert client.post('/api/invoices', json={'items': []}, headers=headers).status_code == 422


def test_pay_invoice_in_parts(new_gym):
    headers, _ = new_gym()
    product = _product(headers)
    inv = _invoice(headers, product).json()

    assert client.post(f"/api/invoices/{inv['id']}/pay", json={'amount': 999999}, headers=headers).status_code == 400
    part = client.post(f"/api/invoices/{inv['id']}/pay", json={'amount': 10000}, headers=headers)
    assert part.status_code == 201
    assert part.json()['invoice']['status'] == 'partially_paid'
    assert part.json()['payment']['is_partial'] is True

    rest = client.post(f"/api/invoices/{inv['id']}/pay", json={'method': 'transfer'}, headers=headers)
    assert rest.status_code == 201
    assert rest.json()['payment']['amount'] == pytest.approx(18060)
    assert rest.json()['invoice']['status'] == 'paid'

    assert client.post(f"/api/invoices/{inv['id']}/pay", json={}, headers=headers).status_code == 409
    assert client.post(f"/api/invoices/{inv['id']}/cancel", headers=headers).status_code == 409
    detail = client.get(f"/api/invoices/{inv['id']}", headers=headers).json()
    assert len(detail['payments']) == 2


def test_cancel_restocks_and_delete(new_gym):
    headers, _ = new_gym()
    product = _product(headers)
    inv = _invoice(headers, product).json()
    assert _stock(headers, product) == 3
    cancelled = client.post(f"/api/invoices/{inv['id']}/cancel", headers=headers)
    assert cancelled.status_code == 200
    assert cancelled.json()['status'] == 'cancelled'
    assert _stock(headers, product) == 5
    assert client.post(f"/api/invoices/{inv['id']}/pay", json={}, headers=headers).status_code == 409
    assert client.delete(f"/api/invoices/{inv['id']}", headers=headers).status_code == 204
    assert client.get(f"/api/invoices/{inv['id']}", headers=headers).status_code == 404


def test_invoice_for_plan_uses_plan_price(new_gym):
    headers, _ = new_gym()
    c = client.post('/api/clients', json={'name': 'Buyer'}, headers=headers).json()
    plan = client.post('/api/membership-types', json={'name': 'Quarter', 'price': 150000, 'duration_days': 90},
                       headers=headers).json()
    r = client.post('/api/invoices', json={'client_id': c['id'], 'items': [
        {'item_type': 'membership', 'item_id': plan['id']},
    ]}, headers=headers)
    assert r.status_code == 201
    assert r.json()['total'] == pytest.approx(150000)
    assert r.json()['items'][0]['description'] == 'Quarter'
    assert client.get('/api/invoices', params={'client_id': c['id']}, headers=headers).json()[0]['id'] == r.json()['id']


def test_inventory_summary_and_product_validation(new_gym):
    headers, _ = new_gym()
    _product(headers, name='Low', stock=2, low_stock_alert=3, price=1000)
    _product(headers, name='Empty', stock=0, price=500)
    _product(headers, name='Plenty', stock=50, price=100)
    summary = client.get('/api/products/inventory-summary', headers=headers).json()
    assert summary['products'] == 3
    assert summary['low_stock'] == 1
    assert summary['out_of_stock'] == 1
    assert summary['stock_value'] == pytest.approx(2 * 1000 + 50 * 100)
    assert client.post('/api/products', json={'name': 'X', 'price': -1}, headers=headers).status_code == 422
    assert client.post('/api/products', json={'name': 'X', 'price': 1, 'category': 'food'}, headers=headers).status_code == 422
