from datetime import date
import uuid

from fastapi.testclient import TestClient
from gymdesk.main import app

client = TestClient(app)


def _class(headers, **overrides):
    trainer = client.post('/api/trainers', json={'name': 'Coach Rita', 'specialization': 'Spinning'}, headers=headers).json()
    body = {'name': 'Spinning', 'trainer_id': trainer['id'], 'days_of_week': [1, 3, 3, 5], 'start_time': '07:00',
            'duration': 45, 'capacity': 1, 'requires_membership': True}
    body.update(overrides)
    r = client.post('/api/classes', json=body, headers=headers)
    assert r.status_code == 201, r.text
    return trainer, r.json()


def _member(headers, name='Member'):
    c = client.post('/api/clients', json={'name': name}, headers=headers).json()
    plan = client.post('/api/membership-types', json={'name': 'Monthly', 'price': 60000, 'duration_days': 30},
                       headers=headers).json()
    r = client.post('/api/memberships', json={'client_id': c['id'], 'membership_type_id': plan['id']}, headers=headers)
    assert r.status_code == 201
    return c


def test_class_validation(new_gym):
    headers, _ = new_gym()
    trainer, gym_class = _class(headers)
    assert gym_class['days_of_week'] == [1, 3, 5]
    base = {'name': 'Yoga', 'trainer_id': trainer['id'], 'start_time': '07:00', 'duration': 60, 'capacity': 10}
    assert client.post('/api/classes', json={**base, 'start_time': '25:00'}, headers=headers).status_code == 422
    assert client.post('/api/classes', json={**base, 'capacity': 0}, headers=headers).status_code == 422
    assert client.post('/api/classes', json={**base, 'days_of_week': [7]}, headers=headers).status_code == 400
    assert client.post('/api/classes', json={**base, 'trainer_id': 999999}, headers=headers).status_code == 404
    assert client.post('/api/classes', json={**base, 'color': 'red'}, headers=headers).status_code == 400


def test_enrollment_rules(new_gym):
    headers, _ = new_gym()
    _trainer, gym_class = _class(headers)
    cid = gym_class['id']

    casual = client.post('/api/clients', json={'name': 'No Plan'}, headers=headers).json()
    r = client.post(f'/api/classes/{cid}/enrollments', json={'client_id': casual['id']}, headers=headers)
    assert r.status_code == 409
    assert 'membership' in r.json()['detail']

    member = _member(headers, 'Has Plan')
    assert client.post(f'/api/classes/{cid}/enrollments', json={'client_id': member['id']}, headers=headers).status_code == 201
    assert client.post(f'/api/classes/{cid}/enrollments', json={'client_id': member['id']}, headers=headers).status_code == 409

    other = _member(headers, 'Second Member')
    full = client.post(f'/api/classes/{cid}/enrollments', json={'client_id': other['id']}, headers=headers)
    assert full.status_code == 409
    assert 'full' in full.json()['detail']

    enrolled = client.get(f'/api/classes/{cid}/enrollments', headers=headers).json()
    assert [e['client_id'] for e in enrolled] == [member['id']]

    assert client.patch(f'/api/classes/{cid}', json={'capacity': 2}, headers=headers).status_code == 200
    assert client.post(f'/api/classes/{cid}/enrollments', json={'client_id': other['id']}, headers=headers).status_code == 201
    assert client.patch(f'/api/classes/{cid}', json={'capacity': 1}, headers=headers).status_code == 409

    assert client.delete(f"/api/classes/{cid}/enrollments/{member['id']}", headers=headers).status_code == 204
    assert client.delete(f"/api/classes/{cid}/enrollments/{member['id']}", headers=headers).status_code == 404


def test_inactive_client_or_class_cannot_enroll(new_gym):
    headers, _ = new_gym()
    _trainer, gym_class = _class(headers, requires_membership=False, capacity=10)
    suspended = client.post('/api/clients', json={'name': 'Paused', 'status': 'suspended'}, headers=headers).json()
    r = client.post(f"/api/classes/{gym_class['id']}/enrollments", json={'client_id': suspended['id']}, headers=headers)
    assert r.status_code == 409

    client.patch(f"/api/classes/{gym_class['id']}", json={'status': 'inactive'}, headers=headers)
    active = client.post('/api/clients', json={'name': 'Ready'}, headers=headers).json()
    r2 = client.post(f"/api/classes/{gym_class['id']}/enrollments", json={'client_id': active['id']}, headers=headers)
    assert r2.status_code == 409


def test_attendance_upsert_and_trainer_role(new_gym):
    headers, _ = new_gym()
    _trainer, gym_class = _class(headers, requires_membership=False, capacity=10)
    member = client.post('/api/clients', json={'name': 'Attendee'}, headers=headers).json()
    url = f"/api/classes/{gym_class['id']}/attendance"
    day = date(2024, 5, 6).isoformat()

    first = client.post(url, json={'client_id': member['id'], 'attendance_date': day}, headers=headers)
    assert first.status_code == 200
    assert first.json()['present'] is True

    email = f'coach-{uuid.uuid4().hex[:8]}@example.com'
    client.post('/api/accounts', json={'email': email, 'name': 'Coach', 'password': 'coach123', 'role': 'trainer'},
                headers=headers)
    token = client.post('/api/auth/login', json={'email': email, 'password': 'coach123'}).json()['access_token']
    coach = {'Authorization': f'Bearer {token}'}

    second = client.post(url, json={'client_id': member['id'], 'attendance_date': day, 'present': False}, headers=coach)
    assert second.status_code == 200
    assert second.json()['id'] == first.json()['id']
    assert second.json()['present'] is False

    rows = client.get(url, params={'on': day}, headers=coach).json()
    assert len(rows) == 1
    assert client.post('/api/clients', json={'name': 'Nope'}, headers=coach).status_code == 403


def test_trainer_in_use_cannot_be_deleted(new_gym):
    headers, _ = new_gym()
    trainer, gym_class = _class(headers)
    assert client.delete(f"/api/trainers/{trainer['id']}", headers=headers).status_code == 409
    assert client.delete(f"/api/classes/{gym_class['id']}", headers=headers).status_code == 204
    assert client.delete(f"/api/trainers/{trainer['id']}", headers=headers).status_code == 204
    assert client.get(f"/api/trainers/{trainer['id']}", headers=headers).status_code == 404
