"""Sign-up, login, session cookies and lockout."""

from kebilo.auth import SessionTokenError, decode_session_token, hash_password, verify_password

import pytest


def _sign_up(client, **overrides):
    payload = {
        'firstName': 'Avery',
        'lastName': 'Stone',
        'email': 'Avery@Clinic.test',
        'password': 'secret123',
        'role': 'Physician',
    }
    payload.update(overrides)
    return client.post('/api/auth/sign-up', json=payload)


def test_password_hashing_round_trip():
    hashed = hash_password('secret123')
    assert hashed != 'secret123'
    assert verify_password('secret123', hashed)
    assert not verify_password('wrong', hashed)
    assert not verify_password('secret123', None)


def test_sign_up_validation(client):
    resp = _sign_up(client, firstName='')
    assert resp.status_code == 400
    assert resp.json() == {'error': 'All fields are required'}

    resp = _sign_up(client, email='not-an-email')
    assert resp.status_code == 400
    assert resp.json()['error'] == 'Invalid email format'


def test_sign_up_and_duplicate(client):
    resp = _sign_up(client)
    assert resp.status_code == 201
    body = resp.json()
    assert body['user']['email'] == 'avery@clinic.test'
    assert body['user']['role'] == 'Physician'
    assert 'password' not in body['user']

    resp = _sign_up(client, email='avery@clinic.test')
    assert resp.status_code == 409


def test_login_sets_session_cookie(client):
    assert _sign_up(client).status_code == 201

    resp = client.post('/api/auth/login', json={'email': 'avery@clinic.test', 'password': 'secret123'})
    assert resp.status_code == 200
    body = resp.json()
    assert body['token_type'] == 'bearer'
    assert 'kebilo_session' in resp.cookies

    session_user = decode_session_token(body['access_token'])
    assert session_user.role == 'Physician'
    assert session_user.physician_id == session_user.id
    assert session_user.fastapi_token

    resp = client.get('/api/auth/session')
    assert resp.status_code == 200
    assert resp.json()['user']['email'] == 'avery@clinic.test'

    resp = client.get('/api/auth/session', headers={'Authorization': f"Bearer {body['access_token']}"})
    assert resp.status_code == 200


def test_login_failures(client):
    assert _sign_up(client).status_code == 201

    resp = client.post('/api/auth/login', json={'email': 'avery@clinic.test'})
    assert resp.status_code == 400

    resp = client.post('/api/auth/login', json={'email': 'avery@clinic.test', 'password': 'nope'})
    assert resp.status_code == 401
    assert resp.json() == {'error': 'Invalid email or password'}


def test_repeated_failures_lock_the_account(client):
    assert _sign_up(client).status_code == 201
    for _ in range(5):
        client.post('/api/auth/login', json={'email': 'avery@clinic.test', 'password': 'nope'})

    resp = client.post('/api/auth/login', json={'email': 'avery@clinic.test', 'password': 'secret123'})
    assert resp.status_code == 401


def test_session_requires_token(client):
    resp = client.get('/api/auth/session')
    assert resp.status_code == 401
    assert resp.json() == {'error': 'Unauthorized'}

    resp = client.get('/api/auth/session', headers={'Authorization': 'Bearer garbage'})
    assert resp.status_code == 401


def test_staff_scope_is_their_physician(staff, physician):
    from kebilo.auth import create_session_token

    user = decode_session_token(create_session_token(staff))
    assert user.is_staff
    assert user.physician_id == physician.id


def test_decode_rejects_tampered_token(physician):
    from kebilo.auth import create_session_token

    token = create_session_token(physician)
    with pytest.raises(SessionTokenError):
        decode_session_token(token[:-2] + ('aa' if not token.endswith('aa') else 'bb'))
