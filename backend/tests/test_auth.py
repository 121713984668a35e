from datetime import datetime, timedelta, timezone

import jwt

from emdr_api.config import settings


def _register(client, **overrides):
    body = {
        'email': 'ana@example.com',
        'password': 'password123',
        'firstName': 'Ana',
        'lastName': 'Lopez',
    }
    body.update(overrides)
    return client.post('/auth/register', json=body)


def test_register_login_and_me(client):
    r = _register(client)
    assert r.status_code == 201
    user = r.json()['user']
    assert user['email'] == 'ana@example.com'
    assert user['role'] == 'STUDENT'
    assert user['certificationStatus'] == 'ENROLLED'
    assert 'password' not in str(r.json()['user'])

    r = client.post('/auth/login', json={'email': 'ANA@example.com', 'password': 'password123'})
    assert r.status_code == 200
    token = r.json()['access_token']
    payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    assert payload['user_id'] == user['id']
    assert payload['role'] == 'STUDENT'
    assert 'exp' in payload

    r = client.get('/auth/me', headers={'Authorization': f'Bearer {token}'})
    assert r.status_code == 200
    assert r.json()['id'] == user['id']


def test_register_validation(client):
    assert _register(client, email='not-an-email').status_code == 400
    assert _register(client, password='short').status_code == 400
    r = _register(client, role='SUPERUSER')
    assert r.status_code == 400
    assert r.json()['code'] == 'VALIDATION_ERROR'
    r = client.post('/auth/register', json={'email': 'x@example.com'})
    assert r.status_code == 400


def test_duplicate_email_is_conflict(client):
    assert _register(client).status_code == 201
    r = _register(client, email='Ana@Example.com')
    assert r.status_code == 409
    assert r.json()['code'] == 'CONFLICT'


def test_login_failures(client, db):
    _register(client)
    r = client.post('/auth/login', json={'email': 'ana@example.com', 'password': 'wrong-password'})
    assert r.status_code == 401
    r = client.post('/auth/login', json={'email': 'nobody@example.com', 'password': 'password123'})
    assert r.status_code == 401


def test_inactive_account_cannot_login(client, db):
    from emdr_api import repositories

    _register(client)
    repo = repositories.UserRepository(db)
    user = repo.get_by_email('ana@example.com')
    user.status = 'SUSPENDED'
    repo.save(user)
    r = client.post('/auth/login', json={'email': 'ana@example.com', 'password': 'password123'})
    assert r.status_code == 401
    assert r.json()['error'] == 'account is not active'


def test_expired_token_is_rejected(client):
    user = _register(client).json()['user']
    token = jwt.encode(
        {'user_id': user['id'], 'exp': datetime.now(timezone.utc) - timedelta(minutes=1)},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    r = client.get('/auth/me', headers={'Authorization': f'Bearer {token}'})
    assert r.status_code == 401
    assert r.json()['error'] == 'token expired'


def test_password_reset_flow(client):
    _register(client)
    r = client.post('/auth/forgot-password', json={'email': 'ana@example.com'})
    assert r.status_code == 200
    reset_token = r.json()['resetToken']

    # a reset token is not an access token
    assert client.get('/auth/me', headers={'Authorization': f'Bearer {reset_token}'}).status_code == 401

    r = client.post('/auth/reset-password', json={'token': reset_token, 'password': 'new-password-1'})
    assert r.status_code == 200
    assert client.post('/auth/login', json={'email': 'ana@example.com', 'password': 'password123'}).status_code == 401
    r = client.post('/auth/login', json={'email': 'ana@example.com', 'password': 'new-password-1'})
    assert r.status_code == 200

    headers = {'Authorization': f"Bearer {r.json()['access_token']}"}
    types = [n['type'] for n in client.get('/notifications', headers=headers).json()['notifications']]
    assert types == ['SECURITY_ALERT']


def test_forgot_password_does_not_reveal_accounts(client):
    r = client.post('/auth/forgot-password', json={'email': 'ghost@example.com'})
    assert r.status_code == 200
    assert 'resetToken' not in r.json()
    assert 'message' in r.json()


def test_reset_password_rejects_bad_tokens(client):
    user = _register(client).json()['user']
    r = client.post('/auth/reset-password', json={'token': 'garbage', 'password': 'new-password-1'})
    assert r.status_code == 400
    login = client.post('/auth/login', json={'email': 'ana@example.com', 'password': 'password123'}).json()
    # access tokens carry no reset type
    r = client.post('/auth/reset-password', json={'token': login['access_token'], 'password': 'new-password-1'})
    assert r.status_code == 400
    expired = jwt.encode(
        {'user_id': user['id'], 'type': 'password-reset', 'exp': datetime.now(timezone.utc) - timedelta(seconds=5)},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    r = client.post('/auth/reset-password', json={'token': expired, 'password': 'new-password-1'})
    assert r.status_code == 400
    assert 'expired' in r.json()['error']


def test_admins_hear_about_registrations(client, api_user):
    _, admin_headers = api_user('ADMIN')
    _register(client)
    notifications = client.get('/notifications', headers=admin_headers).json()['notifications']
    assert [n['type'] for n in notifications] == ['USER_REGISTRATION']
    assert notifications[0]['priority'] == 'LOW'
