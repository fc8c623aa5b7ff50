from conftest import data_of, make_user, login, OWNER_PASSWORD


def test_register_first_admin_then_closed(client):
    resp = client.post('/api/auth/register', json={'username': 'founder', 'password': 'founder1'})
    assert resp.status_code == 201
    assert data_of(resp)['role'] == 'Admin'
    assert data_of(client.get('/api/auth/me'))['username'] == 'founder'

    again = client.post('/api/auth/register', json={'username': 'second', 'password': 'second1'})
    assert again.status_code == 403


def test_register_validation(client):
    resp = client.post('/api/auth/register', json={'username': 'x', 'password': '123'})
    assert resp.status_code == 400
    assert 'password' in resp.get_json()['errors']


def test_login_and_logout(client, owner_id):
    bad = login(client, 'owner', 'wrong-password')
    assert bad.status_code == 401
    assert bad.get_json() == {'success': False, 'error': 'Invalid username or password.'}

    assert client.post('/api/auth/login', json={'username': 'owner'}).status_code == 400

    assert login(client, 'owner').status_code == 200
    me = data_of(client.get('/api/auth/me'))
    assert me['id'] == owner_id
    assert me['settings']['language'] == 'en'

    assert client.post('/api/auth/logout').status_code == 200
    assert client.get('/api/auth/me').status_code == 401


def test_change_password(auth_client, client):
    resp = auth_client.post('/api/user/change-password', json={
        'currentPassword': 'nope', 'newPassword': 'better-secret', 'confirmPassword': 'better-secret',
    })
    assert resp.status_code == 400

    resp = auth_client.post('/api/user/change-password', json={
        'currentPassword': OWNER_PASSWORD, 'newPassword': 'better-secret', 'confirmPassword': 'mismatch',
    })
    assert 'confirmPassword' in resp.get_json()['errors']

    resp = auth_client.post('/api/user/change-password', json={
        'currentPassword': OWNER_PASSWORD, 'newPassword': 'better-secret', 'confirmPassword': 'better-secret',
    })
    assert resp.status_code == 200

    assert login(client, 'owner').status_code == 401
    assert login(client, 'owner', 'better-secret').status_code == 200


def test_user_settings(auth_client):
    settings = data_of(auth_client.get('/api/user-settings'))
    assert settings == dict(settings, language='en', theme='light', notifications=True)

    updated = data_of(auth_client.put('/api/user-settings', json={'language': 'ar', 'theme': 'dark'}))
    assert (updated['language'], updated['theme']) == ('ar', 'dark')

    resp = auth_client.patch('/api/user-settings', json={'language': 'fr', 'notifications': 'yes'})
    assert resp.status_code == 400
    assert set(resp.get_json()['errors']) == {'language', 'notifications'}


def test_user_admin_requires_admin_role(app, auth_client):
    resp = auth_client.post('/api/users', json={'username': 'kiosk', 'password': 'kiosk123', 'role': 'cashier'})
    assert resp.status_code == 201
    assert data_of(resp)['role'] == 'Cashier'

    assert auth_client.post('/api/users', json={
        'username': 'KIOSK', 'password': 'kiosk123', 'role': 'Cashier'}).status_code == 409
    assert auth_client.post('/api/users', json={
        'username': 'boss', 'password': 'boss1234', 'role': 'Owner'}).status_code == 400

    cashier = app.test_client()
    login(cashier, 'kiosk', 'kiosk123')
    assert cashier.get('/api/users').status_code == 403
    assert cashier.get('/api/audit-log').status_code == 403

    usernames = [u['username'] for u in data_of(auth_client.get('/api/users'))['items']]
    assert usernames == ['kiosk', 'owner']


def test_admin_safety_rules(app, auth_client, owner_id):
    resp = auth_client.delete(f'/api/users/{owner_id}')
    assert resp.status_code == 400

    resp = auth_client.put(f'/api/users/{owner_id}', json={'role': 'Manager'})
    assert resp.status_code == 400
    assert 'last admin' in resp.get_json()['error']

    other_id = make_user(app, 'deputy', role='Admin')
    assert data_of(auth_client.put(f'/api/users/{other_id}', json={'role': 'Manager'}))['role'] == 'Manager'
    assert auth_client.delete(f'/api/users/{other_id}').status_code == 200
    assert auth_client.delete('/api/users/9999').status_code == 404


def test_audit_log_records_actions(auth_client, catalog):
    entries = data_of(auth_client.get('/api/audit-log?limit=100'))['items']
    actions = [e['action'] for e in entries]
    assert 'User logged in successfully.' in actions
    assert 'Created category: Electronics.' in actions
    assert all(e['username'] == 'owner' for e in entries)


def test_audit_log_covers_settings_and_notifications(auth_client):
    auth_client.put('/api/user-settings', json={'theme': 'dark'})
    note = data_of(auth_client.post('/api/notifications', json={'title': 'Stocktake', 'message': 'Friday'}))
    auth_client.patch(f"/api/notifications/{note['id']}", json={'status': 'READ'})
    auth_client.patch(f"/api/notifications/{note['id']}", json={'status': 'UNREAD'})
    auth_client.delete('/api/notifications')
    auth_client.delete(f"/api/notifications/{note['id']}")

    actions = [e['action'] for e in data_of(auth_client.get('/api/audit-log?limit=100'))['items']]
    assert 'Updated user settings.' in actions
    assert 'Created notification: Stocktake.' in actions
    assert f"Marked notification #{note['id']} as READ." in actions
    assert 'Marked 1 notification(s) as read.' in actions
    assert f"Deleted notification #{note['id']}." in actions


def test_health(client):
    assert data_of(client.get('/api/health')) == {'status': 'ok'}
