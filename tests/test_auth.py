from conftest import PASSWORD, register


def test_register_rejects_weak_password(client):
    resp = client.post('/api/auth/register', json={
        'full_name': 'Jane Doe',
        'email': 'jane@example.com',
        'password': 'weak',
        'confirm_password': 'weak',
    })
    assert resp.status_code == 400
    assert resp.get_json()['fields']['password'] == 'Password must be at least 8 characters long.'


def test_register_rejects_duplicate_email(client):
    register(client)
    client.post('/api/auth/logout')
    resp = client.post('/api/auth/register', json={
        'full_name': 'Someone Else',
        'email': 'owner@example.com',
        'password': PASSWORD,
    })
    assert resp.status_code == 409


def test_register_and_login_success(client):
    user = register(client)
    assert user['role'] == 'admin'
    assert user['email_verified'] is False

    client.post('/api/auth/logout')
    assert client.get('/api/auth/me').status_code == 401

    login_resp = client.post('/api/auth/login', json={'email': 'owner@example.com', 'password': PASSWORD})
    assert login_resp.status_code == 200
    assert client.get('/api/auth/me').get_json()['user']['email'] == 'owner@example.com'


def test_login_failure_is_generic(client):
    register(client)
    client.post('/api/auth/logout')
    resp = client.post('/api/auth/login', json={'email': 'owner@example.com', 'password': 'WrongPass1'})
    assert resp.status_code == 401
    assert 'Sign-in failed' in resp.get_json()['error']


def test_verification_link_marks_email_verified(client):
    resp = client.post('/api/auth/register', json={
        'full_name': 'Vera Verified',
        'email': 'vera@example.com',
        'password': PASSWORD,
    })
    link = resp.get_json()['verification_link']
    path = link.split('localhost', 1)[1]

    assert client.get(path).get_json() == {'verified': True}
    assert client.get('/api/auth/me').get_json()['user']['email_verified'] is True
    assert client.get(path).status_code == 400


def test_password_reset_token_single_use(client):
    register(client)
    client.post('/api/auth/logout')

    forgot = client.post('/api/auth/forgot-password', json={'email': 'owner@example.com'})
    reset_path = forgot.get_json()['reset_link'].split('localhost', 1)[1]

    first = client.post(reset_path, json={'password': 'NewStrong2', 'confirm_password': 'NewStrong2'})
    assert first.status_code == 200
    second = client.post(reset_path, json={'password': 'Another3x', 'confirm_password': 'Another3x'})
    assert second.status_code == 400

    login_resp = client.post('/api/auth/login', json={'email': 'owner@example.com', 'password': 'NewStrong2'})
    assert login_resp.status_code == 200


def test_forgot_password_does_not_reveal_accounts(client):
    resp = client.post('/api/auth/forgot-password', json={'email': 'nobody@example.com'})
    assert resp.status_code == 200
    assert 'reset_link' not in resp.get_json()


def test_api_requires_login(client):
    for path in ('/api/testimonials', '/api/dashboard', '/api/analytics', '/api/activity'):
        resp = client.get(path)
        assert resp.status_code == 401
        assert resp.get_json()['error'] == 'Authentication required.'


def test_viewer_cannot_mutate(client, db):
    register(client)
    db.execute("UPDATE users SET role = 'viewer' WHERE email = 'owner@example.com'")
    db.commit()

    assert client.get('/api/testimonials').status_code == 200
    resp = client.post('/api/forms', json={'name': 'Nope'})
    assert resp.status_code == 403
    resp = client.post('/api/revenue/track', json={'amount': 10})
    assert resp.status_code == 403


def test_csrf_token_endpoint(client):
    resp = client.get('/api/csrf-token')
    assert resp.status_code == 200
    assert resp.get_json()['csrf_token']


def test_health_and_metrics(client):
    assert client.get('/health').get_json() == {'status': 'ok', 'service': 'testimonial-hub'}
    metrics = client.get('/metrics').get_json()
    assert metrics['requests_total'] >= 1
    assert 'avg_latency_ms' in metrics
