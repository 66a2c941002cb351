import os
import tempfile

import pytest

os.environ.setdefault('SECRET_KEY', 'test-secret')

from app import app, db_connect, init_db  # noqa: E402

PASSWORD = 'StrongPass1'


@pytest.fixture
def client():
    db_fd, db_path = tempfile.mkstemp()
    app.config.update(
        DATABASE_PATH=db_path,
        TESTING=True,
        WTF_CSRF_ENABLED=False,
        MAIL_ENABLED=False,
        SESSION_COOKIE_SECURE=False,
        STRIPE_WEBHOOK_SECRET=None,
        STRIPE_ALLOW_UNSIGNED=False,
        AI_GATEWAY_API_KEY=None,
        TWILIO_ACCOUNT_SID=None,
        TWILIO_AUTH_TOKEN=None,
        TWILIO_PHONE_NUMBER=None,
    )
    with app.app_context():
        init_db()
    with app.test_client() as c:
        yield c
    os.close(db_fd)
    for suffix in ('', '-wal', '-shm'):
        if os.path.exists(db_path + suffix):
            os.unlink(db_path + suffix)


@pytest.fixture
def db(client):
    conn = db_connect()
    yield conn
    conn.close()


def register(client, email='owner@example.com', full_name='Olivia Owner', company_name='Acme Co'):
    resp = client.post('/api/auth/register', json={
        'email': email,
        'password': PASSWORD,
        'confirm_password': PASSWORD,
        'full_name': full_name,
        'company_name': company_name,
    })
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()['user']


@pytest.fixture
def owner(client):
    return register(client)


def make_form(client, name='Customer Love', publish=True):
    resp = client.post('/api/forms', json={'name': name, 'is_published': publish})
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()['form']


def make_testimonial(client, author_name='Taylor Reed', content='Fantastic product, doubled our leads.',
                     rating=5, status='approved'):
    resp = client.post('/api/testimonials', json={
        'author_name': author_name,
        'author_company': 'Reed Labs',
        'content': content,
        'rating': rating,
        'status': status,
    })
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()['testimonial']


def make_widget(client, name='Homepage carousel'):
    resp = client.post('/api/widgets', json={'name': name, 'type': 'carousel'})
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()['widget']
