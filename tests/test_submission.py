from unittest.mock import MagicMock, patch

from app import app
from conftest import make_form


def submit(client, **overrides):
    body = {
        'form_slug': overrides.pop('form_slug', None),
        'author_name': 'Riley Customer',
        'author_email': 'riley@example.com',
        'author_company': 'Riley & Sons',
        'content': 'The onboarding was <b>painless</b> and support replied within minutes.',
        'rating': 5,
    }
    body.update(overrides)
    return client.post('/api/testimonials/submit', json=body)


def test_submission_requires_slug_and_author(client):
    resp = client.post('/api/testimonials/submit', json={'content': 'hi'})
    assert resp.status_code == 400
    assert resp.get_json() == {'error': 'form_slug and author_name are required'}


def test_unpublished_form_is_not_found(client, owner):
    form = make_form(client, publish=False)
    resp = submit(client, form_slug=form['slug'])
    assert resp.status_code == 404
    assert resp.get_json()['error'] == 'Form not found or not published'


def test_submission_creates_pending_testimonial(client, db, owner):
    form = make_form(client)
    client.post('/api/auth/logout')

    resp = submit(client, form_slug=form['slug'])
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['success'] is True

    row = db.execute('SELECT * FROM testimonials WHERE id = ?', (body['testimonial_id'],)).fetchone()
    assert row['status'] == 'pending'
    assert row['source'] == 'form'
    assert row['form_id'] == form['id']
    assert row['user_id'] == owner['id']
    assert row['sentiment'] == 'positive'
    assert '<b>' not in row['content']

    count = db.execute('SELECT submission_count FROM forms WHERE id = ?', (form['id'],)).fetchone()[0]
    assert count == 1
    activity = db.execute(
        "SELECT metadata FROM activity_log WHERE action = 'testimonial_submitted'"
    ).fetchone()
    assert '"form_name": "Customer Love"' in activity['metadata']


def test_submission_rejects_bad_rating(client, owner):
    form = make_form(client)
    resp = submit(client, form_slug=form['slug'], rating=9)
    assert resp.status_code == 400


def test_submission_uses_ai_sentiment(client, db, owner):
    form = make_form(client)
    fake = MagicMock()
    fake.configured = True
    fake.complete.return_value = '```json\n{"sentiment": "neutral", "summary": "Support was fast."}\n```'

    with patch('app._ai_client', return_value=fake):
        resp = submit(client, form_slug=form['slug'])

    row = db.execute('SELECT sentiment, ai_summary FROM testimonials WHERE id = ?',
                     (resp.get_json()['testimonial_id'],)).fetchone()
    assert tuple(row) == ('neutral', 'Support was fast.')


def test_ai_failure_keeps_defaults(client, db, owner):
    from services.ai_gateway import AIRateLimited

    form = make_form(client)
    fake = MagicMock()
    fake.configured = True
    fake.complete.side_effect = AIRateLimited('slow down')

    with patch('app._ai_client', return_value=fake):
        resp = submit(client, form_slug=form['slug'])

    assert resp.status_code == 200
    row = db.execute('SELECT sentiment, ai_summary FROM testimonials').fetchone()
    assert tuple(row) == ('positive', None)


def test_owner_is_emailed_when_mail_enabled(client, owner):
    form = make_form(client)
    app.config.update(MAIL_ENABLED=True)
    try:
        with patch('app.send_new_testimonial_email', return_value=True) as sender:
            submit(client, form_slug=form['slug'])
    finally:
        app.config.update(MAIL_ENABLED=False)

    sender.assert_called_once()
    args = sender.call_args[0]
    assert args[0] == 'owner@example.com'
    assert args[2] == 'Customer Love'
    assert args[3] == 'Riley Customer'


def test_public_form_lookup(client, owner):
    form = make_form(client)
    resp = client.get(f"/api/public/forms/{form['slug']}")
    assert resp.status_code == 200
    public = resp.get_json()['form']
    assert public['name'] == 'Customer Love'
    assert 'user_id' not in public

    draft = make_form(client, name='Draft', publish=False)
    assert client.get(f"/api/public/forms/{draft['slug']}").status_code == 404
