from conftest import make_form, make_testimonial, make_widget, register


def test_testimonial_crud_and_filters(client, owner):
    first = make_testimonial(client, author_name='Alex Ames', content='Great support team', rating=5, status='pending')
    make_testimonial(client, author_name='Blair Boyd', content='Decent value', rating=3)

    listed = client.get('/api/testimonials').get_json()['testimonials']
    assert [t['author_name'] for t in listed] == ['Blair Boyd', 'Alex Ames']

    pending = client.get('/api/testimonials?status=pending').get_json()['testimonials']
    assert [t['id'] for t in pending] == [first['id']]
    assert len(client.get('/api/testimonials?rating=3').get_json()['testimonials']) == 1
    assert len(client.get('/api/testimonials?search=SUPPORT').get_json()['testimonials']) == 1
    assert client.get('/api/testimonials?status=bogus').status_code == 400

    resp = client.patch(f"/api/testimonials/{first['id']}", json={'tags': ['support'], 'is_featured': True})
    updated = resp.get_json()['testimonial']
    assert updated['tags'] == ['support']
    assert updated['is_featured'] is True

    assert client.delete(f"/api/testimonials/{first['id']}").get_json() == {'deleted': True}
    assert client.get(f"/api/testimonials/{first['id']}").status_code == 404


def test_create_testimonial_requires_author(client, owner):
    resp = client.post('/api/testimonials', json={'content': 'anonymous'})
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'author_name is required'


def test_approve_and_reject(client, owner):
    t = make_testimonial(client, status='pending')
    approved = client.post(f"/api/testimonials/{t['id']}/approve").get_json()['testimonial']
    assert approved['status'] == 'approved'
    assert approved['approved_at']

    rejected = client.post(f"/api/testimonials/{t['id']}/reject").get_json()['testimonial']
    assert rejected['status'] == 'rejected'

    actions = [a['action'] for a in client.get('/api/activity').get_json()['activity']]
    assert actions[:2] == ['testimonial_rejected', 'testimonial_approved']


def test_testimonials_are_scoped_to_owner(client, owner):
    t = make_testimonial(client)
    client.post('/api/auth/logout')
    register(client, email='other@example.com', full_name='Other Owner')

    assert client.get('/api/testimonials').get_json()['testimonials'] == []
    assert client.get(f"/api/testimonials/{t['id']}").status_code == 404
    assert client.post(f"/api/testimonials/{t['id']}/approve").status_code == 404


def test_export_csv(client, owner):
    make_testimonial(client, author_name='Casey Csv')
    resp = client.get('/api/testimonials/export.csv')
    assert resp.status_code == 200
    assert resp.mimetype == 'text/csv'
    text = resp.data.decode('utf-8')
    assert text.splitlines()[0].startswith('created_at,status,type,rating,author_name')
    assert 'Casey Csv' in text


def test_forms_generate_unique_slugs(client, owner):
    a = make_form(client, name='Happy Customers!')
    b = make_form(client, name='Happy Customers!')
    assert a['slug'].startswith('happy-customers-')
    assert a['slug'] != b['slug']

    taken = client.post('/api/forms', json={'name': 'Clash', 'slug': a['slug']})
    assert taken.status_code == 409
    bad = client.post('/api/forms', json={'name': 'Bad', 'slug': 'Not A Slug'})
    assert bad.status_code == 400


def test_form_publish(client, owner):
    form = make_form(client, publish=False)
    assert form['is_published'] is False
    published = client.post(f"/api/forms/{form['id']}/publish").get_json()['form']
    assert published['is_published'] is True


def test_widget_public_feed_and_tracking(client, db, owner):
    approved = make_testimonial(client, author_name='Approved Person')
    make_testimonial(client, author_name='Pending Person', status='pending')
    widget = make_widget(client)
    assert widget['embed_code'].startswith(f'<div data-testimonial-widget="{widget["id"]}">')

    client.post('/api/auth/logout')
    feed = client.get(f"/api/public/widgets/{widget['id']}").get_json()
    assert [t['id'] for t in feed['testimonials']] == [approved['id']]

    assert client.post(f"/api/public/widgets/{widget['id']}/impression").status_code == 200
    assert client.post(f"/api/public/widgets/{widget['id']}/impression").status_code == 200
    assert client.post(f"/api/public/widgets/{widget['id']}/click").status_code == 200
    assert client.post(f"/api/public/widgets/{widget['id']}/hover").status_code == 404

    row = db.execute('SELECT impressions, clicks FROM widgets WHERE id = ?', (widget['id'],)).fetchone()
    assert tuple(row) == (2, 1)


def test_inactive_widget_hidden(client, owner):
    widget = make_widget(client)
    client.patch(f"/api/widgets/{widget['id']}", json={'is_active': False})
    assert client.get(f"/api/public/widgets/{widget['id']}").status_code == 404


def test_campaigns(client, owner):
    form = make_form(client)
    resp = client.post('/api/campaigns', json={
        'name': 'Spring outreach',
        'type': 'sms',
        'form_id': form['id'],
        'recipients': [{'phone': '+15551230001'}, {'phone': '+15551230002'}],
    })
    assert resp.status_code == 201
    campaign = resp.get_json()['campaign']
    assert campaign['total_recipients'] == 2
    assert campaign['status'] == 'draft'

    updated = client.patch(f"/api/campaigns/{campaign['id']}", json={'status': 'active'}).get_json()['campaign']
    assert updated['status'] == 'active'
    assert client.patch(f"/api/campaigns/{campaign['id']}", json={'status': 'done'}).status_code == 400
    assert len(client.get('/api/campaigns').get_json()['campaigns']) == 1


def test_track_revenue_endpoint(client, owner):
    t = make_testimonial(client)
    body = {'amount': 250, 'testimonial_id': t['id'], 'customer_email': 'buyer@example.com'}

    first = client.post('/api/revenue/track', json=body, headers={'Idempotency-Key': 'deal-42'})
    assert first.status_code == 201
    assert first.get_json()['duplicate'] is False

    again = client.post('/api/revenue/track', json=body, headers={'Idempotency-Key': 'deal-42'})
    assert again.status_code == 200
    assert again.get_json()['duplicate'] is True
    assert again.get_json()['revenue_event']['id'] == first.get_json()['revenue_event']['id']

    assert client.get(f"/api/testimonials/{t['id']}").get_json()['testimonial']['revenue_attributed'] == 250
    assert len(client.get('/api/revenue').get_json()['revenue_events']) == 1


def test_track_revenue_validation(client, owner):
    assert client.post('/api/revenue/track', json={}).status_code == 400
    assert client.post('/api/revenue/track', json={'amount': -3}).status_code == 400
    assert client.post('/api/revenue/track', json={'amount': 5, 'currency': 'US'}).status_code == 400
    assert client.post('/api/revenue/track', json={'amount': 5, 'customer_email': 'nope'}).status_code == 400

    for body in (
        {'amount': True},
        {'amount': 5, 'currency': 5},
        {'amount': 5, 'customer_email': 5},
        {'amount': 5, 'idempotency_key': {'a': 1}},
        {'amount': 5, 'widget_id': {'id': 'w1'}},
    ):
        assert client.post('/api/revenue/track', json=body).status_code == 400, body
    assert client.get('/api/revenue').get_json()['revenue_events'] == []


def test_activity_limit_and_since(client, owner):
    for i in range(12):
        make_testimonial(client, author_name=f'Person {i}')
    items = client.get('/api/activity').get_json()['activity']
    assert len(items) == 10
    assert len(client.get('/api/activity?limit=500').get_json()['activity']) == 12

    newest = items[0]['created_at']
    assert client.get('/api/activity', query_string={'since': newest}).get_json()['activity'] == []
    assert client.get('/api/activity?since=yesterday').status_code == 400


def test_dashboard_summary(client, owner):
    t = make_testimonial(client, rating=4)
    make_testimonial(client, rating=5, status='pending')
    client.post('/api/revenue/track', json={'amount': 100, 'testimonial_id': t['id']})

    summary = client.get('/api/dashboard').get_json()
    assert summary['revenue']['this_month'] == 100
    assert summary['revenue']['total'] == 100
    assert summary['testimonials']['total'] == 2
    assert summary['testimonials']['pending'] == 1
    assert summary['avg_rating'] == 4.5
    assert summary['top_drivers'][0]['id'] == t['id']
    assert summary['onboarding']['tracked_revenue'] is True
    assert summary['onboarding_complete'] is False


def test_analytics_range(client, owner):
    t = make_testimonial(client)
    client.post('/api/revenue/track', json={'amount': 40, 'testimonial_id': t['id']})
    client.post('/api/revenue/track', json={'amount': 60})

    data = client.get('/api/analytics?range=7d').get_json()
    assert data['range']['key'] == '7d'
    assert data['total_revenue'] == 100
    assert data['conversion_count'] == 2
    assert data['avg_order_value'] == 50
    assert data['revenue_trend'] == 100
    assert data['top_performers'][0]['revenue'] == 40

    assert client.get('/api/analytics?range=forever').get_json()['range']['key'] == '30d'


def test_revenue_report_pdf(client, owner):
    t = make_testimonial(client)
    make_widget(client)
    client.post('/api/revenue/track', json={'amount': 75, 'testimonial_id': t['id']})
    resp = client.get('/api/reports/revenue.pdf')
    assert resp.status_code == 200
    assert resp.mimetype == 'application/pdf'
    assert resp.data.startswith(b'%PDF')
