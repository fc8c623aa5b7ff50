from datetime import timedelta

from conftest import data_of, post_sale

from models import utcnow


def test_stock_alert_sweep_is_deduplicated_per_day(auth_client, catalog):
    first = data_of(auth_client.post('/api/notifications/stock-alerts'))
    assert first['created'] == 1
    alert = first['notifications'][0]
    assert alert['type'] == 'STOCK_ALERT'
    assert alert['title'] == 'Low Stock Alert'
    assert alert['message'] == ('USB Cable is low on stock. Current quantity: 3 pcs, '
                                'Minimum quantity: 5 pcs')

    again = data_of(auth_client.post('/api/notifications/stock-alerts'))
    assert again['created'] == 0


def test_arabic_rendering(auth_client, catalog):
    auth_client.post('/api/notifications/stock-alerts')
    items = data_of(auth_client.get('/api/notifications?lang=ar'))['items']
    assert items[0]['title'] == 'تنبيه انخفاض المخزون'
    assert 'قطعة' in items[0]['message']

    auth_client.put('/api/user-settings', json={'language': 'ar'})
    items = data_of(auth_client.get('/api/notifications'))['items']
    assert items[0]['title'] == 'تنبيه انخفاض المخزون'


def test_payment_due_check(auth_client, catalog):
    due = (utcnow().date() + timedelta(days=3)).isoformat()
    overdue = (utcnow().date() - timedelta(days=1)).isoformat()
    far = (utcnow().date() + timedelta(days=30)).isoformat()
    post_sale(auth_client, catalog, quantity=2, amount_paid=50, paymentDueDate=due)
    post_sale(auth_client, catalog, quantity=1, paymentDueDate=overdue)
    post_sale(auth_client, catalog, quantity=1, paymentDueDate=far)
    post_sale(auth_client, catalog, quantity=1, amount_paid=100, paymentDueDate=due)

    result = data_of(auth_client.post('/api/notifications/payment-due-check'))
    assert result['created'] == 2
    messages = sorted(n['message'] for n in result['notifications'])
    assert messages == [
        'Payment of DH 100.00 for Acme Trading is overdue by 1 day.',
        'Payment of DH 150.00 for Acme Trading is due in 3 days.',
    ]

    assert data_of(auth_client.post('/api/notifications/payment-due-check'))['created'] == 0

    ar = data_of(auth_client.get('/api/notifications?type=PAYMENT_DUE&lang=ar'))['items']
    assert any('درهم' in n['message'] for n in ar)


def test_payment_received_notification(auth_client, catalog):
    tx = data_of(post_sale(auth_client, catalog))
    auth_client.post('/api/payments', json={'transactionId': tx['id'], 'amount': 75})
    items = data_of(auth_client.get('/api/notifications?type=PAYMENT_RECEIVED'))['items']
    assert len(items) == 1
    assert items[0]['message'] == f"Payment of DH 75.00 received for transaction #{tx['id']}."
    assert items[0]['link'] == f"/transactions?id={tx['id']}"


def test_disabled_notifications_are_not_created(auth_client, catalog):
    auth_client.put('/api/user-settings', json={'notifications': False})
    assert data_of(auth_client.post('/api/notifications/stock-alerts'))['created'] == 0
    post_sale(auth_client, catalog, quantity=16)
    assert data_of(auth_client.get('/api/notifications'))['items'] == []


def test_read_state_management(auth_client, catalog):
    auth_client.post('/api/notifications/stock-alerts')
    created = data_of(auth_client.post('/api/notifications', json={
        'title': 'Inventory count', 'message': 'Count shelves on Friday',
        'titleAr': 'جرد', 'messageAr': 'جرد الرفوف يوم الجمعة',
    }))
    assert created['type'] == 'SYSTEM'

    listing = data_of(auth_client.get('/api/notifications'))
    assert listing['unreadCount'] == 2

    resp = auth_client.patch(f"/api/notifications/{created['id']}", json={'status': 'READ'})
    assert data_of(resp)['status'] == 'READ'
    assert auth_client.patch(f"/api/notifications/{created['id']}", json={'status': 'SEEN'}).status_code == 400

    unread = data_of(auth_client.get('/api/notifications?status=UNREAD'))
    assert unread['unreadCount'] == 1
    assert len(unread['items']) == 1

    assert data_of(auth_client.delete('/api/notifications')) == {'updated': 1}
    assert data_of(auth_client.get('/api/notifications'))['unreadCount'] == 0

    assert auth_client.delete(f"/api/notifications/{created['id']}").status_code == 200
    assert auth_client.get(f"/api/notifications/{created['id']}").status_code == 404


def test_notification_validation(auth_client):
    assert auth_client.post('/api/notifications', json={'title': 'x'}).status_code == 400
    assert auth_client.post('/api/notifications', json={
        'type': 'SPAM', 'title': 'x', 'message': 'y'}).status_code == 400
    assert auth_client.get('/api/notifications?status=NEW').status_code == 400


def test_notification_listing_is_paginated(auth_client):
    for title in ('One', 'Two', 'Three'):
        auth_client.post('/api/notifications', json={'title': title, 'message': 'm'})
    page = data_of(auth_client.get('/api/notifications?page=2&limit=2'))
    assert len(page['items']) == 1
    assert page['metadata'] == {'total': 3, 'page': 2, 'limit': 2, 'totalPages': 2}
    assert page['unreadCount'] == 3
