import csv
import io

from conftest import data_of, post_sale, make_user, login


def _product(auth_client, product_id):
    return data_of(auth_client.get(f'/api/products/{product_id}'))


def test_sale_moves_stock_and_defaults_status(auth_client, catalog):
    tx = data_of(post_sale(auth_client, catalog, quantity=2))
    assert tx['type'] == 'SALE'
    assert tx['status'] == 'PENDING'
    assert tx['items'][0]['quantity'] == 2
    assert tx['items'][0]['total'] == 200
    assert _product(auth_client, catalog.laptop['id'])['quantity'] == 18

    paid = data_of(post_sale(auth_client, catalog, quantity=1, amount_paid=100))
    assert paid['status'] == 'COMPLETED'
    assert paid['remainingAmount'] == 0


def test_sale_rejected_when_stock_is_short(auth_client, catalog):
    resp = post_sale(auth_client, catalog, quantity=21)
    assert resp.status_code == 400
    assert 'Insufficient stock for Laptop' in resp.get_json()['error']
    assert _product(auth_client, catalog.laptop['id'])['quantity'] == 20


def test_sale_requires_client_and_items(auth_client, catalog):
    resp = auth_client.post('/api/transactions', json={
        'type': 'SALE',
        'items': [{'productId': catalog.laptop['id'], 'quantity': 1}],
    })
    assert resp.status_code == 400
    assert 'clientId' in resp.get_json()['errors']

    resp = auth_client.post('/api/transactions', json={
        'type': 'SALE', 'clientId': catalog.client['id'], 'items': [],
    })
    assert resp.status_code == 400
    assert 'items' in resp.get_json()['errors']

    resp = auth_client.post('/api/transactions', json={
        'type': 'REFUND', 'clientId': catalog.client['id'],
        'items': [{'productId': catalog.laptop['id'], 'quantity': 1}],
    })
    assert resp.status_code == 400
    assert 'type' in resp.get_json()['errors']


def test_missing_item_price_uses_product_price(auth_client, catalog):
    resp = auth_client.post('/api/transactions', json={
        'type': 'SALE', 'clientId': catalog.client['id'],
        'items': [{'productId': catalog.laptop['id'], 'quantity': 3}],
    })
    assert data_of(resp)['total'] == 300


def test_supplied_total_must_match_items(auth_client, catalog):
    resp = post_sale(auth_client, catalog, quantity=2, total=150)
    assert resp.status_code == 400
    assert 'does not match' in resp.get_json()['error']

    assert post_sale(auth_client, catalog, quantity=2, total=200.01).status_code == 201


def test_amount_paid_cannot_exceed_total(auth_client, catalog):
    resp = post_sale(auth_client, catalog, quantity=1, amount_paid=101)
    assert resp.status_code == 400
    assert _product(auth_client, catalog.laptop['id'])['quantity'] == 20


def test_purchase_adds_stock_and_updates_cost(auth_client, catalog):
    resp = auth_client.post('/api/transactions', json={
        'type': 'PURCHASE',
        'supplierId': catalog.supplier['id'],
        'amountPaid': 375,
        'items': [{'productId': catalog.laptop['id'], 'quantity': 5, 'price': 75}],
    })
    tx = data_of(resp)
    assert tx['status'] == 'COMPLETED'
    laptop = _product(auth_client, catalog.laptop['id'])
    assert laptop['quantity'] == 25
    assert laptop['costPrice'] == 75

    resp = auth_client.post('/api/transactions', json={
        'type': 'PURCHASE',
        'items': [{'productId': catalog.laptop['id'], 'quantity': 1, 'price': 75}],
    })
    assert resp.status_code == 400
    assert 'supplierId' in resp.get_json()['errors']


def test_adjustment_has_no_party(auth_client, catalog):
    resp = auth_client.post('/api/transactions', json={
        'type': 'ADJUSTMENT',
        'items': [{'productId': catalog.cable['id'], 'quantity': 7, 'price': 0}],
    })
    tx = data_of(resp)
    assert tx['clientId'] is None and tx['supplierId'] is None
    assert tx['status'] == 'COMPLETED'
    assert _product(auth_client, catalog.cable['id'])['quantity'] == 10


def test_fractional_quantities_for_weighed_products(auth_client, catalog):
    rice = data_of(auth_client.post('/api/products', json={
        'name': 'Rice', 'sku': 'RICE-KG', 'price': 10, 'costPrice': 6, 'quantity': 10.5,
        'minQuantity': 1, 'unit': 'KG',
        'categoryId': catalog.category['id'], 'supplierId': catalog.supplier['id'],
    }))
    resp = auth_client.post('/api/transactions', json={
        'type': 'SALE', 'clientId': catalog.client['id'],
        'items': [{'productId': rice['id'], 'quantity': 2.25, 'price': 10}],
    })
    assert data_of(resp)['total'] == 22.5
    assert _product(auth_client, rice['id'])['quantity'] == 8.25


def test_cancel_restores_stock_and_client_totals(auth_client, catalog):
    tx = data_of(post_sale(auth_client, catalog, quantity=4, amount_paid=100))
    resp = auth_client.put(f"/api/transactions/{tx['id']}", json={'status': 'CANCELLED'})
    assert data_of(resp)['status'] == 'CANCELLED'

    assert _product(auth_client, catalog.laptop['id'])['quantity'] == 20
    client = data_of(auth_client.get(f"/api/clients/{catalog.client['id']}"))
    assert client['totalDue'] == 0
    assert client['amountPaid'] == 0
    assert client['balance'] == 0

    resp = auth_client.put(f"/api/transactions/{tx['id']}", json={'status': 'PENDING'})
    assert resp.status_code == 400


def test_completed_transaction_status_is_locked(auth_client, catalog):
    tx = data_of(post_sale(auth_client, catalog, quantity=1, amount_paid=100))
    resp = auth_client.put(f"/api/transactions/{tx['id']}", json={'status': 'CANCELLED'})
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Cannot update a completed transaction'

    resp = auth_client.patch(f"/api/transactions/{tx['id']}", json={'notes': 'delivered'})
    assert data_of(resp)['notes'] == 'delivered'


def test_pending_transaction_due_date_update(auth_client, catalog):
    tx = data_of(post_sale(auth_client, catalog))
    resp = auth_client.put(f"/api/transactions/{tx['id']}", json={'paymentDueDate': '2030-01-15'})
    assert data_of(resp)['paymentDueDate'].startswith('2030-01-15')

    resp = auth_client.put(f"/api/transactions/{tx['id']}", json={'paymentDueDate': 'soon'})
    assert resp.status_code == 400


def test_list_filters(auth_client, catalog):
    post_sale(auth_client, catalog, quantity=1)
    post_sale(auth_client, catalog, quantity=1, amount_paid=100)
    auth_client.post('/api/transactions', json={
        'type': 'PURCHASE', 'supplierId': catalog.supplier['id'],
        'items': [{'productId': catalog.cable['id'], 'quantity': 2, 'price': 4}],
    })

    sales = data_of(auth_client.get('/api/transactions?type=SALE'))
    assert sales['metadata']['total'] == 2
    assert {t['type'] for t in sales['items']} == {'SALE'}

    pending = data_of(auth_client.get('/api/transactions?status=PENDING'))
    assert pending['metadata']['total'] == 2

    by_supplier = data_of(auth_client.get(f"/api/transactions?supplierId={catalog.supplier['id']}"))
    assert [t['type'] for t in by_supplier['items']] == ['PURCHASE']

    assert auth_client.get('/api/transactions?type=GIFT').status_code == 400
    future = data_of(auth_client.get('/api/transactions?startDate=2999-01-01'))
    assert future['items'] == []


def test_csv_export(auth_client, catalog):
    post_sale(auth_client, catalog, quantity=2, amount_paid=50, reference='INV-7')
    resp = auth_client.get('/api/transactions/export.csv')
    assert resp.status_code == 200
    assert resp.mimetype == 'text/csv'
    rows = list(csv.DictReader(io.StringIO(resp.get_data(as_text=True))))
    assert len(rows) == 1
    assert rows[0]['party'] == 'Acme Trading'
    assert rows[0]['total'] == '200.00'
    assert rows[0]['remaining_amount'] == '150.00'
    assert rows[0]['reference'] == 'INV-7'


def test_sale_below_minimum_creates_stock_alert(auth_client, catalog):
    post_sale(auth_client, catalog, quantity=16)
    alerts = data_of(auth_client.get('/api/notifications?type=STOCK_ALERT'))['items']
    assert len(alerts) == 1
    assert alerts[0]['link'] == f"/inventory?id={catalog.laptop['id']}"
    assert 'Laptop is low on stock' in alerts[0]['message']


def test_transactions_are_scoped_to_owner(app, auth_client, catalog):
    tx = data_of(post_sale(auth_client, catalog))
    make_user(app, 'other', role='Cashier')
    other = app.test_client()
    login(other, 'other')
    assert other.get(f"/api/transactions/{tx['id']}").status_code == 404
    assert data_of(other.get('/api/transactions'))['items'] == []
    resp = other.post('/api/payments', json={'transactionId': tx['id'], 'amount': 10})
    assert resp.status_code == 404


def test_item_price_above_cap_is_a_field_error(auth_client, catalog):
    resp = auth_client.post('/api/transactions', json={
        'type': 'PURCHASE', 'supplierId': catalog.supplier['id'],
        'items': [{'productId': catalog.cable['id'], 'quantity': 1, 'price': 1000001}],
    })
    assert resp.status_code == 400
    assert 'items[0].price' in resp.get_json()['errors']
    assert _product(auth_client, catalog.cable['id'])['costPrice'] == 4


def test_purchase_cannot_push_stock_over_cap(auth_client, catalog):
    resp = auth_client.post('/api/transactions', json={
        'type': 'PURCHASE', 'supplierId': catalog.supplier['id'],
        'items': [{'productId': catalog.cable['id'], 'quantity': 999999, 'price': 1}],
    })
    assert resp.status_code == 400
    assert 'would exceed' in resp.get_json()['errors']['items'][0]
    assert _product(auth_client, catalog.cable['id'])['quantity'] == 3
    supplier = data_of(auth_client.get(f"/api/suppliers/{catalog.supplier['id']}"))
    assert supplier['totalDue'] == 0

    resp = auth_client.post('/api/transactions', json={
        'type': 'ADJUSTMENT',
        'items': [{'productId': catalog.cable['id'], 'quantity': 999990, 'price': 0},
                  {'productId': catalog.cable['id'], 'quantity': 10, 'price': 0}],
    })
    assert resp.status_code == 400
    assert _product(auth_client, catalog.cable['id'])['quantity'] == 3


def test_cancel_purchase_after_its_stock_was_sold(auth_client, catalog):
    purchase = data_of(auth_client.post('/api/transactions', json={
        'type': 'PURCHASE', 'supplierId': catalog.supplier['id'],
        'items': [{'productId': catalog.cable['id'], 'quantity': 10, 'price': 4}],
    }))
    assert _product(auth_client, catalog.cable['id'])['quantity'] == 13
    data_of(auth_client.post('/api/transactions', json={
        'type': 'SALE', 'clientId': catalog.client['id'],
        'items': [{'productId': catalog.cable['id'], 'quantity': 12, 'price': 10}],
    }))

    resp = auth_client.put(f"/api/transactions/{purchase['id']}", json={'status': 'CANCELLED'})
    assert resp.status_code == 400
    assert 'not enough stock of USB Cable' in resp.get_json()['error']
    assert _product(auth_client, catalog.cable['id'])['quantity'] == 1
    assert data_of(auth_client.get(f"/api/transactions/{purchase['id']}"))['status'] == 'PENDING'
    supplier = data_of(auth_client.get(f"/api/suppliers/{catalog.supplier['id']}"))
    assert supplier['totalDue'] == 40


def test_cancel_sale_cannot_push_stock_over_cap(auth_client, catalog):
    sale = data_of(post_sale(auth_client, catalog, quantity=1))
    data_of(auth_client.post('/api/transactions', json={
        'type': 'ADJUSTMENT',
        'items': [{'productId': catalog.laptop['id'], 'quantity': 999981, 'price': 0}],
    }))
    assert _product(auth_client, catalog.laptop['id'])['quantity'] == 1000000

    resp = auth_client.put(f"/api/transactions/{sale['id']}", json={'status': 'CANCELLED'})
    assert resp.status_code == 400
    assert 'would exceed' in resp.get_json()['error']
    assert _product(auth_client, catalog.laptop['id'])['quantity'] == 1000000
