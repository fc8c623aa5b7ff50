import pytest

from conftest import data_of, make_user, login


@pytest.fixture
def rent(auth_client):
    return data_of(auth_client.post('/api/expense-categories', json={'name': 'Rent'}))


def _expense(auth_client, category, **overrides):
    payload = {'amount': 1500, 'description': 'October rent', 'categoryId': category['id']}
    payload.update(overrides)
    return auth_client.post('/api/expenses', json=payload)


def test_create_and_list_expenses(auth_client, rent):
    first = data_of(_expense(auth_client, rent))
    assert first['status'] == 'COMPLETED'
    assert first['category']['name'] == 'Rent'
    _expense(auth_client, rent, amount=250.5, description='Cleaning', date='2024-03-10')

    listing = data_of(auth_client.get('/api/expenses'))
    assert listing['metadata']['total'] == 2
    assert listing['totalAmount'] == 1750.5

    march = data_of(auth_client.get('/api/expenses?startDate=2024-03-01&endDate=2024-03-10'))
    assert [e['description'] for e in march['items']] == ['Cleaning']

    found = data_of(auth_client.get('/api/expenses?search=octo'))
    assert found['totalAmount'] == 1500


def test_expense_amount_must_be_positive(auth_client, rent):
    resp = _expense(auth_client, rent, amount=0)
    assert resp.status_code == 400
    assert 'amount' in resp.get_json()['errors']

    resp = _expense(auth_client, rent, amount='abc')
    assert 'amount' in resp.get_json()['errors']

    resp = _expense(auth_client, rent, status='LOST')
    assert 'status' in resp.get_json()['errors']


def test_expense_category_must_exist_and_be_owned(app, auth_client, rent):
    assert _expense(auth_client, {'id': 9999}).status_code == 404

    make_user(app, 'other', role='Manager')
    other = app.test_client()
    login(other, 'other')
    resp = _expense(other, rent)
    assert resp.status_code == 403


def test_update_and_delete_expense(auth_client, rent):
    expense = data_of(_expense(auth_client, rent))
    resp = auth_client.put(f"/api/expenses/{expense['id']}", json={'amount': 1400, 'status': 'PENDING'})
    updated = data_of(resp)
    assert updated['amount'] == 1400
    assert updated['status'] == 'PENDING'

    assert auth_client.delete(f"/api/expenses/{expense['id']}").status_code == 200
    assert auth_client.get(f"/api/expenses/{expense['id']}").status_code == 404


def test_expense_categories(auth_client, rent):
    assert auth_client.post('/api/expense-categories', json={'name': 'rent'}).status_code == 409
    assert auth_client.post('/api/expense-categories', json={}).status_code == 400

    _expense(auth_client, rent)
    categories = data_of(auth_client.get('/api/expense-categories'))['items']
    assert categories == [dict(categories[0], name='Rent', expenseCount=1)]

    assert auth_client.delete(f"/api/expense-categories/{rent['id']}").status_code == 409

    fuel = data_of(auth_client.post('/api/expense-categories', json={'name': 'Fuel'}))
    resp = auth_client.put(f"/api/expense-categories/{fuel['id']}", json={'name': 'Transport'})
    assert data_of(resp)['name'] == 'Transport'
    assert auth_client.delete(f"/api/expense-categories/{fuel['id']}").status_code == 200


def test_expense_category_listing_is_paginated(auth_client):
    for name in ('Fuel', 'Rent', 'Wages'):
        auth_client.post('/api/expense-categories', json={'name': name})
    page = data_of(auth_client.get('/api/expense-categories?limit=2'))
    assert [c['name'] for c in page['items']] == ['Fuel', 'Rent']
    assert page['metadata'] == {'total': 3, 'page': 1, 'limit': 2, 'totalPages': 2}
