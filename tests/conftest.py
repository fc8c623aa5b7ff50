from types import SimpleNamespace

import pytest
from passlib.hash import pbkdf2_sha256

from app import create_app
from config import TestConfig
from models import db, User

OWNER_PASSWORD = 'secret123'


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def make_user(app, username, password=OWNER_PASSWORD, role='Admin'):
    with app.app_context():
        user = User(username=username, password_hash=pbkdf2_sha256.hash(password), role=role)
        db.session.add(user)
        db.session.commit()
        return user.id


def login(client, username, password=OWNER_PASSWORD):
    return client.post('/api/auth/login', json={'username': username, 'password': password})


@pytest.fixture
def owner_id(app):
    return make_user(app, 'owner')


@pytest.fixture
def auth_client(app, owner_id):
    c = app.test_client()
    resp = login(c, 'owner')
    assert resp.status_code == 200
    return c


def data_of(resp):
    body = resp.get_json()
    assert body['success'] is True, body
    return body['data']


@pytest.fixture
def catalog(auth_client):
    """A category, a supplier, a client and two products (one already below its minimum)."""
    category = data_of(auth_client.post('/api/categories', json={'name': 'Electronics'}))
    supplier = data_of(auth_client.post('/api/suppliers', json={
        'name': 'Tech Supplies Inc', 'email': 'contact@techsupplies.com',
        'phone': '+1234567890', 'address': '123 Tech Street',
    }))
    client = data_of(auth_client.post('/api/clients', json={
        'name': 'Acme Trading', 'phone': '0600000000', 'address': 'Casablanca',
    }))
    laptop = data_of(auth_client.post('/api/products', json={
        'name': 'Laptop', 'sku': 'LAP-001', 'price': 100, 'costPrice': 70,
        'quantity': 20, 'minQuantity': 5,
        'categoryId': category['id'], 'supplierId': supplier['id'],
    }))
    cable = data_of(auth_client.post('/api/products', json={
        'name': 'USB Cable', 'sku': 'CAB-001', 'price': 10, 'costPrice': 4,
        'quantity': 3, 'minQuantity': 5,
        'categoryId': category['id'], 'supplierId': supplier['id'],
    }))
    return SimpleNamespace(category=category, supplier=supplier, client=client,
                           laptop=laptop, cable=cable)


def post_sale(auth_client, catalog, quantity=2, amount_paid=0, **extra):
    payload = {
        'type': 'SALE',
        'clientId': catalog.client['id'],
        'amountPaid': amount_paid,
        'paymentMethod': 'CASH',
        'items': [{'productId': catalog.laptop['id'], 'quantity': quantity, 'price': 100}],
    }
    payload.update(extra)
    return auth_client.post('/api/transactions', json=payload)
