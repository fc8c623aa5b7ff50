from datetime import datetime
from decimal import Decimal

import pytest

from conftest import data_of, post_sale

from models import db, Client, Product, Transaction, Money, money, qty
from routes.balance_utils import reconcile_balances
from routes.i18n import t, bilingual, day_word, unit_label
from routes.utils import to_decimal, parse_decimal, parse_date


def test_money_rounds_half_up():
    column = Money()
    assert column.process_bind_param(Decimal('2.345'), None) == Decimal('2.35')
    assert column.process_bind_param(1.005, None) == Decimal('1.01')
    assert column.process_result_value('bogus', None) == Decimal('0.00')
    assert money(Decimal('10.499')) == 10.5
    assert qty(Decimal('3.000')) == 3
    assert qty(Decimal('2.250')) == 2.25


def test_to_decimal_is_lenient():
    assert to_decimal('1,234.567') == Decimal('1234.57')
    assert to_decimal('(12.5)') == Decimal('-12.50')
    assert to_decimal('n/a') == Decimal('0.00')
    assert to_decimal(None) == Decimal('0.00')
    assert to_decimal(True) == Decimal('0.00')


def test_parse_decimal_collects_errors():
    errors = {}
    assert parse_decimal('12.345', 'price', errors) == Decimal('12.35')
    assert parse_decimal(None, 'amount', errors) is None
    assert parse_decimal('abc', 'quantity', errors) is None
    assert parse_decimal(None, 'optional', errors, required=False) is None
    assert set(errors) == {'amount', 'quantity'}


def test_parse_date():
    assert parse_date('2024-01-31') == datetime(2024, 1, 31)
    end = parse_date('2024-01-31', end_of_day=True)
    assert end.date() == datetime(2024, 1, 31).date() and end.hour == 23
    assert parse_date('2024-01-31T10:30:00Z') == datetime(2024, 1, 31, 10, 30)
    errors = {}
    assert parse_date('31/01/2024', 'date', errors) is None
    assert 'date' in errors


def test_translation_catalogue():
    assert t('ar', 'day') == 'يوم'
    assert t('fr', 'day') == 'day'
    assert day_word('en', 1) == 'day'
    assert day_word('en', -3) == 'days'
    assert unit_label('ar', 'KG') == 'كغ'
    en, ar = bilingual('payment_received_message', currency=lambda lang: t(lang, 'currency'),
                       amount='10.00', transaction_id=4)
    assert en == 'Payment of DH 10.00 received for transaction #4.'
    assert 'درهم' in ar and '10.00' in ar


def test_product_validators(app):
    with app.app_context():
        with pytest.raises(ValueError):
            Product(sku='no spaces allowed')
        with pytest.raises(ValueError):
            Product(sku='OK-1', price=-1)
        with pytest.raises(ValueError):
            Product(sku='OK-1', unit='LITRE')
        product = Product(name='Flour', sku='FLR-1', quantity='5', min_quantity=2, unit='KG')
        assert product.quantity == Decimal('5.000')
        assert not product.is_low_stock()
        with pytest.raises(ValueError):
            product.adjust_stock(Decimal('-5.5'))
        product.adjust_stock(Decimal('-3.5'))
        assert product.is_low_stock()


def test_transaction_party(app, auth_client, catalog):
    tx = data_of(post_sale(auth_client, catalog))
    with app.app_context():
        row = db.session.get(Transaction, tx['id'])
        assert row.party.id == catalog.client['id']
        assert row.days_until_due() is None


def test_reconcile_reports_and_fixes_drift(app, auth_client, catalog):
    tx = data_of(post_sale(auth_client, catalog, quantity=2, amount_paid=50))
    with app.app_context():
        client = db.session.get(Client, catalog.client['id'])
        client.balance = Decimal('999.00')
        row = db.session.get(Transaction, tx['id'])
        row.amount_paid = Decimal('70.00')
        db.session.commit()

        drifts = reconcile_balances()
        fields = {(d['entity'], d['field']) for d in drifts}
        assert ('client', 'balance') in fields
        assert ('transaction', 'amountPaid') in fields
        assert {'entity': 'client', 'id': client.id, 'field': 'balance',
                'expected': '150.00', 'actual': '999.00'} in drifts

        reconcile_balances(fix=True)
        db.session.commit()
        assert reconcile_balances() == []
        assert db.session.get(Transaction, tx['id']).remaining_amount == Decimal('150.00')
