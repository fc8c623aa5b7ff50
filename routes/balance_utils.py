"""
Balance reconciliation for transactions, payments and party accounts.

Every write keeps three identities true inside the caller's unit of work:

    transaction.remaining_amount = transaction.total - transaction.amount_paid
    party.balance                = party.total_due - party.amount_paid
    sum(payment.amount for a transaction) = transaction.amount_paid

None of these functions commit; routes commit once the whole change (including
the audit row) is in the session, and roll back on ApiError.
"""
from collections import defaultdict
from decimal import Decimal
import logging

from sqlalchemy import func

from models import (db, Transaction, TransactionItem, Payment, Product, Client, Supplier,
                    TRANSACTION_TYPES, PAYMENT_METHODS, PAYMENT_STATUSES, MAX_PRICE, MAX_QUANTITY, utcnow)
from .errors import ApiError
from .utils import parse_decimal, parse_date, clean_str, to_decimal
from .alert_utils import notify_payment_received

logger = logging.getLogger(__name__)

ZERO = Decimal('0.00')
MIN_PAYMENT = Decimal('0.01')
TOTAL_TOLERANCE = Decimal('0.01')


def lock_transaction(tx_id, user_id):
    """Load a transaction with a row lock, scoped to its owner."""
    try:
        tx_id = int(tx_id)
    except (TypeError, ValueError):
        raise ApiError.bad_request('Invalid transaction id', {'transactionId': ['transactionId must be an integer']})
    tx = db.session.query(Transaction).filter(Transaction.id == tx_id).with_for_update().first()
    if tx is None or tx.user_id != user_id:
        raise ApiError.not_found('Transaction not found')
    return tx


def _lock_row(model, obj_id):
    """Re-read a row under a FOR UPDATE lock, refreshing any copy already in the session."""
    if obj_id is None:
        return None
    return db.session.query(model).filter(model.id == obj_id) \
        .with_for_update().populate_existing().one_or_none()


def _lock_party(tx_type, client_id, supplier_id):
    if tx_type == 'SALE':
        return _lock_row(Client, client_id)
    if tx_type == 'PURCHASE':
        return _lock_row(Supplier, supplier_id)
    return None


def _move_party(party, total_due=ZERO, amount_paid=ZERO):
    if party is None:
        return
    party.total_due = to_decimal(party.total_due) + total_due
    party.amount_paid = to_decimal(party.amount_paid) + amount_paid
    party.balance = to_decimal(party.total_due) - to_decimal(party.amount_paid)


def _sync_status(tx, delta):
    """Settle or reopen a transaction after its paid amount moved by `delta`."""
    if tx.status == 'CANCELLED':
        return
    if tx.remaining_amount <= ZERO:
        tx.status = 'COMPLETED'
    elif delta < ZERO and tx.status == 'COMPLETED':
        tx.status = 'PENDING'


def _apply_paid_delta(tx, delta, party):
    tx.amount_paid = to_decimal(tx.amount_paid) + delta
    tx.remaining_amount = to_decimal(tx.total) - to_decimal(tx.amount_paid)
    if tx.status != 'CANCELLED':
        _move_party(party, amount_paid=delta)
    _sync_status(tx, delta)


def _payment_party(payment):
    if payment.client_id is not None:
        return _lock_row(Client, payment.client_id)
    if payment.supplier_id is not None:
        return _lock_row(Supplier, payment.supplier_id)
    return None


def _validate_method(value, errors, field='paymentMethod', default='CASH'):
    method = clean_str(value) or default
    if method is not None and method not in PAYMENT_METHODS:
        errors.setdefault(field, []).append(f'{field} must be one of {", ".join(PAYMENT_METHODS)}')
    return method


def _parse_items(user_id, tx_type, raw_items, errors):
    if not isinstance(raw_items, list) or not raw_items:
        errors.setdefault('items', []).append('At least one item is required')
        return []

    product_ids = set()
    for raw in raw_items:
        if isinstance(raw, dict):
            try:
                product_ids.add(int(raw.get('productId')))
            except (TypeError, ValueError):
                pass
    products = {}
    if product_ids:
        locked = Product.query.filter(Product.id.in_(product_ids), Product.user_id == user_id) \
            .order_by(Product.id).with_for_update().populate_existing().all()
        for p in locked:
            products[p.id] = p

    parsed = []
    for idx, raw in enumerate(raw_items):
        field = f'items[{idx}]'
        if not isinstance(raw, dict):
            errors.setdefault(field, []).append('Item must be an object')
            continue
        try:
            product = products.get(int(raw.get('productId')))
        except (TypeError, ValueError):
            product = None
        if product is None:
            errors.setdefault(f'{field}.productId', []).append('Product not found')
            continue
        quantity = parse_decimal(raw.get('quantity'), f'{field}.quantity', errors, places='0.001')
        if quantity is not None and quantity <= 0:
            errors.setdefault(f'{field}.quantity', []).append('Quantity must be greater than 0')
            quantity = None
        if raw.get('price') in (None, ''):
            price = product.price if tx_type == 'SALE' else product.cost_price
        else:
            price = parse_decimal(raw.get('price'), f'{field}.price', errors)
            if price is not None and not (ZERO <= price <= MAX_PRICE):
                errors.setdefault(f'{field}.price', []).append(f'Price must be between 0 and {MAX_PRICE}')
                price = None
        if quantity is None or price is None:
            continue
        parsed.append((product, quantity, price))
    return parsed


def record_transaction(user, data):
    """Create a transaction with its items, stock moves, party totals and initial payment."""
    errors = {}
    tx_type = clean_str(data.get('type'))
    if tx_type not in TRANSACTION_TYPES:
        errors.setdefault('type', []).append(f'type must be one of {", ".join(TRANSACTION_TYPES)}')

    requested_status = clean_str(data.get('status'))
    if requested_status is not None and requested_status not in ('PENDING', 'COMPLETED'):
        errors.setdefault('status', []).append('status must be PENDING or COMPLETED')

    method = _validate_method(data.get('paymentMethod'), errors, default=None)
    due_date = parse_date(data.get('paymentDueDate'), 'paymentDueDate', errors)
    amount_paid = parse_decimal(data.get('amountPaid'), 'amountPaid', errors, required=False)
    if amount_paid is None:
        amount_paid = ZERO
    if amount_paid < ZERO:
        errors.setdefault('amountPaid', []).append('amountPaid cannot be negative')

    items = _parse_items(user.id, tx_type, data.get('items'), errors)

    client = supplier = None
    if data.get('clientId') not in (None, ''):
        client = _lock_row(Client, _int_or_none(data.get('clientId')) or 0)
        if client is None or client.user_id != user.id:
            errors.setdefault('clientId', []).append('Client not found')
            client = None
    if data.get('supplierId') not in (None, ''):
        supplier = _lock_row(Supplier, _int_or_none(data.get('supplierId')) or 0)
        if supplier is None or supplier.user_id != user.id:
            errors.setdefault('supplierId', []).append('Supplier not found')
            supplier = None
    if tx_type == 'SALE' and client is None and 'clientId' not in errors:
        errors.setdefault('clientId', []).append('A client is required for sales')
    if tx_type == 'PURCHASE' and supplier is None and 'supplierId' not in errors:
        errors.setdefault('supplierId', []).append('A supplier is required for purchases')

    if errors:
        raise ApiError.validation(errors)

    total = sum((to_decimal(q * p) for _, q, p in items), ZERO)
    if data.get('total') not in (None, ''):
        supplied_total = to_decimal(data.get('total'))
        if abs(supplied_total - total) > TOTAL_TOLERANCE:
            raise ApiError.bad_request(
                f'Total {format(supplied_total, "0.2f")} does not match the sum of items ({format(total, "0.2f")})')
    if amount_paid > total:
        raise ApiError.bad_request(
            f'Amount paid cannot exceed the transaction total ({format(total, "0.2f")})')

    moved = defaultdict(Decimal)
    for product, quantity, _ in items:
        moved[product.id] += quantity
    for product, _, _ in items:
        if tx_type == 'SALE' and moved[product.id] > Decimal(product.quantity):
            raise ApiError.bad_request(
                f'Insufficient stock for {product.name}. Available: {product.quantity}, requested: {moved[product.id]}')
        if tx_type != 'SALE' and Decimal(product.quantity) + moved[product.id] > MAX_QUANTITY:
            raise ApiError.validation(
                {'items': [f'Stock of {product.name} would exceed {MAX_QUANTITY}']})

    remaining = total - amount_paid
    status = requested_status or ('COMPLETED' if remaining == ZERO else 'PENDING')

    tx = Transaction(
        user_id=user.id,
        type=tx_type,
        status=status,
        total=total,
        amount_paid=amount_paid,
        remaining_amount=remaining,
        payment_method=method,
        payment_due_date=due_date,
        reference=clean_str(data.get('reference')),
        notes=clean_str(data.get('notes')),
        client_id=client.id if client else None,
        supplier_id=supplier.id if supplier else None,
        date=parse_date(data.get('date')) or utcnow(),
    )
    db.session.add(tx)

    sign = Decimal('-1') if tx_type == 'SALE' else Decimal('1')
    for product, quantity, price in items:
        tx.items.append(TransactionItem(product_id=product.id, quantity=quantity, price=price,
                                        cost_price=product.cost_price))
        product.adjust_stock(sign * quantity)
        if tx_type == 'PURCHASE':
            product.cost_price = price

    db.session.flush()

    party = client if tx_type == 'SALE' else supplier if tx_type == 'PURCHASE' else None
    _move_party(party, total_due=total, amount_paid=amount_paid)

    if amount_paid > ZERO:
        db.session.add(Payment(
            user_id=user.id,
            transaction_id=tx.id,
            client_id=tx.client_id if tx_type == 'SALE' else None,
            supplier_id=tx.supplier_id if tx_type == 'PURCHASE' else None,
            amount=amount_paid,
            payment_method=method or 'CASH',
            status='COMPLETED',
            reference=tx.reference,
            notes='Initial payment',
            date=tx.date,
        ))
    logger.info("Recorded %s transaction #%s total=%s paid=%s", tx_type, tx.id, total, amount_paid)
    return tx


def _int_or_none(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def apply_payment(user, data):
    """Record a payment against a transaction's remaining balance."""
    errors = {}
    if data.get('transactionId') in (None, ''):
        errors.setdefault('transactionId', []).append('transactionId is required')
    amount = parse_decimal(data.get('amount'), 'amount', errors)
    if amount is not None and amount < MIN_PAYMENT:
        errors.setdefault('amount', []).append('Amount must be at least 0.01')
    method = _validate_method(data.get('paymentMethod'), errors)
    status = clean_str(data.get('status')) or 'COMPLETED'
    if status not in PAYMENT_STATUSES:
        errors.setdefault('status', []).append(f'status must be one of {", ".join(PAYMENT_STATUSES)}')
    payment_date = parse_date(data.get('date'), 'date', errors)
    if errors:
        raise ApiError.validation(errors)

    tx = lock_transaction(data.get('transactionId'), user.id)
    if tx.status == 'CANCELLED':
        raise ApiError.bad_request('Cannot record a payment on a cancelled transaction')
    if tx.type == 'SALE' and tx.client_id is None:
        raise ApiError.bad_request('Transaction has no client')
    remaining = to_decimal(tx.remaining_amount)
    if amount > remaining:
        raise ApiError.bad_request(f'Payment amount exceeds remaining amount ({format(remaining, "0.2f")})')

    party = _lock_party(tx.type, tx.client_id, tx.supplier_id)
    payment = Payment(
        user_id=user.id,
        transaction_id=tx.id,
        client_id=tx.client_id if tx.type == 'SALE' else None,
        supplier_id=tx.supplier_id if tx.type == 'PURCHASE' else None,
        amount=amount,
        payment_method=method,
        status=status,
        reference=clean_str(data.get('reference')),
        notes=clean_str(data.get('notes')),
        date=payment_date or utcnow(),
    )
    db.session.add(payment)
    _apply_paid_delta(tx, amount, party)
    db.session.flush()
    notify_payment_received(tx, amount)
    logger.info("Payment #%s of %s applied to transaction #%s (remaining %s)",
                payment.id, amount, tx.id, tx.remaining_amount)
    return payment


def change_payment(user, payment, data):
    """Update a payment. Amount changes are applied as a difference against the
    transaction and party; other fields are updated in place."""
    errors = {}
    new_amount = None
    if 'amount' in data:
        new_amount = parse_decimal(data.get('amount'), 'amount', errors)
        if new_amount is not None and new_amount < MIN_PAYMENT:
            errors.setdefault('amount', []).append('Amount must be at least 0.01')
    if 'paymentMethod' in data:
        payment_method = _validate_method(data.get('paymentMethod'), errors)
    if 'status' in data:
        status = clean_str(data.get('status'))
        if status not in PAYMENT_STATUSES:
            errors.setdefault('status', []).append(f'status must be one of {", ".join(PAYMENT_STATUSES)}')
    payment_date = parse_date(data.get('date'), 'date', errors) if 'date' in data else None
    if errors:
        raise ApiError.validation(errors)

    tx = lock_transaction(payment.transaction_id, user.id)
    if new_amount is not None and new_amount != payment.amount:
        diff = new_amount - to_decimal(payment.amount)
        if tx.status == 'CANCELLED':
            raise ApiError.bad_request('Cannot change a payment on a cancelled transaction')
        remaining = to_decimal(tx.remaining_amount)
        if diff > ZERO and diff > remaining:
            raise ApiError.bad_request(
                f'Payment increase exceeds remaining amount ({format(remaining, "0.2f")})')
        payment.amount = new_amount
        _apply_paid_delta(tx, diff, _payment_party(payment))
        logger.info("Payment #%s changed by %s on transaction #%s", payment.id, diff, tx.id)

    if 'paymentMethod' in data:
        payment.payment_method = payment_method
    if 'status' in data:
        payment.status = status
    if 'reference' in data:
        payment.reference = clean_str(data.get('reference'))
    if 'notes' in data:
        payment.notes = clean_str(data.get('notes'))
    if payment_date is not None:
        payment.date = payment_date
    return payment


def remove_payment(user, payment):
    """Reverse a payment on its transaction and party, then delete it."""
    tx = lock_transaction(payment.transaction_id, user.id)
    amount = to_decimal(payment.amount)
    _apply_paid_delta(tx, -amount, _payment_party(payment))
    db.session.delete(payment)
    logger.info("Payment #%s of %s removed from transaction #%s", payment.id, amount, tx.id)
    return tx


def cancel_transaction(tx):
    """Cancel a pending transaction: put stock back and drop its party contribution."""
    sign = Decimal('1') if tx.type == 'SALE' else Decimal('-1')
    moved = defaultdict(Decimal)
    for item in tx.items:
        moved[item.product_id] += sign * Decimal(item.quantity)
    products = {}
    for product_id in sorted(moved):
        product = _lock_row(Product, product_id)
        new_qty = Decimal(product.quantity) + moved[product_id]
        if new_qty < 0:
            raise ApiError.bad_request(
                f'Cannot cancel: not enough stock of {product.name} left to reverse this transaction')
        if new_qty > MAX_QUANTITY:
            raise ApiError.bad_request(
                f'Cannot cancel: stock of {product.name} would exceed {MAX_QUANTITY}')
        products[product_id] = product
    party = _lock_party(tx.type, tx.client_id, tx.supplier_id)

    for product_id, change in moved.items():
        products[product_id].adjust_stock(change)
    _move_party(party,
                total_due=-to_decimal(tx.total),
                amount_paid=-to_decimal(tx.amount_paid))
    tx.status = 'CANCELLED'
    logger.info("Transaction #%s cancelled", tx.id)
    return tx


def change_transaction(tx, data):
    """Status and annotation updates. Status may only move out of PENDING."""
    errors = {}
    new_status = clean_str(data.get('status')) if 'status' in data else None
    if new_status is not None and new_status not in ('PENDING', 'COMPLETED', 'CANCELLED'):
        errors.setdefault('status', []).append('status must be PENDING, COMPLETED or CANCELLED')
    due_date = parse_date(data.get('paymentDueDate'), 'paymentDueDate', errors) if 'paymentDueDate' in data else None
    if errors:
        raise ApiError.validation(errors)

    if new_status is not None and new_status != tx.status:
        if tx.status in ('COMPLETED', 'CANCELLED'):
            raise ApiError.bad_request(f'Cannot update a {tx.status.lower()} transaction')
        if new_status == 'CANCELLED':
            cancel_transaction(tx)
        else:
            tx.status = new_status
    elif tx.status == 'CANCELLED' and data:
        raise ApiError.bad_request('Cannot update a cancelled transaction')

    if 'notes' in data:
        tx.notes = clean_str(data.get('notes'))
    if 'reference' in data:
        tx.reference = clean_str(data.get('reference'))
    if 'paymentDueDate' in data:
        tx.payment_due_date = due_date
    return tx


def _drift(entity, obj_id, field, expected, actual):
    return {"entity": entity, "id": obj_id, "field": field,
            "expected": format(expected, '0.2f'), "actual": format(to_decimal(actual), '0.2f')}


def reconcile_balances(user_id=None, fix=False):
    """Recompute every derived balance from the source rows.

    Transaction paid amounts come from their payments; party totals come from
    non-cancelled transactions (plus a client's manually entered opening amounts).
    Returns a list of drift records; with `fix` the stored values are corrected
    in the session (caller commits).
    """
    drifts = []

    paid_q = db.session.query(Payment.transaction_id, func.coalesce(func.sum(Payment.amount), 0)) \
        .group_by(Payment.transaction_id)
    tx_q = Transaction.query
    if user_id is not None:
        paid_q = paid_q.filter(Payment.user_id == user_id)
        tx_q = tx_q.filter(Transaction.user_id == user_id)
    paid_by_tx = {tid: to_decimal(total) for tid, total in paid_q.all()}

    due = defaultdict(lambda: ZERO)
    paid = defaultdict(lambda: ZERO)
    for tx in tx_q.all():
        expected_paid = paid_by_tx.get(tx.id, ZERO)
        expected_remaining = to_decimal(tx.total) - expected_paid
        if expected_paid != to_decimal(tx.amount_paid):
            drifts.append(_drift('transaction', tx.id, 'amountPaid', expected_paid, tx.amount_paid))
        if expected_remaining != to_decimal(tx.remaining_amount):
            drifts.append(_drift('transaction', tx.id, 'remainingAmount', expected_remaining, tx.remaining_amount))
        if fix:
            tx.amount_paid = expected_paid
            tx.remaining_amount = expected_remaining
        if tx.status == 'CANCELLED':
            continue
        if tx.type == 'SALE' and tx.client_id:
            key = ('client', tx.client_id)
        elif tx.type == 'PURCHASE' and tx.supplier_id:
            key = ('supplier', tx.supplier_id)
        else:
            continue
        due[key] += to_decimal(tx.total)
        paid[key] += expected_paid

    parties = [('client', c) for c in (Client.query.filter_by(user_id=user_id) if user_id else Client.query).all()]
    parties += [('supplier', s) for s in (Supplier.query.filter_by(user_id=user_id) if user_id else Supplier.query).all()]
    for kind, party in parties:
        key = (kind, party.id)
        expected_due = due[key]
        expected_paid = paid[key]
        if kind == 'client':
            expected_due += to_decimal(party.opening_due)
            expected_paid += to_decimal(party.opening_paid)
        expected_balance = expected_due - expected_paid
        for field, expected, actual in (('totalDue', expected_due, party.total_due),
                                        ('amountPaid', expected_paid, party.amount_paid),
                                        ('balance', expected_balance, party.balance)):
            if expected != to_decimal(actual):
                drifts.append(_drift(kind, party.id, field, expected, actual))
        if fix:
            party.total_due = expected_due
            party.amount_paid = expected_paid
            party.balance = expected_balance

    if drifts:
        logger.warning("Balance reconciliation found %d drift(s)%s", len(drifts), " (fixed)" if fix else "")
    return drifts
