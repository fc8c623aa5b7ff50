from flask import Blueprint, request
from flask_login import login_required, current_user
from sqlalchemy import func, or_
from decimal import Decimal

from models import db, Client, Transaction, money
from .errors import ApiError, ok
from .utils import (get_json, clean_str, parse_decimal, paginate_query, get_owned_or_404, log_action,
                    to_decimal, like_pattern, validate_contact)

clients_bp = Blueprint('clients', __name__, url_prefix='/api')


def _email_taken(email, exclude_id=None):
    q = Client.query.filter(Client.user_id == current_user.id,
                            func.lower(Client.email) == email.lower())
    if exclude_id is not None:
        q = q.filter(Client.id != exclude_id)
    return db.session.query(q.exists()).scalar()


def _parse_amounts(data, errors):
    amounts = {}
    for key in ('totalDue', 'amountPaid'):
        if key in data:
            value = parse_decimal(data.get(key), key, errors, required=False)
            if value is None and key not in errors:
                value = Decimal('0.00')
            if value is not None and value < 0:
                errors.setdefault(key, []).append(f'{key} cannot be negative')
            amounts[key] = value
    return amounts


@clients_bp.route('/clients', methods=['GET'])
@login_required
def list_clients():
    query = Client.query.filter(Client.user_id == current_user.id)
    search = request.args.get('search')
    if search:
        query = query.filter(or_(Client.name.ilike(like_pattern(search)),
                                 Client.email.ilike(like_pattern(search)),
                                 Client.phone.ilike(like_pattern(search)),
                                 Client.address.ilike(like_pattern(search))))
    if request.args.get('withBalance') in ('1', 'true'):
        query = query.filter(Client.balance > 0)
    items, metadata = paginate_query(query.order_by(Client.created_at.desc(), Client.id.desc()))

    ids = [c.id for c in items]
    counts = {}
    if ids:
        counts = dict(db.session.query(Transaction.client_id, func.count(Transaction.id))
                      .filter(Transaction.client_id.in_(ids))
                      .group_by(Transaction.client_id).all())
    return ok({"items": [c.to_dict(transaction_count=counts.get(c.id, 0)) for c in items],
               "metadata": metadata})


@clients_bp.route('/clients', methods=['POST'])
@login_required
def create_client():
    data = get_json()
    fields, errors = validate_contact(data)
    amounts = _parse_amounts(data, errors)
    if errors:
        raise ApiError.validation(errors)
    if fields.get('email') and _email_taken(fields['email']):
        raise ApiError.conflict('A client with this email already exists')

    total_due = amounts.get('totalDue') or Decimal('0.00')
    amount_paid = amounts.get('amountPaid') or Decimal('0.00')
    client = Client(
        user_id=current_user.id,
        notes=clean_str(data.get('notes')),
        opening_due=total_due,
        opening_paid=amount_paid,
        total_due=total_due,
        amount_paid=amount_paid,
        balance=total_due - amount_paid,
        **fields,
    )
    db.session.add(client)
    log_action(f'Created client: {client.name}.')
    db.session.commit()
    return ok(client.to_dict(transaction_count=0), 201)


@clients_bp.route('/clients/credit-report', methods=['GET'])
@login_required
def credit_report():
    """Clients with an outstanding balance, largest first, with portfolio totals."""
    clients = Client.query.filter(Client.user_id == current_user.id, Client.balance > 0) \
        .order_by(Client.balance.desc()).all()
    totals = db.session.query(
        func.coalesce(func.sum(Client.total_due), 0),
        func.coalesce(func.sum(Client.amount_paid), 0),
        func.coalesce(func.sum(Client.balance), 0),
        func.count(Client.id),
    ).filter(Client.user_id == current_user.id).one()
    total_due, amount_paid, balance, count = totals
    return ok({
        "clients": [c.to_dict() for c in clients],
        "summary": {
            "totalClients": count,
            "clientsWithBalance": len(clients),
            "totalDue": money(to_decimal(total_due)),
            "amountPaid": money(to_decimal(amount_paid)),
            "balance": money(to_decimal(balance)),
        },
    })


@clients_bp.route('/clients/<int:client_id>', methods=['GET'])
@login_required
def get_client(client_id):
    client = get_owned_or_404(Client, client_id, 'Client')
    data = client.to_dict(transaction_count=client.transactions.count())
    recent = client.transactions.order_by(Transaction.date.desc()).limit(10).all()
    data["recentTransactions"] = [t.to_dict(include_items=False) for t in recent]
    return ok(data)


@clients_bp.route('/clients/<int:client_id>', methods=['PUT'])
@login_required
def update_client(client_id):
    client = get_owned_or_404(Client, client_id, 'Client')
    data = get_json()
    fields, errors = validate_contact(data, partial=True)
    amounts = _parse_amounts(data, errors)
    if errors:
        raise ApiError.validation(errors)
    email = fields.get('email')
    if email and (client.email or '').lower() != email.lower() and _email_taken(email, client.id):
        raise ApiError.conflict('A client with this email already exists')

    for key, value in fields.items():
        setattr(client, key, value)
    if 'notes' in data:
        client.notes = clean_str(data.get('notes'))

    # Hand edits to the totals are carried as opening amounts so reconciliation keeps them.
    if 'totalDue' in amounts:
        client.opening_due = to_decimal(client.opening_due) + amounts['totalDue'] - to_decimal(client.total_due)
        client.total_due = amounts['totalDue']
    if 'amountPaid' in amounts:
        client.opening_paid = to_decimal(client.opening_paid) + amounts['amountPaid'] - to_decimal(client.amount_paid)
        client.amount_paid = amounts['amountPaid']
    client.balance = to_decimal(client.total_due) - to_decimal(client.amount_paid)

    log_action(f'Updated client #{client.id}: {client.name}.')
    db.session.commit()
    return ok(client.to_dict(transaction_count=client.transactions.count()))


@clients_bp.route('/clients/<int:client_id>', methods=['DELETE'])
@login_required
def delete_client(client_id):
    client = get_owned_or_404(Client, client_id, 'Client')
    count = client.transactions.count()
    if count:
        raise ApiError.conflict(f'Cannot delete client with {count} existing transaction(s)')
    db.session.delete(client)
    log_action(f'Deleted client #{client_id}: {client.name}.')
    db.session.commit()
    return ok({"id": client_id})
