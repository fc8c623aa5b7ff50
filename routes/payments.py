from flask import Blueprint, request
from flask_login import login_required, current_user

from models import db, Payment
from .balance_utils import apply_payment, change_payment, remove_payment
from .errors import ok
from .utils import (get_json, paginate_query, get_owned_or_404, parse_date, log_action,
                    invalidate_dashboard)

payments_bp = Blueprint('payments', __name__, url_prefix='/api')


@payments_bp.route('/payments', methods=['GET'])
@login_required
def list_payments():
    query = Payment.query.filter(Payment.user_id == current_user.id)
    transaction_id = request.args.get('transactionId', type=int)
    if transaction_id:
        query = query.filter(Payment.transaction_id == transaction_id)
    client_id = request.args.get('clientId', type=int)
    if client_id:
        query = query.filter(Payment.client_id == client_id)
    start = parse_date(request.args.get('startDate'))
    if start:
        query = query.filter(Payment.date >= start)
    end = parse_date(request.args.get('endDate'), end_of_day=True)
    if end:
        query = query.filter(Payment.date <= end)
    items, metadata = paginate_query(query.order_by(Payment.date.desc(), Payment.id.desc()))
    return ok({"items": [p.to_dict() for p in items], "metadata": metadata})


@payments_bp.route('/payments', methods=['POST'])
@login_required
def create_payment():
    payment = apply_payment(current_user, get_json())
    log_action(f'Recorded payment #{payment.id} of {format(payment.amount, "0.2f")} '
               f'for transaction #{payment.transaction_id}.')
    db.session.commit()
    invalidate_dashboard(current_user.id)
    return ok(payment.to_dict(), 201)


@payments_bp.route('/payments/<int:payment_id>', methods=['GET'])
@login_required
def get_payment(payment_id):
    return ok(get_owned_or_404(Payment, payment_id, 'Payment').to_dict())


@payments_bp.route('/payments/<int:payment_id>', methods=['PUT', 'PATCH'])
@login_required
def update_payment(payment_id):
    payment = get_owned_or_404(Payment, payment_id, 'Payment')
    change_payment(current_user, payment, get_json())
    log_action(f'Updated payment #{payment.id} (amount {format(payment.amount, "0.2f")}).')
    db.session.commit()
    invalidate_dashboard(current_user.id)
    return ok(payment.to_dict())


@payments_bp.route('/payments/<int:payment_id>', methods=['DELETE'])
@login_required
def delete_payment(payment_id):
    payment = get_owned_or_404(Payment, payment_id, 'Payment')
    amount = payment.amount
    tx = remove_payment(current_user, payment)
    log_action(f'Deleted payment #{payment_id} of {format(amount, "0.2f")} from transaction #{tx.id}.')
    db.session.commit()
    invalidate_dashboard(current_user.id)
    return ok({"id": payment_id, "transaction": tx.to_dict(include_items=False)})
