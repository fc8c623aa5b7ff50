from flask import Blueprint, request, send_file
from flask_login import login_required, current_user
import csv
import io
import logging

from models import db, Transaction, TRANSACTION_TYPES, TRANSACTION_STATUSES
from .balance_utils import record_transaction, change_transaction, lock_transaction
from .alert_utils import run_stock_alerts
from .errors import ApiError, ok
from .utils import (get_json, paginate_query, get_owned_or_404, parse_date, log_action,
                    invalidate_dashboard)

logger = logging.getLogger(__name__)

transactions_bp = Blueprint('transactions', __name__, url_prefix='/api')


def _filtered_query():
    query = Transaction.query.filter(Transaction.user_id == current_user.id)
    tx_type = request.args.get('type')
    if tx_type:
        if tx_type not in TRANSACTION_TYPES:
            raise ApiError.bad_request(f'Unknown transaction type: {tx_type}')
        query = query.filter(Transaction.type == tx_type)
    status = request.args.get('status')
    if status:
        if status not in TRANSACTION_STATUSES:
            raise ApiError.bad_request(f'Unknown transaction status: {status}')
        query = query.filter(Transaction.status == status)
    start = parse_date(request.args.get('startDate'))
    if start:
        query = query.filter(Transaction.date >= start)
    end = parse_date(request.args.get('endDate'), end_of_day=True)
    if end:
        query = query.filter(Transaction.date <= end)
    client_id = request.args.get('clientId', type=int)
    if client_id:
        query = query.filter(Transaction.client_id == client_id)
    supplier_id = request.args.get('supplierId', type=int)
    if supplier_id:
        query = query.filter(Transaction.supplier_id == supplier_id)
    return query.order_by(Transaction.date.desc(), Transaction.id.desc())


@transactions_bp.route('/transactions', methods=['GET'])
@login_required
def list_transactions():
    items, metadata = paginate_query(_filtered_query())
    return ok({"items": [t.to_dict() for t in items], "metadata": metadata})


@transactions_bp.route('/transactions', methods=['POST'])
@login_required
def create_transaction():
    tx = record_transaction(current_user, get_json())
    log_action(f'Recorded {tx.type} transaction #{tx.id} of {format(tx.total, "0.2f")} '
               f'(paid {format(tx.amount_paid, "0.2f")}).')
    if tx.type == 'SALE':
        run_stock_alerts(user_id=current_user.id, product_ids=[it.product_id for it in tx.items])
    db.session.commit()
    invalidate_dashboard(current_user.id)
    return ok(tx.to_dict(include_payments=True), 201)


@transactions_bp.route('/transactions/export.csv', methods=['GET'])
@login_required
def export_transactions_csv():
    si = io.StringIO()
    writer = csv.DictWriter(si, fieldnames=['id', 'date', 'type', 'status', 'party', 'total',
                                            'amount_paid', 'remaining_amount', 'payment_method',
                                            'payment_due_date', 'reference'])
    writer.writeheader()
    for tx in _filtered_query().all():
        party = tx.client or tx.supplier
        writer.writerow({
            'id': tx.id,
            'date': tx.date.strftime('%Y-%m-%d %H:%M') if tx.date else '',
            'type': tx.type,
            'status': tx.status,
            'party': party.name if party else '',
            'total': format(tx.total, '0.2f'),
            'amount_paid': format(tx.amount_paid, '0.2f'),
            'remaining_amount': format(tx.remaining_amount, '0.2f'),
            'payment_method': tx.payment_method or '',
            'payment_due_date': tx.payment_due_date.strftime('%Y-%m-%d') if tx.payment_due_date else '',
            'reference': tx.reference or '',
        })
    return send_file(io.BytesIO(si.getvalue().encode('utf-8')), mimetype='text/csv',
                     download_name='transactions.csv', as_attachment=True)


@transactions_bp.route('/transactions/<int:tx_id>', methods=['GET'])
@login_required
def get_transaction(tx_id):
    tx = get_owned_or_404(Transaction, tx_id, 'Transaction')
    return ok(tx.to_dict(include_payments=True))


@transactions_bp.route('/transactions/<int:tx_id>', methods=['PUT', 'PATCH'])
@login_required
def update_transaction(tx_id):
    tx = lock_transaction(tx_id, current_user.id)
    old_status = tx.status
    change_transaction(tx, get_json())
    if tx.status != old_status:
        log_action(f'Transaction #{tx.id} status changed from {old_status} to {tx.status}.')
    else:
        log_action(f'Updated transaction #{tx.id}.')
    db.session.commit()
    invalidate_dashboard(current_user.id)
    return ok(tx.to_dict(include_payments=True))
