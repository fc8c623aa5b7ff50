from flask import Blueprint, request, current_app
from flask_login import login_required, current_user
from sqlalchemy import func
from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal
import logging

from models import (db, Product, Supplier, Category, Client, Transaction, TransactionItem,
                    Payment, Expense, ExpenseCategory, money, utcnow)
from .errors import ApiError, ok
from .utils import cache, dashboard_cache_key, parse_date, to_decimal

logger = logging.getLogger(__name__)

reports_bp = Blueprint('reports', __name__, url_prefix='/api')

REPORT_TYPES = ('sales', 'inventory', 'products', 'suppliers', 'clients', 'profit')
DEFAULT_RANGE_DAYS = 30
TOP_N = 5
ZERO = Decimal('0.00')


def _sum(column):
    return func.coalesce(func.sum(column), 0)


def _date_range():
    """Inclusive [start, end] day range from ?startDate/?endDate, default the last 30 days."""
    today = utcnow().date()
    start = parse_date(request.args.get('startDate'))
    end = parse_date(request.args.get('endDate'))
    end_day = end.date() if end else today
    start_day = start.date() if start else end_day - timedelta(days=DEFAULT_RANGE_DAYS - 1)
    if start_day > end_day:
        raise ApiError.bad_request('startDate must be on or before endDate')
    return start_day, end_day


def _bounds(start_day, end_day):
    return datetime.combine(start_day, datetime.min.time()), \
        datetime.combine(end_day + timedelta(days=1), datetime.min.time())


def _days(start_day, end_day):
    d = start_day
    while d <= end_day:
        yield d
        d += timedelta(days=1)


def _empty_series(start_day, end_day):
    return {
        d.isoformat(): {"date": d.isoformat(), "sales": ZERO, "transactions": 0, "inStock": 0,
                        "lowStock": 0, "outOfStock": 0, "revenue": ZERO, "cost": ZERO, "profit": ZERO}
        for d in _days(start_day, end_day)
    }


def _serialize_series(series):
    out = []
    for row in series.values():
        row = dict(row)
        for key in ('sales', 'revenue', 'cost', 'profit'):
            row[key] = money(row[key])
        out.append(row)
    return out


def _stock_buckets(quantities, threshold):
    in_stock = low = out = 0
    for q in quantities:
        if q <= 0:
            out += 1
        elif q <= threshold:
            low += 1
        else:
            in_stock += 1
    return in_stock, low, out


# --- Dashboard ---

def _dashboard_stats(user_id):
    threshold = current_app.config.get('LOW_STOCK_THRESHOLD', 10)
    day_start = datetime.combine(utcnow().date(), datetime.min.time())

    products = Product.query.filter_by(user_id=user_id)
    today_rows = db.session.query(Transaction.type, _sum(Transaction.total)).filter(
        Transaction.user_id == user_id,
        Transaction.status == 'COMPLETED',
        Transaction.date >= day_start,
    ).group_by(Transaction.type).all()
    today = {t: to_decimal(v) for t, v in today_rows}

    stock_value = db.session.query(_sum(Product.price * Product.quantity)) \
        .filter(Product.user_id == user_id, Product.quantity > 0).scalar()
    receivables = db.session.query(_sum(Client.balance)).filter(Client.user_id == user_id).scalar()
    payables = db.session.query(_sum(Supplier.balance)).filter(Supplier.user_id == user_id).scalar()
    recent = Transaction.query.filter_by(user_id=user_id) \
        .order_by(Transaction.date.desc(), Transaction.id.desc()).limit(5).all()

    return {
        "totalProducts": products.count(),
        "lowStockProducts": products.filter(Product.quantity <= threshold).count(),
        "totalSuppliers": Supplier.query.filter_by(user_id=user_id).count(),
        "totalCategories": Category.query.filter_by(user_id=user_id).count(),
        "recentTransactions": [t.to_dict(include_items=False) for t in recent],
        "stockValue": money(to_decimal(stock_value)),
        "salesToday": money(today.get('SALE', ZERO)),
        "purchasesToday": money(today.get('PURCHASE', ZERO)),
        "receivables": money(to_decimal(receivables)),
        "payables": money(to_decimal(payables)),
    }


@reports_bp.route('/dashboard/stats', methods=['GET'])
@login_required
def dashboard_stats():
    key = dashboard_cache_key(current_user.id)
    data = cache.get(key)
    if data is None:
        data = _dashboard_stats(current_user.id)
        cache.set(key, data, timeout=current_app.config.get('DASHBOARD_CACHE_SECONDS', 60))
    return ok(data)


# --- Reports ---

def sales_series(user_id, start_day, end_day):
    series = _empty_series(start_day, end_day)
    lo, hi = _bounds(start_day, end_day)
    rows = db.session.query(Transaction.type, Transaction.total, Transaction.date).filter(
        Transaction.user_id == user_id,
        Transaction.status == 'COMPLETED',
        Transaction.date >= lo,
        Transaction.date < hi,
    ).all()
    for tx_type, total, when in rows:
        day = series.get(when.date().isoformat())
        if day is None:
            continue
        total = to_decimal(total)
        if tx_type == 'SALE':
            day["sales"] += total
            day["revenue"] += total
            day["transactions"] += 1
        elif tx_type == 'PURCHASE':
            day["cost"] += total
        day["profit"] = day["revenue"] - day["cost"]
    return series


def profit_series(user_id, start_day, end_day):
    """Daily gross profit on completed sales: revenue less the cost of the goods sold."""
    series = _empty_series(start_day, end_day)
    lo, hi = _bounds(start_day, end_day)
    rows = db.session.query(Transaction.id, Transaction.date, TransactionItem.quantity,
                            TransactionItem.price, TransactionItem.cost_price) \
        .join(TransactionItem, TransactionItem.transaction_id == Transaction.id).filter(
            Transaction.user_id == user_id,
            Transaction.type == 'SALE',
            Transaction.status == 'COMPLETED',
            Transaction.date >= lo,
            Transaction.date < hi,
        ).all()
    seen = set()
    for tx_id, when, quantity, price, cost_price in rows:
        day = series.get(when.date().isoformat())
        if day is None:
            continue
        revenue = to_decimal(Decimal(quantity) * Decimal(price))
        cost = to_decimal(Decimal(quantity) * Decimal(cost_price))
        day["sales"] += revenue
        day["revenue"] += revenue
        day["cost"] += cost
        day["profit"] = day["revenue"] - day["cost"]
        if tx_id not in seen:
            seen.add(tx_id)
            day["transactions"] += 1
    return series


def inventory_series(user_id, start_day, end_day):
    """End-of-day stock status counts, rebuilt backwards from current quantities."""
    threshold = Decimal(current_app.config.get('LOW_STOCK_THRESHOLD', 10))
    series = _empty_series(start_day, end_day)
    quantities = {pid: Decimal(q) for pid, q in
                  db.session.query(Product.id, Product.quantity).filter(Product.user_id == user_id).all()}

    lo, _ = _bounds(start_day, end_day)
    rows = db.session.query(Transaction.type, Transaction.date, TransactionItem.product_id,
                            TransactionItem.quantity) \
        .join(TransactionItem, TransactionItem.transaction_id == Transaction.id).filter(
            Transaction.user_id == user_id,
            Transaction.status != 'CANCELLED',
            Transaction.date >= lo,
        ).order_by(Transaction.date.desc()).all()

    idx = 0
    for day in sorted(_days(start_day, end_day), reverse=True):
        day_end = datetime.combine(day + timedelta(days=1), datetime.min.time())
        # Undo every movement after the end of this day
        while idx < len(rows) and rows[idx][1] >= day_end:
            tx_type, _, product_id, quantity = rows[idx]
            if product_id in quantities:
                if tx_type == 'SALE':
                    quantities[product_id] += Decimal(quantity)
                else:
                    quantities[product_id] = max(Decimal('0'), quantities[product_id] - Decimal(quantity))
            idx += 1
        in_stock, low, out = _stock_buckets(quantities.values(), threshold)
        entry = series[day.isoformat()]
        entry["inStock"], entry["lowStock"], entry["outOfStock"] = in_stock, low, out
    return series


def _top(rows):
    ranked = sorted(((name, to_decimal(value)) for name, value in rows if name),
                    key=lambda r: r[1], reverse=True)[:TOP_N]
    return [{"name": name, "value": money(value)} for name, value in ranked]


def top_products(user_id, start_day, end_day):
    lo, hi = _bounds(start_day, end_day)
    rows = db.session.query(Product.name, _sum(TransactionItem.quantity * TransactionItem.price)) \
        .join(TransactionItem, TransactionItem.product_id == Product.id) \
        .join(Transaction, TransactionItem.transaction_id == Transaction.id).filter(
            Transaction.user_id == user_id,
            Transaction.type == 'SALE',
            Transaction.status == 'COMPLETED',
            Transaction.date >= lo,
            Transaction.date < hi,
        ).group_by(Product.id, Product.name).all()
    return _top(rows)


def top_suppliers(user_id, start_day, end_day):
    lo, hi = _bounds(start_day, end_day)
    rows = db.session.query(Supplier.name, _sum(Transaction.total)) \
        .join(Transaction, Transaction.supplier_id == Supplier.id).filter(
            Transaction.user_id == user_id,
            Transaction.type == 'PURCHASE',
            Transaction.status == 'COMPLETED',
            Transaction.date >= lo,
            Transaction.date < hi,
        ).group_by(Supplier.id, Supplier.name).all()
    return _top(rows)


def top_clients(user_id, start_day, end_day):
    lo, hi = _bounds(start_day, end_day)
    rows = db.session.query(Client.name, _sum(Transaction.total)) \
        .join(Transaction, Transaction.client_id == Client.id).filter(
            Transaction.user_id == user_id,
            Transaction.type == 'SALE',
            Transaction.status == 'COMPLETED',
            Transaction.date >= lo,
            Transaction.date < hi,
        ).group_by(Client.id, Client.name).all()
    return _top(rows)


@reports_bp.route('/reports', methods=['GET'])
@login_required
def reports():
    report_type = request.args.get('type') or 'sales'
    if report_type not in REPORT_TYPES:
        raise ApiError.bad_request(f'Unknown report type: {report_type}')
    start_day, end_day = _date_range()
    uid = current_user.id

    if report_type == 'products':
        return ok({"productData": top_products(uid, start_day, end_day)})
    if report_type == 'suppliers':
        return ok({"supplierData": top_suppliers(uid, start_day, end_day)})
    if report_type == 'clients':
        return ok({"clientData": top_clients(uid, start_day, end_day)})
    if report_type == 'inventory':
        series = inventory_series(uid, start_day, end_day)
    elif report_type == 'profit':
        series = profit_series(uid, start_day, end_day)
    else:
        series = sales_series(uid, start_day, end_day)
    return ok({"timeSeriesData": _serialize_series(series)})


@reports_bp.route('/finance/summary', methods=['GET'])
@login_required
def finance_summary():
    """Money in (payments) against money out (completed expenses) over a date range."""
    start_day, end_day = _date_range()
    lo, hi = _bounds(start_day, end_day)
    uid = current_user.id

    payments = db.session.query(Payment.payment_method, Payment.date, Payment.amount, Transaction.type) \
        .join(Transaction, Payment.transaction_id == Transaction.id).filter(
            Payment.user_id == uid,
            Payment.status == 'COMPLETED',
            Payment.date >= lo,
            Payment.date < hi,
        ).all()
    by_method = defaultdict(lambda: ZERO)
    by_day = {d.isoformat(): {"date": d.isoformat(), "received": ZERO, "paid": ZERO, "expenses": ZERO}
              for d in _days(start_day, end_day)}
    received = paid_out = ZERO
    for method, when, amount, tx_type in payments:
        amount = to_decimal(amount)
        day = by_day.get(when.date().isoformat())
        if tx_type == 'SALE':
            received += amount
            by_method[method] += amount
            if day:
                day["received"] += amount
        elif tx_type == 'PURCHASE':
            paid_out += amount
            if day:
                day["paid"] += amount

    expenses = db.session.query(ExpenseCategory.name, Expense.date, Expense.amount) \
        .join(ExpenseCategory, Expense.category_id == ExpenseCategory.id).filter(
            Expense.user_id == uid,
            Expense.status == 'COMPLETED',
            Expense.date >= lo,
            Expense.date < hi,
        ).all()
    by_category = defaultdict(lambda: ZERO)
    total_expenses = ZERO
    for name, when, amount in expenses:
        amount = to_decimal(amount)
        total_expenses += amount
        by_category[name] += amount
        day = by_day.get(when.date().isoformat())
        if day:
            day["expenses"] += amount

    receivables = db.session.query(_sum(Client.total_due), _sum(Client.amount_paid), _sum(Client.balance)) \
        .filter(Client.user_id == uid).one()

    return ok({
        "startDate": start_day.isoformat(),
        "endDate": end_day.isoformat(),
        "income": money(received),
        "supplierPayments": money(paid_out),
        "expenses": money(total_expenses),
        "net": money(received - paid_out - total_expenses),
        "paymentsByMethod": {k: money(v) for k, v in by_method.items()},
        "expensesByCategory": [{"name": k, "value": money(v)}
                               for k, v in sorted(by_category.items(), key=lambda kv: kv[1], reverse=True)],
        "daily": [{**row, "received": money(row["received"]), "paid": money(row["paid"]),
                   "expenses": money(row["expenses"])} for row in by_day.values()],
        "clients": {
            "totalDue": money(to_decimal(receivables[0])),
            "amountPaid": money(to_decimal(receivables[1])),
            "balance": money(to_decimal(receivables[2])),
        },
    })


def aging_buckets(user_id, today=None):
    """Bucket outstanding sales by days past due (falling back to the sale date)."""
    today = today or utcnow().date()
    txs = Transaction.query.filter(
        Transaction.user_id == user_id,
        Transaction.type == 'SALE',
        Transaction.status != 'CANCELLED',
        Transaction.remaining_amount > Decimal('0.00'),
    ).all()

    aging_data = {'current': [], '1-30': [], '31-60': [], '61-90': [], '91+': []}
    totals = {k: ZERO for k in ('current', '1-30', '31-60', '61-90', '91+', 'total')}

    for tx in txs:
        age_date = tx.payment_due_date.date() if tx.payment_due_date else tx.date.date()
        age = (today - age_date).days
        balance = to_decimal(tx.remaining_amount)
        totals['total'] += balance

        if age <= 0:
            bucket = 'current'
        elif age <= 30:
            bucket = '1-30'
        elif age <= 60:
            bucket = '31-60'
        elif age <= 90:
            bucket = '61-90'
        else:
            bucket = '91+'
        aging_data[bucket].append(tx)
        totals[bucket] += balance
    return aging_data, totals


@reports_bp.route('/reports/receivables-aging', methods=['GET'])
@login_required
def receivables_aging():
    as_of = parse_date(request.args.get('asOf'))
    aging_data, totals = aging_buckets(current_user.id, as_of.date() if as_of else None)
    return ok({
        "buckets": {k: [t.to_dict(include_items=False) for t in v] for k, v in aging_data.items()},
        "totals": {k: money(v) for k, v in totals.items()},
    })
