from flask import Blueprint, request
from flask_login import login_required, current_user
from sqlalchemy import func, or_
from decimal import Decimal

from models import db, Expense, ExpenseCategory, EXPENSE_STATUSES, PAYMENT_METHODS, utcnow
from .errors import ApiError, ok
from .utils import (get_json, clean_str, parse_decimal, parse_date, paginate_query,
                    get_owned_or_404, log_action, like_pattern)

expenses_bp = Blueprint('expenses', __name__, url_prefix='/api')


# --- Expense categories ---

def _category_name_taken(name, exclude_id=None):
    q = ExpenseCategory.query.filter(ExpenseCategory.user_id == current_user.id,
                                     func.lower(ExpenseCategory.name) == name.lower())
    if exclude_id is not None:
        q = q.filter(ExpenseCategory.id != exclude_id)
    return db.session.query(q.exists()).scalar()


@expenses_bp.route('/expense-categories', methods=['GET'])
@login_required
def list_expense_categories():
    categories, metadata = paginate_query(
        ExpenseCategory.query.filter_by(user_id=current_user.id).order_by(ExpenseCategory.name))
    counts = dict(db.session.query(Expense.category_id, func.count(Expense.id))
                  .filter(Expense.user_id == current_user.id,
                          Expense.category_id.in_([c.id for c in categories]))
                  .group_by(Expense.category_id).all())
    return ok({"items": [c.to_dict(expense_count=counts.get(c.id, 0)) for c in categories],
               "metadata": metadata})


@expenses_bp.route('/expense-categories', methods=['POST'])
@login_required
def create_expense_category():
    data = get_json()
    name = clean_str(data.get('name'))
    if not name or len(name) > 100:
        raise ApiError.validation({'name': ['name is required (max 100 characters)']})
    if _category_name_taken(name):
        raise ApiError.conflict('An expense category with this name already exists')
    category = ExpenseCategory(user_id=current_user.id, name=name,
                               description=clean_str(data.get('description')))
    db.session.add(category)
    log_action(f'Created expense category: {name}.')
    db.session.commit()
    return ok(category.to_dict(expense_count=0), 201)


@expenses_bp.route('/expense-categories/<int:category_id>', methods=['GET'])
@login_required
def get_expense_category(category_id):
    category = get_owned_or_404(ExpenseCategory, category_id, 'Expense category')
    return ok(category.to_dict(expense_count=category.expenses.count()))


@expenses_bp.route('/expense-categories/<int:category_id>', methods=['PUT'])
@login_required
def update_expense_category(category_id):
    category = get_owned_or_404(ExpenseCategory, category_id, 'Expense category')
    data = get_json()
    if 'name' in data:
        name = clean_str(data.get('name'))
        if not name or len(name) > 100:
            raise ApiError.validation({'name': ['name is required (max 100 characters)']})
        if name.lower() != category.name.lower() and _category_name_taken(name, category.id):
            raise ApiError.conflict('An expense category with this name already exists')
        category.name = name
    if 'description' in data:
        category.description = clean_str(data.get('description'))
    log_action(f'Updated expense category #{category.id}: {category.name}.')
    db.session.commit()
    return ok(category.to_dict(expense_count=category.expenses.count()))


@expenses_bp.route('/expense-categories/<int:category_id>', methods=['DELETE'])
@login_required
def delete_expense_category(category_id):
    category = get_owned_or_404(ExpenseCategory, category_id, 'Expense category')
    count = category.expenses.count()
    if count:
        raise ApiError.conflict(f'Cannot delete category with {count} associated expense(s)')
    db.session.delete(category)
    log_action(f'Deleted expense category #{category_id}: {category.name}.')
    db.session.commit()
    return ok({"id": category_id})


# --- Expenses ---

def _validate_expense(data, partial=False):
    errors = {}
    fields = {}

    def present(key):
        return not partial or key in data

    if present('amount'):
        amount = parse_decimal(data.get('amount'), 'amount', errors)
        if amount is not None and amount < Decimal('0.01'):
            errors.setdefault('amount', []).append('Amount must be at least 0.01')
        fields['amount'] = amount
    if present('description'):
        description = clean_str(data.get('description'))
        if not description:
            errors['description'] = ['description is required']
        elif len(description) > 500:
            errors['description'] = ['description must be at most 500 characters']
        fields['description'] = description
    if present('status'):
        status = clean_str(data.get('status')) or 'COMPLETED'
        if status not in EXPENSE_STATUSES:
            errors['status'] = [f'status must be one of {", ".join(EXPENSE_STATUSES)}']
        fields['status'] = status
    if 'paymentMethod' in data:
        method = clean_str(data.get('paymentMethod'))
        if method is not None and method not in PAYMENT_METHODS:
            errors['paymentMethod'] = [f'paymentMethod must be one of {", ".join(PAYMENT_METHODS)}']
        fields['payment_method'] = method
    for key in ('reference', 'notes'):
        if key in data:
            fields[key] = clean_str(data.get(key))
    if 'date' in data:
        fields['date'] = parse_date(data.get('date'), 'date', errors) or utcnow()
    if present('categoryId'):
        try:
            fields['category_id'] = int(data.get('categoryId'))
        except (TypeError, ValueError):
            errors['categoryId'] = ['categoryId is required']
    if errors:
        raise ApiError.validation(errors)
    return fields


def _check_category(category_id):
    category = db.session.get(ExpenseCategory, category_id)
    if category is None:
        raise ApiError.not_found('Expense category not found')
    if category.user_id != current_user.id:
        raise ApiError.forbidden('Expense category belongs to another user')
    return category


@expenses_bp.route('/expenses', methods=['GET'])
@login_required
def list_expenses():
    query = Expense.query.filter(Expense.user_id == current_user.id)
    search = request.args.get('search')
    if search:
        query = query.filter(or_(Expense.description.ilike(like_pattern(search)),
                                 Expense.notes.ilike(like_pattern(search)),
                                 Expense.reference.ilike(like_pattern(search))))
    category_id = request.args.get('categoryId', type=int)
    if category_id:
        query = query.filter(Expense.category_id == category_id)
    status = request.args.get('status')
    if status:
        query = query.filter(Expense.status == status)
    start = parse_date(request.args.get('startDate'))
    if start:
        query = query.filter(Expense.date >= start)
    end = parse_date(request.args.get('endDate'), end_of_day=True)
    if end:
        query = query.filter(Expense.date <= end)

    total = query.with_entities(func.coalesce(func.sum(Expense.amount), 0)).scalar()
    items, metadata = paginate_query(query.order_by(Expense.date.desc(), Expense.id.desc()))
    return ok({"items": [e.to_dict() for e in items], "metadata": metadata,
               "totalAmount": float(total or 0)})


@expenses_bp.route('/expenses', methods=['POST'])
@login_required
def create_expense():
    fields = _validate_expense(get_json())
    _check_category(fields['category_id'])
    expense = Expense(user_id=current_user.id, **fields)
    db.session.add(expense)
    db.session.flush()
    log_action(f'Recorded expense #{expense.id} of {format(expense.amount, "0.2f")}: {expense.description}.')
    db.session.commit()
    return ok(expense.to_dict(), 201)


@expenses_bp.route('/expenses/<int:expense_id>', methods=['GET'])
@login_required
def get_expense(expense_id):
    return ok(get_owned_or_404(Expense, expense_id, 'Expense').to_dict())


@expenses_bp.route('/expenses/<int:expense_id>', methods=['PUT'])
@login_required
def update_expense(expense_id):
    expense = get_owned_or_404(Expense, expense_id, 'Expense')
    fields = _validate_expense(get_json(), partial=True)
    if 'category_id' in fields:
        _check_category(fields['category_id'])
    for key, value in fields.items():
        setattr(expense, key, value)
    log_action(f'Updated expense #{expense.id}.')
    db.session.commit()
    return ok(expense.to_dict())


@expenses_bp.route('/expenses/<int:expense_id>', methods=['DELETE'])
@login_required
def delete_expense(expense_id):
    expense = get_owned_or_404(Expense, expense_id, 'Expense')
    db.session.delete(expense)
    log_action(f'Deleted expense #{expense_id}.')
    db.session.commit()
    return ok({"id": expense_id})
