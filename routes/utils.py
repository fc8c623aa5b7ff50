from flask import request
from flask_login import current_user
from models import db, AuditLog
from flask_caching import Cache
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
import logging
import math

from .errors import ApiError

cache = Cache()

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


def to_decimal(value, places='0.01'):
    """Coerce value (None, float, int, str, Decimal) -> Decimal quantized to `places`.

    - Accepts strings with commas "1,234.56", parentheses for negatives "(1,234.56)".
    - Strips whitespace.
    - Returns zero for invalid inputs instead of raising.
    """
    q = Decimal(places)
    if value is None or value == '':
        return Decimal('0').quantize(q)
    if isinstance(value, bool):
        return Decimal('0').quantize(q)
    if isinstance(value, Decimal):
        return value.quantize(q, rounding=ROUND_HALF_UP)
    if isinstance(value, (int, float)):
        try:
            return Decimal(str(value)).quantize(q, rounding=ROUND_HALF_UP)
        except InvalidOperation:
            return Decimal('0').quantize(q)
    s = str(value).strip().replace(',', '')
    if s.startswith('(') and s.endswith(')'):
        s = '-' + s[1:-1]
    try:
        d = Decimal(s)
    except InvalidOperation:
        return Decimal('0').quantize(q)
    if not d.is_finite():
        return Decimal('0').quantize(q)
    return d.quantize(q, rounding=ROUND_HALF_UP)


def parse_decimal(value, field, errors, places='0.01', required=True):
    """Strict variant of to_decimal for request payloads.

    Adds a message to `errors[field]` and returns None when the value is missing
    or not numeric, so callers can report every bad field at once.
    """
    if value is None or value == '':
        if required:
            errors.setdefault(field, []).append(f'{field} is required')
        return None
    if isinstance(value, bool):
        errors.setdefault(field, []).append(f'{field} must be a number')
        return None
    try:
        d = Decimal(str(value).strip().replace(',', ''))
    except InvalidOperation:
        errors.setdefault(field, []).append(f'{field} must be a number')
        return None
    if not d.is_finite():
        errors.setdefault(field, []).append(f'{field} must be a number')
        return None
    return d.quantize(Decimal(places), rounding=ROUND_HALF_UP)


def parse_date(value, field=None, errors=None, end_of_day=False):
    """Parse an ISO date or datetime string.

    Date-only values become midnight, or the last microsecond of the day when
    `end_of_day` is set so they work as inclusive range bounds.
    """
    if value in (None, ''):
        return None
    if isinstance(value, datetime):
        return value
    s = str(value).strip()
    if s.endswith('Z'):
        s = s[:-1]
    try:
        if len(s) == 10:
            parsed = datetime.strptime(s, '%Y-%m-%d')
            if end_of_day:
                parsed = parsed + timedelta(days=1) - timedelta(microseconds=1)
            return parsed
        parsed = datetime.fromisoformat(s)
        return parsed.replace(tzinfo=None)
    except ValueError:
        if errors is not None:
            errors.setdefault(field or 'date', []).append(f'{field or "date"} must be an ISO date')
            return None
        raise ApiError.bad_request(f'Invalid date: {value}')


def get_json():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ApiError.bad_request('Request body must be a JSON object')
    return data


def clean_str(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def get_owned_or_404(model, obj_id, label=None):
    """Fetch a row that belongs to the current user or raise a 404."""
    obj = db.session.get(model, obj_id)
    if obj is None or obj.user_id != current_user.id:
        raise ApiError.not_found(f'{label or model.__name__} not found')
    return obj


def paginate_query(query, default_limit=DEFAULT_PAGE_SIZE):
    """Paginate a SQLAlchemy query based on ?page= and ?limit= parameters.

    Returns (items, metadata) where metadata carries total, page, limit and totalPages.
    """
    try:
        page = max(int(request.args.get('page', 1)), 1)
    except (ValueError, TypeError):
        page = 1
    try:
        limit = int(request.args.get('limit', default_limit))
    except (ValueError, TypeError):
        limit = default_limit
    limit = min(max(limit, 1), MAX_PAGE_SIZE)

    pagination = query.paginate(page=page, per_page=limit, error_out=False)
    metadata = {
        "total": pagination.total,
        "page": page,
        "limit": limit,
        "totalPages": math.ceil(pagination.total / limit) if pagination.total else 0,
    }
    return pagination.items, metadata


def log_action(action_description, user=None):
    """
    Create an AuditLog row for the action_description.

    - Does not commit (caller controls transaction).
    """
    user_to_log = user
    if user_to_log is None and getattr(current_user, 'is_authenticated', False):
        user_to_log = current_user

    try:
        ip_addr = request.remote_addr
    except RuntimeError:
        ip_addr = None

    log_entry = AuditLog(
        user_id=(user_to_log.id if user_to_log else None),
        action=(str(action_description) if action_description is not None else '')[:255],
        ip_address=ip_addr
    )
    db.session.add(log_entry)
    return log_entry


def dashboard_cache_key(user_id):
    return f'dashboard-stats:{user_id}'


def invalidate_dashboard(user_id):
    try:
        cache.delete(dashboard_cache_key(user_id))
    except Exception:
        logger.exception("Failed to invalidate dashboard cache for user %s", user_id)


def like_pattern(value):
    return f'%{value.strip()}%'


def validate_contact(data, partial=False):
    """Shared contact-field validation for suppliers and clients.

    Returns (fields, errors); with `partial` only keys present in `data` are checked.
    """
    errors = {}
    fields = {}
    for key, max_len, required in (('name', 200, True), ('phone', 50, True),
                                   ('address', 300, True), ('email', 200, False)):
        if partial and key not in data:
            continue
        value = clean_str(data.get(key))
        if required and not value:
            errors[key] = [f'{key} is required']
        elif value and len(value) > max_len:
            errors[key] = [f'{key} must be at most {max_len} characters']
        elif key == 'email' and value and '@' not in value:
            errors[key] = ['email must be a valid email address']
        fields[key] = value
    return fields, errors
