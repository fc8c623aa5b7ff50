from flask import Blueprint
from models import db, User, AuditLog, ROLES
from passlib.hash import pbkdf2_sha256
from flask_login import login_required, current_user
from sqlalchemy import func

from .decorators import role_required
from .errors import ApiError, ok
from .utils import log_action, get_json, clean_str, paginate_query

user_bp = Blueprint('users', __name__, url_prefix='/api')


def _normalize_role(role):
    for r in ROLES:
        if r.lower() == (role or '').lower():
            return r
    raise ApiError.validation({'role': [f'role must be one of {", ".join(ROLES)}']})


@user_bp.route('/users', methods=['GET'])
@login_required
@role_required('Admin')
def list_users():
    users, metadata = paginate_query(User.query.order_by(User.username))
    return ok({"items": [u.to_dict() for u in users], "metadata": metadata})


@user_bp.route('/users', methods=['POST'])
@login_required
@role_required('Admin')
def create_user():
    data = get_json()
    username = clean_str(data.get('username'))
    password = data.get('password') or ''

    if not username or not password or not data.get('role'):
        raise ApiError.bad_request('All fields are required.')
    role = _normalize_role(data.get('role'))

    if len(username) > 100 or len(password) > 200:
        raise ApiError.bad_request('Username or password is too long.')
    if len(password) < 6:
        raise ApiError.validation({'password': ['Password must be at least 6 characters']})

    existing = User.query.filter(func.lower(User.username) == username.lower()).first()
    if existing:
        raise ApiError.conflict(f'Username "{username}" already exists.')

    new_user = User(
        username=username,
        password_hash=pbkdf2_sha256.hash(password),
        role=role
    )
    db.session.add(new_user)
    log_action(f'Created new user: {username} with role: {role}.')
    db.session.commit()
    return ok(new_user.to_dict(), 201)


@user_bp.route('/users/<int:user_id>', methods=['PUT'])
@login_required
@role_required('Admin')
def update_user(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        raise ApiError.not_found('User not found')
    data = get_json()

    if 'role' in data:
        role = _normalize_role(data.get('role'))
        if user.is_admin and role != 'Admin':
            admin_count = User.query.filter(func.lower(User.role) == 'admin').count()
            if admin_count <= 1:
                raise ApiError.bad_request('Cannot demote the last admin account.')
        user.role = role

    new_password = data.get('password')
    if new_password:
        if len(new_password) < 6:
            raise ApiError.validation({'password': ['Password must be at least 6 characters']})
        user.password_hash = pbkdf2_sha256.hash(new_password)

    log_action(f'Updated user: {user.username}. Role is {user.role}.')
    db.session.commit()
    return ok(user.to_dict())


@user_bp.route('/users/<int:user_id>', methods=['DELETE'])
@login_required
@role_required('Admin')
def delete_user(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        raise ApiError.not_found('User not found')

    if user.id == current_user.id:
        raise ApiError.bad_request('You cannot delete your own account.')

    if user.is_admin:
        admin_count = User.query.filter(func.lower(User.role) == 'admin').count()
        if admin_count <= 1:
            raise ApiError.bad_request('Cannot delete the last admin account.')

    username = user.username
    db.session.delete(user)
    log_action(f'Deleted user: {username}.')
    db.session.commit()
    return ok({"id": user_id})


@user_bp.route('/audit-log', methods=['GET'])
@login_required
@role_required('Admin')
def audit_log():
    query = AuditLog.query.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
    items, metadata = paginate_query(query, default_limit=50)
    return ok({"items": [a.to_dict() for a in items], "metadata": metadata})
