from flask import Blueprint, current_app
from flask_login import login_user, logout_user, login_required, current_user
from passlib.hash import pbkdf2_sha256
import logging

from models import db, User, UserSettings, LANGUAGES, THEMES
from extensions import limiter
from .errors import ApiError, ok
from .utils import get_json, log_action, clean_str

logger = logging.getLogger(__name__)

auth_bp = Blueprint('auth', __name__, url_prefix='/api')

MIN_PASSWORD_LENGTH = 6


def get_or_create_settings(user):
    settings = UserSettings.query.filter_by(user_id=user.id).first()
    if settings is None:
        settings = UserSettings(
            user_id=user.id,
            language=current_app.config.get('DEFAULT_LANGUAGE', 'en'),
            theme='light',
            notifications=True,
        )
        db.session.add(settings)
        db.session.commit()
    return settings


@auth_bp.route('/auth/register', methods=['POST'])
@limiter.limit("5 per minute")
def register():
    """Bootstrap the first (Admin) account. Closed once any user exists."""
    if User.query.first() is not None:
        raise ApiError.forbidden('Registration is closed. Ask an administrator for an account.')
    data = get_json()
    username = clean_str(data.get('username'))
    password = data.get('password') or ''
    errors = {}
    if not username:
        errors['username'] = ['username is required']
    elif len(username) > 100:
        errors['username'] = ['username is too long']
    if len(password) < MIN_PASSWORD_LENGTH:
        errors['password'] = [f'Password must be at least {MIN_PASSWORD_LENGTH} characters']
    if errors:
        raise ApiError.validation(errors)

    user = User(username=username, password_hash=pbkdf2_sha256.hash(password), role='Admin')
    db.session.add(user)
    db.session.flush()
    log_action(f'Registered initial admin account: {username}.', user=user)
    db.session.commit()
    login_user(user)
    return ok(user.to_dict(), 201)


@auth_bp.route('/auth/login', methods=['POST'])
@limiter.limit("10 per minute")
def login():
    data = get_json()
    username = clean_str(data.get('username'))
    password = data.get('password') or ''

    if not username or not password:
        raise ApiError.bad_request('Username and password are required.')
    if len(username) > 100 or len(password) > 200:
        raise ApiError.bad_request('Username or password is too long.')

    user = User.query.filter_by(username=username).first()
    if user and pbkdf2_sha256.verify(password, user.password_hash):
        login_user(user)
        log_action('User logged in successfully.', user=user)
        db.session.commit()
        return ok(user.to_dict())

    log_action(f'Failed login attempt for username: {username}.')
    db.session.commit()
    logger.warning("Failed login attempt for username %r", username)
    raise ApiError.unauthorized('Invalid username or password.')


@auth_bp.route('/auth/logout', methods=['POST'])
@login_required
def logout():
    log_action('User logged out.')
    db.session.commit()
    logout_user()
    return ok(None)


@auth_bp.route('/auth/me', methods=['GET'])
@login_required
def me():
    data = current_user.to_dict()
    data['settings'] = get_or_create_settings(current_user).to_dict()
    return ok(data)


@auth_bp.route('/user/change-password', methods=['POST'])
@login_required
@limiter.limit("5 per minute")
def change_password():
    data = get_json()
    current_password = data.get('currentPassword') or ''
    new_password = data.get('newPassword') or ''
    confirm = data.get('confirmPassword')

    errors = {}
    if not current_password:
        errors['currentPassword'] = ['Current password is required']
    if len(new_password) < MIN_PASSWORD_LENGTH:
        errors['newPassword'] = [f'Password must be at least {MIN_PASSWORD_LENGTH} characters']
    if confirm is not None and confirm != new_password:
        errors['confirmPassword'] = ['Passwords do not match']
    if errors:
        raise ApiError.validation(errors)

    if not pbkdf2_sha256.verify(current_password, current_user.password_hash):
        raise ApiError.bad_request('Current password is incorrect',
                                   {'currentPassword': ['Current password is incorrect']})

    current_user.password_hash = pbkdf2_sha256.hash(new_password)
    log_action('Changed own password.')
    db.session.commit()
    return ok({"message": "Password updated successfully"})


@auth_bp.route('/user-settings', methods=['GET'])
@login_required
def get_settings():
    return ok(get_or_create_settings(current_user).to_dict())


@auth_bp.route('/user-settings', methods=['PUT', 'PATCH', 'POST'])
@login_required
def update_settings():
    data = get_json()
    errors = {}
    if 'language' in data and data.get('language') not in LANGUAGES:
        errors['language'] = [f'language must be one of {", ".join(LANGUAGES)}']
    if 'theme' in data and data.get('theme') not in THEMES:
        errors['theme'] = [f'theme must be one of {", ".join(THEMES)}']
    if 'notifications' in data and not isinstance(data.get('notifications'), bool):
        errors['notifications'] = ['notifications must be a boolean']
    if errors:
        raise ApiError.validation(errors)

    settings = get_or_create_settings(current_user)
    if 'language' in data:
        settings.language = data['language']
    if 'theme' in data:
        settings.theme = data['theme']
    if 'notifications' in data:
        settings.notifications = data['notifications']
    log_action('Updated user settings.')
    db.session.commit()
    return ok(settings.to_dict())
