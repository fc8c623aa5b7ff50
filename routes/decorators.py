from functools import wraps
from flask_login import current_user

from .errors import ApiError

def role_required(*roles):
    """
    Restrict an endpoint to users holding one of the given roles.
    Example: @role_required('Admin', 'Manager')
    """
    allowed = {r.lower() for r in roles}

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated:
                raise ApiError.unauthorized()
            user_role = getattr(current_user, 'role', None)
            if user_role is None or user_role.lower() not in allowed:
                raise ApiError.forbidden('You do not have permission to perform this action.')
            return f(*args, **kwargs)
        return decorated_function
    return decorator
