from functools import wraps

from flask import abort
from flask_login import UserMixin, current_user


def role_required(*roles):
    """Reject the request unless the upstream-authenticated actor holds one of ``roles``."""

    def wrapper(func):
        @wraps(func)
        def inner(*args, **kwargs):
            if not current_user.is_authenticated:
                abort(401)
            if current_user.role not in roles:
                abort(403)
            return func(*args, **kwargs)

        return inner

    return wrapper


class Actor(UserMixin):
    """Caller identity forwarded by the authenticating proxy in front of the API."""

    def __init__(self, actor_id, role):
        self.id = actor_id
        self.role = role

    def get_id(self):
        return self.id
