# custody_batch_engine/api/auth.py
from functools import wraps
from flask import current_app, request, abort

from config import settings


def require_api_key(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get("API_KEY", settings.API_KEY)
        provided = request.headers.get('x-api-key')
        if expected and provided and provided == expected:
            return f(*args, **kwargs)
        else:
            abort(401)
    return decorated_function
