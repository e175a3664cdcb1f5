"""
Shared helpers for the JSON API blueprints: response envelope, caller
identity and query/body parsing.
"""
from flask import jsonify, request

from app.errors import ValidationError

# Authentication happens upstream; the proxy forwards the caller's id.
USER_HEADER = 'X-User-Id'


def success(data=None, status=200, **extra):
    body = {'success': True, 'data': data}
    body.update(extra)
    return jsonify(body), status


def current_user_id(required=True):
    user_id = (request.headers.get(USER_HEADER) or '').strip() or None
    if required and user_id is None:
        raise ValidationError(f'{USER_HEADER} header is required')
    return user_id


def json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def int_arg(name, default, minimum=None, maximum=None):
    raw = request.args.get(name)
    if raw is None or raw == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f'{name} must be an integer', details={name: raw})
    if minimum is not None and value < minimum:
        raise ValidationError(f'{name} must be at least {minimum}', details={name: value})
    if maximum is not None and value > maximum:
        raise ValidationError(f'{name} must be at most {maximum}', details={name: value})
    return value


def float_arg(name, default=None):
    raw = request.args.get(name)
    if raw is None or raw == '':
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValidationError(f'{name} must be a number', details={name: raw})
