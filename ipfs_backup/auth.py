"""
API token guard for the JSON endpoints.
"""

import hmac
from functools import wraps

from flask import current_app, jsonify, request


def verify_token(expected: str, provided: str) -> bool:
    """
    Compare tokens in constant time.

    Args:
        expected: Configured API token
        provided: Token sent by the client

    Returns:
        True if tokens match, False otherwise
    """
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode(), provided.encode())


def token_required(view):
    """
    Require `Authorization: Bearer <API_TOKEN>` when API_TOKEN is configured.

    With no token configured the API is open.
    """
    @wraps(view)
    def wrapped(*args, **kwargs):
        expected = current_app.config.get('API_TOKEN')
        if expected:
            header = request.headers.get('Authorization', '')
            scheme, _, provided = header.partition(' ')
            if scheme.lower() != 'bearer' or not verify_token(expected, provided.strip()):
                return jsonify({'error': 'Unauthorized'}), 401
        return view(*args, **kwargs)

    return wrapped
