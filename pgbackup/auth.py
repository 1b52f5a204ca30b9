"""
API token authentication for endpoints that start backups.
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
        True if the tokens match, False otherwise
    """
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode('utf-8'), provided.encode('utf-8'))


def token_required(view):
    """
    Require `Authorization: Bearer <API_TOKEN>` on a view.

    Responds 403 when no API_TOKEN is configured and 401 when the request
    carries a missing or wrong token.
    """
    @wraps(view)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get('API_TOKEN')
        if not expected:
            return jsonify({'error': 'API token not configured'}), 403

        header = request.headers.get('Authorization', '')
        scheme, _, provided = header.partition(' ')
        if scheme.lower() != 'bearer' or not verify_token(expected, provided.strip()):
            return jsonify({'error': 'Invalid or missing API token'}), 401

        return view(*args, **kwargs)

    return wrapper
