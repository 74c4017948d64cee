"""
Unit tests for the API token guard (ipfs_backup/auth.py).
"""

import pytest
from flask import Flask

from ipfs_backup.auth import token_required, verify_token


class TestVerifyToken:
    """Test token comparison."""

    def test_matching_tokens(self):
        assert verify_token('s3cret', 's3cret') is True

    def test_different_tokens(self):
        assert verify_token('s3cret', 's3cre7') is False

    @pytest.mark.parametrize('expected,provided', [
        ('', ''),
        ('s3cret', ''),
        ('', 's3cret'),
        (None, 's3cret'),
    ])
    def test_empty_tokens_never_match(self, expected, provided):
        assert verify_token(expected, provided) is False


@pytest.fixture
def guarded_app():
    app = Flask(__name__)

    @app.route('/protected')
    @token_required
    def protected():
        return {'ok': True}

    return app


class TestTokenRequired:
    """Test the view decorator."""

    def test_open_without_configured_token(self, guarded_app):
        guarded_app.config['API_TOKEN'] = None

        assert guarded_app.test_client().get('/protected').status_code == 200

    def test_missing_header(self, guarded_app):
        guarded_app.config['API_TOKEN'] = 's3cret'

        response = guarded_app.test_client().get('/protected')

        assert response.status_code == 401
        assert response.get_json() == {'error': 'Unauthorized'}

    def test_wrong_scheme(self, guarded_app):
        guarded_app.config['API_TOKEN'] = 's3cret'

        response = guarded_app.test_client().get('/protected', headers={'Authorization': 'Basic s3cret'})

        assert response.status_code == 401

    def test_valid_bearer_token(self, guarded_app):
        guarded_app.config['API_TOKEN'] = 's3cret'

        response = guarded_app.test_client().get('/protected', headers={'Authorization': 'Bearer s3cret'})

        assert response.status_code == 200
        assert response.get_json() == {'ok': True}
