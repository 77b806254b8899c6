"""
Unit tests for refresh response validation.
"""

import pytest

from shared.exceptions import MalformedResponseError
from docfiscal_client.auth.schemas import (
    RefreshFailure, RefreshRequest, RefreshSuccess, parse_refresh_response
)


class TestParseRefreshResponse:
    """Test the tagged refresh response schema."""

    def test_success(self):
        response = parse_refresh_response({
            'success': True,
            'tokens': {'access_token': "A2", 'refresh_token': "R2", 'expires_in': 3600},
        })

        assert isinstance(response, RefreshSuccess)
        assert response.tokens.access_token == "A2"
        assert response.tokens.refresh_token == "R2"
        assert response.tokens.expires_in == 3600

    def test_success_with_extra_fields(self):
        response = parse_refresh_response({
            'success': True,
            'message': "ok",
            'tokens': {'access_token': "A2", 'refresh_token': "R2", 'expires_in': 60, 'token_type': "Bearer"},
        })

        assert isinstance(response, RefreshSuccess)

    def test_success_without_optional_fields(self):
        response = parse_refresh_response({'success': True, 'tokens': {'access_token': "A2"}})

        assert response.tokens.refresh_token is None
        assert response.tokens.expires_in is None

    def test_integral_float_lifetime(self):
        response = parse_refresh_response({
            'success': True,
            'tokens': {'access_token': "A2", 'expires_in': 3600.0},
        })

        assert response.tokens.expires_in == 3600
        assert isinstance(response.tokens.expires_in, int)

    def test_zero_lifetime_treated_as_missing(self):
        response = parse_refresh_response({
            'success': True,
            'tokens': {'access_token': "A2", 'expires_in': 0},
        })

        assert response.tokens.expires_in is None

    def test_failure(self):
        response = parse_refresh_response({'success': False, 'error': {'code': "EXPIRED"}})

        assert isinstance(response, RefreshFailure)

    def test_failure_without_error(self):
        assert isinstance(parse_refresh_response({'success': False}), RefreshFailure)

    @pytest.mark.parametrize("payload", [
        None,
        [],
        "success",
        {},
        {'tokens': {'access_token': "A2"}},
        {'success': True},
        {'success': True, 'tokens': None},
        {'success': True, 'tokens': {}},
        {'success': True, 'tokens': {'access_token': ""}},
        {'success': True, 'tokens': {'access_token': 42}},
        {'success': True, 'tokens': {'access_token': "A2", 'expires_in': "3600"}},
        {'success': True, 'tokens': {'access_token': "A2", 'expires_in': -1}},
        {'success': True, 'tokens': {'access_token': "A2", 'expires_in': 3600.5}},
        {'success': True, 'tokens': {'access_token': "A2", 'expires_in': True}},
    ])
    def test_malformed(self, payload):
        """Test that anything but the two documented shapes is rejected."""
        with pytest.raises(MalformedResponseError):
            parse_refresh_response(payload)


class TestRefreshRequest:
    """Test the refresh request body."""

    def test_body(self):
        assert RefreshRequest(refresh_token="R1").model_dump() == {'refresh_token': "R1"}

    def test_empty_token_rejected(self):
        with pytest.raises(ValueError):
            RefreshRequest(refresh_token="")
