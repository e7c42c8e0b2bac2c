"""
Tests for error-to-response mapping.
"""

import json

from fastapi import HTTPException

from utils.error_handler import ConfigurationError, QRNotReadyError, WebhookError, handle_error

def body(response):
    return json.loads(response.body)

class TestHandleError:
    """Tests for handle_error."""

    def test_gateway_errors_keep_status_and_message(self):
        response = handle_error(QRNotReadyError("s1"))

        assert response.status_code == 404
        assert body(response) == {"error": "QR not ready"}

    def test_configuration_error(self):
        response = handle_error(ConfigurationError("API_KEY"))

        assert response.status_code == 500
        assert body(response) == {"error": "Server misconfigured: missing API_KEY env"}

    def test_webhook_error(self):
        assert handle_error(WebhookError("HTTP 500: down", 500)).status_code == 502

    def test_http_exception(self):
        response = handle_error(HTTPException(status_code=418, detail="teapot"))

        assert response.status_code == 418
        assert body(response) == {"error": "teapot"}

    def test_unexpected_exception_is_500_with_message(self):
        response = handle_error(RuntimeError("socket exploded"))

        assert response.status_code == 500
        assert body(response) == {"error": "socket exploded"}
