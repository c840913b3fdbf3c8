"""Tests for aisandbox.validator: OpenAI contract check and endpoint validation."""

from unittest.mock import MagicMock, patch

import requests

from aisandbox.config import ValidationSettings
from aisandbox.validator import check_api_contract, validate_deployment

COMPLETION = {
    "id": "chatcmpl-1",
    "object": "chat.completion",
    "choices": [{"index": 0, "message": {"role": "assistant", "content": "Hi"}}],
}


def _resp(status, body=None, text=None):
    resp = MagicMock(status_code=status)
    if isinstance(body, Exception):
        resp.json.side_effect = body
    else:
        resp.json.return_value = body
    resp.text = text if text is not None else str(body)
    return resp


class TestCheckApiContract:
    @patch("aisandbox.validator.requests.post")
    def test_valid_completion(self, mock_post):
        mock_post.return_value = _resp(200, COMPLETION)
        result = check_api_contract("http://localhost:8000", "org/model")
        assert result.ok
        url = mock_post.call_args[0][0]
        assert url == "http://localhost:8000/v1/chat/completions"
        assert mock_post.call_args[1]["timeout"] == 30.0

    @patch("aisandbox.validator.requests.post")
    def test_503_is_still_loading(self, mock_post):
        mock_post.return_value = _resp(503, {"error": "loading"})
        result = check_api_contract("http://localhost:8000", "org/model")
        assert not result.ok
        assert result.still_loading
        assert "still loading" in result.message

    @patch("aisandbox.validator.requests.post")
    def test_no_response_is_still_loading(self, mock_post):
        mock_post.side_effect = requests.exceptions.ConnectionError("refused")
        result = check_api_contract("http://localhost:8000", "org/model")
        assert result.status_code is None
        assert result.still_loading
        assert "no response" in result.message

    @patch("aisandbox.validator.requests.post")
    def test_wrong_object_type(self, mock_post):
        mock_post.return_value = _resp(200, {"object": "text_completion", "choices": []},
                                       text='{"object": "text_completion"}')
        result = check_api_contract("http://localhost:8000", "org/model")
        assert not result.ok
        assert not result.still_loading
        assert "may not match OpenAI v1" in result.message
        assert "text_completion" in result.message

    @patch("aisandbox.validator.requests.post")
    def test_non_json_body(self, mock_post):
        mock_post.return_value = _resp(200, ValueError("no json"), text="<html>")
        assert not check_api_contract("http://localhost:8000", "m").ok

    @patch("aisandbox.validator.requests.post")
    def test_other_status_includes_body(self, mock_post):
        mock_post.return_value = _resp(404, None, text='{"detail":"model not found"}')
        result = check_api_contract("http://localhost:8000", "m")
        assert "HTTP 404" in result.message
        assert "model not found" in result.message


class TestValidateDeployment:
    def setup_method(self):
        self.settings = ValidationSettings(ui_attempts=2, ui_interval=1, api_attempts=3, api_interval=1)

    @patch("aisandbox.validator.requests.post")
    @patch("aisandbox.poller.requests.request")
    def test_all_healthy(self, mock_request, mock_post, no_sleep):
        mock_request.return_value = MagicMock(status_code=200)
        mock_post.return_value = _resp(200, COMPLETION)
        report = validate_deployment("192.0.2.1", "org/model", self.settings, sleep=no_sleep)
        assert report.ok
        assert report.messages == []
        assert mock_post.call_args[0][0] == "http://192.0.2.1:8000/v1/chat/completions"

    @patch("aisandbox.validator.requests.post")
    @patch("aisandbox.poller.requests.request")
    def test_unhealthy_api_skips_contract(self, mock_request, mock_post, no_sleep):
        def respond(method, url, **kwargs):
            return MagicMock(status_code=200 if ":3000" in url else 503)

        mock_request.side_effect = respond
        report = validate_deployment("192.0.2.1", "org/model", self.settings, sleep=no_sleep)
        assert report.ui.ready
        assert report.api.attempts == 3
        assert not report.ok
        assert not mock_post.called
        assert any("model may still be loading" in m for m in report.messages)

    @patch("aisandbox.validator.requests.post")
    @patch("aisandbox.poller.requests.request")
    def test_ui_redirect_counts_as_ready(self, mock_request, mock_post, no_sleep):
        def respond(method, url, **kwargs):
            return MagicMock(status_code=302 if ":3000" in url else 200)

        mock_request.side_effect = respond
        mock_post.return_value = _resp(200, COMPLETION)
        report = validate_deployment("192.0.2.1", "org/model", self.settings, sleep=no_sleep)
        assert report.ui.ready

    @patch("aisandbox.validator.requests.post")
    @patch("aisandbox.poller.requests.request")
    def test_contract_failure_reported(self, mock_request, mock_post, no_sleep):
        mock_request.return_value = MagicMock(status_code=200)
        mock_post.return_value = _resp(503, {})
        report = validate_deployment("192.0.2.1", "org/model", self.settings, sleep=no_sleep)
        assert not report.api_contract_ok
        assert any("HTTP 503" in m for m in report.messages)
