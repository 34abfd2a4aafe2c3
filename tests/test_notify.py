"""Tests for the ntfy and webhook notification senders."""

import json
from unittest.mock import Mock, patch

import requests

from notify import build_payload, render_webhook_body, send_notifications, send_ntfy, send_webhook

MESSAGE = "New image version(s) available: docker.io/myrepo/app:1.2.0 -> 1.2.1, 1.3.0"


def _payload():
    return build_payload("apps", "web-0", "app", MESSAGE)


class TestBuildPayload:

    def test_carries_only_identity_and_message(self):
        assert _payload() == {
            'namespace': 'apps',
            'pod': 'web-0',
            'container': 'app',
            'message': MESSAGE,
        }


class TestSendNtfy:

    @patch('notify.requests.request')
    def test_posts_message(self, mock_request):
        mock_request.return_value = Mock(raise_for_status=Mock())

        assert send_ntfy({'url': 'https://ntfy.sh/topic', 'priority': 'high'}, _payload()) is True

        args, kwargs = mock_request.call_args
        assert args[:2] == ('POST', 'https://ntfy.sh/topic')
        assert kwargs['data'].decode('utf-8') == MESSAGE
        assert kwargs['headers']['Title'] == 'podwatch: apps/web-0 upgrade available'
        assert kwargs['headers']['Priority'] == 'high'

    @patch('notify.requests.request')
    def test_unknown_priority_falls_back(self, mock_request):
        mock_request.return_value = Mock(raise_for_status=Mock())
        send_ntfy({'url': 'https://ntfy.sh/topic', 'priority': 'loud'}, _payload())
        assert mock_request.call_args[1]['headers']['Priority'] == 'default'

    @patch('notify.requests.request')
    def test_extra_headers(self, mock_request):
        mock_request.return_value = Mock(raise_for_status=Mock())
        send_ntfy({'url': 'https://ntfy.sh/topic', 'headers': {'Authorization': 'Bearer t'}}, _payload())
        assert mock_request.call_args[1]['headers']['Authorization'] == 'Bearer t'

    def test_missing_url(self):
        assert send_ntfy({}, _payload()) is False

    @patch('notify.requests.request', side_effect=requests.ConnectionError("down"))
    def test_failure_is_not_raised(self, mock_request):
        assert send_ntfy({'url': 'https://ntfy.sh/topic'}, _payload()) is False


class TestSendWebhook:

    @patch('notify.requests.request')
    def test_default_body(self, mock_request):
        mock_request.return_value = Mock(raise_for_status=Mock())

        assert send_webhook({'url': 'https://hooks.example.com/x'}, _payload()) is True

        args, kwargs = mock_request.call_args
        assert args[:2] == ('POST', 'https://hooks.example.com/x')
        body = json.loads(kwargs['data'])
        assert body['message'] == MESSAGE
        assert set(body) == {'namespace', 'pod', 'container', 'message'}

    @patch('notify.requests.request')
    def test_body_template(self, mock_request):
        mock_request.return_value = Mock(raise_for_status=Mock())
        cfg = {
            'url': 'https://hooks.example.com/x',
            'method': 'put',
            'body_template': '{"text": "$namespace/$pod $container: $message"}',
        }

        send_webhook(cfg, _payload())

        args, kwargs = mock_request.call_args
        assert args[0] == 'PUT'
        assert kwargs['data'].decode('utf-8') == f'{{"text": "apps/web-0 app: {MESSAGE}"}}'

    @patch('notify.requests.request', side_effect=requests.Timeout("slow"))
    def test_failure_is_not_raised(self, mock_request):
        assert send_webhook({'url': 'https://hooks.example.com/x'}, _payload()) is False


class TestRenderWebhookBody:

    def test_unknown_variables_left_alone(self):
        assert render_webhook_body("$pod $available", _payload()) == "web-0 $available"

    def test_malformed_placeholder_kept_verbatim(self):
        assert render_webhook_body("$pod ${", _payload()) == "web-0 ${"

    def test_no_template_sends_json(self):
        assert json.loads(render_webhook_body(None, _payload()))["container"] == "app"


class TestSendNotifications:

    def test_no_config(self):
        send_notifications(None, _payload())

    @patch('notify.send_webhook')
    @patch('notify.send_ntfy')
    def test_dispatches_to_configured_channels(self, mock_ntfy, mock_webhook):
        cfg = {'ntfy': {'url': 'https://ntfy.sh/t'}, 'webhook': {'url': ''}}
        send_notifications(cfg, _payload())
        mock_ntfy.assert_called_once()
        mock_webhook.assert_not_called()

    @patch('notify.send_webhook')
    @patch('notify.send_ntfy', side_effect=RuntimeError("boom"))
    def test_unexpected_errors_swallowed(self, mock_ntfy, mock_webhook):
        cfg = {'ntfy': {'url': 'https://ntfy.sh/t'}, 'webhook': {'url': 'https://hooks.example.com/x'}}
        send_notifications(cfg, _payload())
        mock_ntfy.assert_called_once()
        mock_webhook.assert_called_once()
