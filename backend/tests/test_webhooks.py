import json
from unittest.mock import MagicMock, patch

import httpx
import pytest

from emdr_api.config import settings
from emdr_api.errors import UpstreamError, ValidationError
from emdr_api.utils import webhooks


def _mock_client(mock_cls, status=200, body=None, error=None):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = body if body is not None else {'received': True}
    client = mock_cls.return_value.__enter__.return_value
    if error is not None:
        client.post.side_effect = error
    else:
        client.post.return_value = response
    return client


def test_signature_roundtrip_and_tamper():
    body, signature, payload = webhooks.build_test_payload('user.created', {'user': {'id': 'u1'}}, secret='s3cret')
    assert payload['signature'] == signature
    assert json.loads(body)['signature'] == ''
    assert webhooks.verify_signature(body, signature, secret='s3cret')
    assert not webhooks.verify_signature(body, signature, secret='other')
    assert not webhooks.verify_signature(body.replace(b'u1', b'u2'), signature, secret='s3cret')
    assert not webhooks.verify_signature(body, None)


def test_default_test_data_is_used():
    _, _, payload = webhooks.build_test_payload('course.completed')
    assert payload['data']['course']['name'] == 'EMDR Basic Training'
    assert payload['event'] == 'course.completed'


def test_unknown_event_is_rejected():
    with pytest.raises(ValidationError):
        webhooks.build_test_payload('course.deleted')


@patch('emdr_api.utils.webhooks.httpx.Client')
def test_send_posts_signed_body(mock_cls):
    client = _mock_client(mock_cls, status=202)
    result = webhooks.send_test_webhook('product.purchased', url='http://receiver.test/hook', secret='abc')
    assert result['status'] == 202
    assert result['webhookResponse'] == {'received': True}
    assert result['event'] == 'product.purchased'

    args, kwargs = client.post.call_args
    assert args[0] == 'http://receiver.test/hook'
    sent = kwargs['content']
    assert webhooks.verify_signature(sent, kwargs['headers'][webhooks.SIGNATURE_HEADER], secret='abc')
    assert mock_cls.call_args.kwargs['timeout'] == 10.0


@patch('emdr_api.utils.webhooks.httpx.Client')
def test_connection_errors_raise_upstream(mock_cls):
    _mock_client(mock_cls, error=httpx.ConnectError('connection refused'))
    with pytest.raises(UpstreamError):
        webhooks.send_test_webhook('user.updated', url='http://receiver.test/hook')


@patch('emdr_api.utils.webhooks.httpx.Client')
def test_webhook_routes(mock_cls, client):
    usage = client.get('/test/webhook').json()
    assert 'course.completed' in usage['availableEvents']

    _mock_client(mock_cls, status=400, body={'error': 'bad signature'})
    r = client.post('/test/webhook', json={'event': 'user.created', 'webhookUrl': 'http://receiver.test/hook'})
    assert r.status_code == 200
    assert r.json()['status'] == 400
    assert r.json()['webhookResponse'] == {'error': 'bad signature'}

    assert client.post('/test/webhook', json={'event': 'nope'}).status_code == 400

    _mock_client(mock_cls, error=httpx.ConnectError('down'))
    r = client.post('/test/webhook', json={})
    assert r.status_code == 502
    assert r.json()['code'] == 'UPSTREAM_ERROR'


def test_webhook_routes_hidden_outside_dev(client, monkeypatch):
    monkeypatch.setattr(settings, 'ENV', 'production')
    assert client.get('/test/webhook').status_code == 404
    assert client.post('/test/webhook', json={}).status_code == 404
