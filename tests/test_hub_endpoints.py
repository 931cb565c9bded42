"""Tests for the Hub HTTP and WebSocket endpoints."""

import json

import pytest
from fastapi.testclient import TestClient

from common.protocol import encode_content
from hub.hub_agent import HubAgent
from hub.main import create_app, parse_args


@pytest.fixture
def client(hub_root):
    """Create FastAPI test client around a hub without a change source."""
    (hub_root / 'a.txt').write_bytes(b'hello')
    (hub_root / 'docs').mkdir()
    app = create_app(HubAgent(hub_root, watch=False))
    with TestClient(app) as test_client:
        yield test_client


def test_root_endpoint(client):
    response = client.get('/')
    assert response.status_code == 200
    assert response.json()['status'] == 'running'


def test_health_endpoint(client):
    response = client.get('/health')
    assert response.status_code == 200
    assert response.json()['status'] == 'healthy'


def test_websocket_receives_state_on_connect(client):
    with client.websocket_connect('/sync') as ws:
        message = ws.receive_json()

    assert message['message'] == 'state'
    assert message['data']['entries'] == [
        {'path': 'a.txt', 'type': 'file', 'size': 5},
        {'path': 'docs', 'type': 'directory'},
    ]


def test_websocket_content_query(client):
    with client.websocket_connect('/sync') as ws:
        ws.receive_json()
        ws.send_text(json.dumps({'message': 'contentQuery', 'data': {'path': 'a.txt'}}))
        message = ws.receive_json()

    assert message == {'message': 'content', 'data': {'path': 'a.txt', 'content': encode_content(b'hello')}}


def test_websocket_write_operation(client, hub_root):
    with client.websocket_connect('/sync') as ws:
        ws.receive_json()
        ws.send_text(json.dumps({'message': 'operation', 'data': {
            'operation': 'write', 'path': 'new/b.txt', 'content': encode_content(b'bee')
        }}))
        # a following query is answered only after the write was applied
        ws.send_text(json.dumps({'message': 'contentQuery', 'data': {'path': 'new/b.txt'}}))
        message = ws.receive_json()

    assert message['message'] == 'content'
    assert (hub_root / 'new' / 'b.txt').read_bytes() == b'bee'


def test_websocket_malformed_frame(client):
    with client.websocket_connect('/sync') as ws:
        ws.receive_json()
        ws.send_text('this is not json')
        message = ws.receive_json()

    assert message['message'] == 'operationError'


def test_parse_args_defaults():
    args = parse_args([])
    assert args.port == 3000
    assert args.log_level is None


def test_parse_args_overrides():
    args = parse_args(['--port', '4000', '--dir', '/tmp/shared', '--log-level', 'DEBUG'])
    assert args.port == 4000
    assert args.dir == '/tmp/shared'
