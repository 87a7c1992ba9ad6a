"""Tests for the engine client's endpoint handling and error mapping."""

import json
from unittest.mock import MagicMock

import pytest
import requests

from docker_api import DockerAPIError, DockerClient, EngineUnreachableError, _base_url_for


def _response(status=200, body=None, lines=None):
    r = MagicMock()
    r.status_code = status
    r.ok = status < 400
    r.json.return_value = body if body is not None else {}
    r.text = json.dumps(body) if body is not None else ''
    r.iter_lines.return_value = [json.dumps(line).encode() for line in (lines or [])]
    return r


@pytest.fixture
def client():
    c = DockerClient()
    c._session = MagicMock()
    return c


class TestEndpoint:

    @pytest.mark.parametrize("host,expected", [
        (None, None),
        ("unix:///var/run/docker.sock", None),
        ("tcp://10.0.0.5:2375", "http://10.0.0.5:2375"),
        ("https://docker.example:2376/", "https://docker.example:2376"),
        ("docker.example:2375", "http://docker.example:2375"),
    ])
    def test_base_url(self, host, expected):
        assert _base_url_for(host) == expected

    def test_unix_socket_url(self):
        c = DockerClient("unix:///tmp/docker.sock")
        assert c.endpoint == "unix:///tmp/docker.sock"
        assert c._url('/_ping') == 'http+unix://docker/_ping'

    def test_tcp_with_basic_auth(self):
        c = DockerClient("tcp://10.0.0.5:2375", "admin", "pw")
        assert c._url('/_ping') == 'http://10.0.0.5:2375/_ping'
        assert c._session.auth == ("admin", "pw")


class TestCalls:

    def test_ping_unreachable(self, client):
        client._session.request.side_effect = requests.ConnectionError("refused")
        with pytest.raises(EngineUnreachableError):
            client.ping()

    def test_error_message_from_engine(self, client):
        client._session.request.return_value = _response(404, {"message": "No such container: x"})
        with pytest.raises(DockerAPIError) as excinfo:
            client.inspect_container("x")
        assert excinfo.value.status_code == 404
        assert "No such container" in str(excinfo.value)

    def test_stop_reports_failure(self, client):
        client._session.request.return_value = _response(500, {"message": "cannot stop"})
        assert client.stop_container("abc", 15) is False

    def test_stop_already_stopped_is_success(self, client):
        client._session.request.return_value = _response(304)
        assert client.stop_container("abc", 15) is True
        _, kwargs = client._session.request.call_args
        assert kwargs['params'] == {'t': 15}

    def test_remove_container_keeps_volumes(self, client):
        client._session.request.return_value = _response(204)
        client.remove_container("abc")
        args, kwargs = client._session.request.call_args
        assert args[0] == 'DELETE'
        assert kwargs['params'] == {'force': '1', 'link': '0', 'v': '0'}

    def test_remove_image_without_prune(self, client):
        client._session.request.return_value = _response(200, [])
        client.remove_image("sha256:abc")
        args, kwargs = client._session.request.call_args
        assert args[1].endswith('/images/sha256%3Aabc')
        assert kwargs['params'] == {'force': '1', 'noprune': '1'}

    def test_create_container_returns_id(self, client):
        client._session.request.return_value = _response(201, {"Id": "new123", "Warnings": []})
        assert client.create_container("web", {"Image": "nginx:1.27"}) == "new123"
        _, kwargs = client._session.request.call_args
        assert kwargs['params'] == {'name': 'web'}
        assert kwargs['json'] == {"Image": "nginx:1.27"}

    def test_pull_yields_progress(self, client):
        client._session.request.return_value = _response(
            200, lines=[{"status": "Pulling fs layer", "id": "a1"}, {"status": "Done"}]
        )
        events = list(client.pull_image("nginx", "1.27"))
        assert [e["status"] for e in events] == ["Pulling fs layer", "Done"]

    def test_pull_error_event_raises(self, client):
        client._session.request.return_value = _response(
            200, lines=[{"status": "Pulling"}, {"error": "manifest unknown"}]
        )
        with pytest.raises(DockerAPIError, match="manifest unknown"):
            list(client.pull_image("nginx", "9.99"))
