"""
Minimal Docker Engine API client.

Talks to the engine over the local Unix socket (default) or a remote
``tcp://`` / ``http(s)://`` endpoint, optionally with basic auth. Only the
calls the updater needs are exposed.
"""

import json
import logging
import os
import socket as _socket
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter as _HTTPAdapter
from urllib3.connection import HTTPConnection as _HTTPConnection
from urllib3.connectionpool import HTTPConnectionPool as _HTTPConnectionPool

logger = logging.getLogger(__name__)

DOCKER_SOCKET_PATH = os.environ.get('DOCKER_SOCKET', '/var/run/docker.sock')
REQUEST_TIMEOUT = 30
PULL_TIMEOUT = 300


class DockerAPIError(Exception):
    """An engine call failed; ``status_code`` is None for transport errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class EngineUnreachableError(DockerAPIError):
    """The engine could not be contacted at all."""


# ---------------------------------------------------------------------------
# Unix socket transport
# ---------------------------------------------------------------------------

class _UnixSocketConnection(_HTTPConnection):
    """HTTPConnection that connects via a Unix domain socket."""

    def __init__(self, socket_path: str, timeout: Optional[float] = None):
        super().__init__('localhost')
        self._socket_path = socket_path
        self._socket_timeout = timeout

    def connect(self):
        sock = _socket.socket(_socket.AF_UNIX, _socket.SOCK_STREAM)
        sock.settimeout(self._socket_timeout)
        sock.connect(self._socket_path)
        self.sock = sock


class _UnixSocketPool(_HTTPConnectionPool):
    """Connection pool backed by a Unix domain socket."""

    def __init__(self, socket_path: str, timeout: Optional[float] = None):
        super().__init__('localhost')
        self._socket_path = socket_path
        self._socket_timeout = timeout

    def _new_conn(self):
        return _UnixSocketConnection(self._socket_path, self._socket_timeout)


class _UnixSocketAdapter(_HTTPAdapter):
    """requests adapter that routes all requests through a Unix socket."""

    def __init__(self, socket_path: str, timeout: Optional[float] = PULL_TIMEOUT):
        self._socket_path = socket_path
        self._timeout = timeout
        super().__init__()

    def get_connection(self, url: str, proxies=None):
        return _UnixSocketPool(self._socket_path, self._timeout)

    # Needed in requests >= 2.32 / urllib3 >= 2.x
    def get_connection_with_tls_context(self, request, verify, proxies=None, cert=None):
        return _UnixSocketPool(self._socket_path, self._timeout)


def _base_url_for(host: Optional[str]) -> Optional[str]:
    """Map a DOCKER_HOST style endpoint to an HTTP base URL (None for the Unix socket)."""
    if not host or host.startswith('unix://'):
        return None
    if host.startswith('tcp://'):
        return 'http://' + host[len('tcp://'):].rstrip('/')
    if host.startswith(('http://', 'https://')):
        return host.rstrip('/')
    return 'http://' + host.rstrip('/')


# ---------------------------------------------------------------------------
# Engine client
# ---------------------------------------------------------------------------

class DockerClient:
    """Docker Engine API client over the Unix socket or a TCP endpoint."""

    def __init__(self, host: Optional[str] = None, username: Optional[str] = None,
                 password: Optional[str] = None, socket_path: str = DOCKER_SOCKET_PATH):
        self._session = requests.Session()
        self._base_url = _base_url_for(host)

        if self._base_url is None:
            if host and host.startswith('unix://'):
                socket_path = host[len('unix://'):]
            self._session.mount('http+unix://', _UnixSocketAdapter(socket_path))
            self.endpoint = f"unix://{socket_path}"
        else:
            self.endpoint = self._base_url

        if username or password:
            self._session.auth = (username or '', password or '')

    def _url(self, path: str) -> str:
        if self._base_url is None:
            return f'http+unix://docker{path}'
        return f'{self._base_url}{path}'

    def _call(self, method: str, path: str, expected=(), timeout: float = REQUEST_TIMEOUT,
              **kwargs) -> requests.Response:
        """Issue a request; status codes in ``expected`` are returned without raising."""
        try:
            r = self._session.request(method, self._url(path), timeout=timeout, **kwargs)
        except requests.RequestException as e:
            raise DockerAPIError(f"{method} {path} failed: {e}") from e

        if r.status_code in expected:
            return r

        if not r.ok:
            try:
                message = r.json().get('message', r.text)
            except ValueError:
                message = r.text
            raise DockerAPIError(
                f"{method} {path} returned {r.status_code}: {message}", r.status_code
            )
        return r

    def get(self, path: str, **kwargs) -> requests.Response:
        return self._call('GET', path, **kwargs)

    def post(self, path: str, **kwargs) -> requests.Response:
        return self._call('POST', path, **kwargs)

    def delete(self, path: str, **kwargs) -> requests.Response:
        return self._call('DELETE', path, **kwargs)

    # -- system -------------------------------------------------------------

    def ping(self) -> None:
        """Raise EngineUnreachableError unless the engine answers /_ping."""
        try:
            self.get('/_ping')
        except DockerAPIError as e:
            raise EngineUnreachableError(
                f"Docker engine at {self.endpoint} is not reachable: {e}", e.status_code
            ) from e

    def version(self) -> Dict[str, Any]:
        return self.get('/version').json()

    # -- images -------------------------------------------------------------

    def list_images(self) -> List[Dict[str, Any]]:
        return self.get('/images/json', params={'all': '1'}).json()

    def remove_image(self, image_id: str) -> None:
        """Force-delete an image without pruning untagged parents."""
        self.delete(f'/images/{quote(image_id, safe="")}',
                    params={'force': '1', 'noprune': '1'})

    def pull_image(self, image: str, tag: str) -> Iterator[Dict[str, Any]]:
        """Pull ``image:tag``, yielding the engine's progress events.

        An ``error`` event in the stream raises DockerAPIError.
        """
        response = self.post(
            '/images/create',
            params={'fromImage': image, 'tag': tag},
            stream=True,
            timeout=PULL_TIMEOUT,  # image pulls can take a while
        )
        try:
            for line in response.iter_lines():
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if 'error' in event:
                    raise DockerAPIError(f"Error pulling {image}:{tag}: {event['error']}")
                yield event
        except requests.RequestException as e:
            raise DockerAPIError(f"Error pulling {image}:{tag}: {e}") from e
        finally:
            response.close()

    # -- containers ---------------------------------------------------------

    def list_containers(self) -> List[Dict[str, Any]]:
        return self.get('/containers/json', params={'all': '1'}).json()

    def inspect_container(self, container_id: str) -> Dict[str, Any]:
        return self.get(f'/containers/{container_id}/json').json()

    def create_container(self, name: str, body: Dict[str, Any]) -> str:
        r = self.post('/containers/create', params={'name': name}, json=body)
        return r.json()['Id']

    def start_container(self, container_id: str) -> None:
        self.post(f'/containers/{container_id}/start', expected=(304,))

    def stop_container(self, container_id: str, timeout: int) -> bool:
        """Stop with a grace period; False when the engine reports failure."""
        try:
            self.post(
                f'/containers/{container_id}/stop',
                params={'t': timeout},
                expected=(304,),
                timeout=REQUEST_TIMEOUT + timeout,
            )
        except DockerAPIError as e:
            logger.debug(f"Stopping {container_id} failed: {e}")
            return False
        return True

    def kill_container(self, container_id: str) -> None:
        self.post(f'/containers/{container_id}/kill')

    def remove_container(self, container_id: str) -> None:
        """Force-remove, keeping links and volumes."""
        self.delete(f'/containers/{container_id}',
                    params={'force': '1', 'link': '0', 'v': '0'})
