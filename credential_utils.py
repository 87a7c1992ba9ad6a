"""
Registry credential lookup from the local Docker client configuration.

Reads ~/.docker/config.json (or $DOCKER_CONFIG/config.json) once and resolves
credentials per registry host from inline ``auths`` entries or from an
external ``docker-credential-<name>`` helper.

Nothing in here raises: a missing file, bad JSON or a broken helper all
resolve to "no credentials" so that a credential problem can never abort
an update check.
"""

import base64
import binascii
import json
import logging
import os
import platform
import subprocess
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

Credentials = Tuple[Optional[str], Optional[str]]

NO_CREDENTIALS: Credentials = (None, None)
CREDENTIAL_HELPER_PREFIX = "docker-credential"
DOCKER_CONFIG_ENV = "DOCKER_CONFIG"
DOCKER_CONFIG_FILE = "config.json"
HELPER_TIMEOUT = 30

# Docker Hub credentials are stored under the legacy v1 index URL
REGISTRY_ALIASES = {
    "index.docker.io": ("https://index.docker.io/v1/", "docker.io"),
    "registry-1.docker.io": ("https://index.docker.io/v1/", "docker.io"),
}


def get_docker_config_path() -> Optional[Path]:
    """Return the platform-conventional path of the Docker client config.

    $DOCKER_CONFIG points at a directory and takes precedence; otherwise the
    file lives in .docker/ under the user profile (Windows) or $HOME.
    """
    docker_config = os.environ.get(DOCKER_CONFIG_ENV)
    if docker_config:
        return Path(docker_config) / DOCKER_CONFIG_FILE

    if platform.system() == 'Windows':
        return Path.home() / ".docker" / DOCKER_CONFIG_FILE

    home = os.environ.get("HOME")
    if home:
        return Path(home) / ".docker" / DOCKER_CONFIG_FILE

    return None


class CredentialHelper:
    """Capability interface for credential helper programs."""

    def get(self, helper_name: str, registry: str) -> Credentials:
        raise NotImplementedError


class SubprocessCredentialHelper(CredentialHelper):
    """Runs ``docker-credential-<helper> get`` with the registry on stdin.

    The helper answers with a JSON object carrying ``Username`` and
    ``Secret``. Any failure (missing binary, non-zero exit, bad JSON) yields
    no credentials.
    """

    def __init__(self, prefix: str = CREDENTIAL_HELPER_PREFIX, timeout: float = HELPER_TIMEOUT):
        self.prefix = prefix
        self.timeout = timeout

    def get(self, helper_name: str, registry: str) -> Credentials:
        command = f"{self.prefix}-{helper_name}"

        try:
            result = subprocess.run(
                [command, "get"],
                input=registry,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug(f"Credential helper {command} could not be run: {e}")
            return NO_CREDENTIALS

        if result.returncode != 0:
            logger.debug(
                f"Credential helper {command} exited with {result.returncode} for {registry}"
            )
            return NO_CREDENTIALS

        try:
            payload = json.loads(result.stdout)
            return payload["Username"], payload["Secret"]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.debug(f"Credential helper {command} returned unusable output: {e}")
            return NO_CREDENTIALS


class CredentialResolver:
    """Resolves (username, password) for a registry host.

    Lookup order per registry:
      1. ``auths.<registry>.auth`` - base64 ``user:pass``
      2. ``auths.<registry>.username`` / ``password``
      3. ``credHelpers.<registry>``, else the global ``credsStore`` helper
    """

    def __init__(self, config_path: Optional[Path] = None,
                 helper: Optional[CredentialHelper] = None):
        self._config_path = config_path
        self._helper = helper or SubprocessCredentialHelper()
        self._config: Optional[Dict[str, Any]] = None
        self._loaded = False

    @property
    def config(self) -> Dict[str, Any]:
        """The parsed config document, loaded lazily on first access."""
        if not self._loaded:
            self._config = self._load_config()
            self._loaded = True
        return self._config or {}

    def _load_config(self) -> Optional[Dict[str, Any]]:
        path = self._config_path or get_docker_config_path()
        if path is None:
            return None

        try:
            text = path.read_text(encoding='utf-8')
        except OSError:
            logger.debug(f"No Docker config found at {path}")
            return None
        except UnicodeDecodeError as e:
            logger.warning(f"Ignoring unreadable Docker config {path}: {e}")
            return None

        if not text.strip():
            return None

        try:
            config = json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring unreadable Docker config {path}: {e}")
            return None

        if not isinstance(config, dict):
            logger.warning(f"Ignoring Docker config {path}: not a JSON object")
            return None

        logger.debug(f"Loaded Docker config from {path}")
        return config

    def get_credentials(self, registry: str) -> Credentials:
        """Return (username, password) for ``registry``, or (None, None)."""
        config = self.config
        if not config:
            return NO_CREDENTIALS

        keys = (registry,) + REGISTRY_ALIASES.get(registry, ())

        auths = config.get('auths')
        if isinstance(auths, dict):
            for key in keys:
                entry = auths.get(key)
                if isinstance(entry, dict):
                    credentials = self._from_auth_entry(entry)
                    if credentials is not None:
                        return credentials

        helper_name = self._helper_name(config, keys)
        if helper_name:
            try:
                return self._helper.get(helper_name, registry)
            except Exception as e:
                logger.debug(f"Credential helper '{helper_name}' failed for {registry}: {e}")

        return NO_CREDENTIALS

    @staticmethod
    def _from_auth_entry(entry: Dict[str, Any]) -> Optional[Credentials]:
        """Credentials from an ``auths`` entry, or None to fall through to helpers."""
        auth = entry.get('auth')
        if auth:
            return _decode_basic_auth(auth)

        username = entry.get('username')
        password = entry.get('password')
        if username is not None and password is not None:
            return username, password

        return None

    @staticmethod
    def _helper_name(config: Dict[str, Any], keys: Tuple[str, ...]) -> Optional[str]:
        cred_helpers = config.get('credHelpers')
        if isinstance(cred_helpers, dict):
            for key in keys:
                if cred_helpers.get(key):
                    return cred_helpers[key]

        return config.get('credsStore') or None


def _decode_basic_auth(auth: str) -> Credentials:
    """Decode a base64 ``user:pass`` string; malformed input means no credentials."""
    try:
        decoded = base64.b64decode(auth).decode('utf-8')
    except (binascii.Error, UnicodeDecodeError, ValueError, TypeError):
        return NO_CREDENTIALS

    username, sep, password = decoded.partition(':')
    if not sep or not username or not password:
        return NO_CREDENTIALS

    return username, password
