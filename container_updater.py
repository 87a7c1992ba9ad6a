#!/usr/bin/env python3
"""
Docker Container Auto-Update

Checks every local image against its registry and, when the remote digest
changed or a newer version tag with the same structure exists, recreates
the containers using it: stop -> remove -> delete image -> pull -> recreate
-> start, in dependency order and with their original configuration.
"""

__version__ = "1.0.0"

import argparse
import copy
import json
import logging
import os
import sys
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import jsonschema
import requests

from credential_utils import CredentialResolver
from dependency_utils import COMPOSE_PROJECT_LABEL, parse_dependencies, start_order, stop_order
from docker_api import DockerAPIError, DockerClient, EngineUnreachableError
from registry_api import RegistryClient, RegistryError, TokenCache
from update_models import CheckImage, ContainerInfo, ContainerUpdateGroup, UpdateImage
from version_utils import find_latest_matching_version


# Constants
DEFAULT_REGISTRY = "index.docker.io"
DEFAULT_NAMESPACE = "library"
DOCKER_HUB_ALIASES = ("docker.io", "registry-1.docker.io")
DEFAULT_STOP_TIMEOUT = 15
DEFAULT_START_DELAY = 5

ENABLE_LABEL = "container-updater.enable"
MONITOR_ONLY_LABEL = "container-updater.monitor-only"
NO_PULL_LABEL = "container-updater.no-pull"

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_ENGINE_UNREACHABLE = 2

# Configuration schema
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "include": {"type": "array", "items": {"type": "string"}},
        "exclude": {"type": "array", "items": {"type": "string"}},
        "digest_only": {"type": "boolean"},
        "stop_timeout": {"type": "integer", "minimum": 0},
        "start_delay": {"type": "number", "minimum": 0},
        "insecure_registries": {"type": "array", "items": {"type": "string"}},
    },
    "additionalProperties": False,
}

logger = logging.getLogger('ContainerUpdater')


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Setup logging configuration."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))

    if not root.handlers:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        root.addHandler(handler)

        if log_file:
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)


def load_config(config_file: Optional[str]) -> Dict[str, Any]:
    """Load and validate the optional JSON configuration file."""
    if not config_file:
        return {}

    try:
        with open(config_file, 'r') as f:
            config = json.load(f)

        # Validate against schema
        jsonschema.validate(config, CONFIG_SCHEMA)
        return config

    except FileNotFoundError:
        logger.error(f"Config file {config_file} not found")
        raise
    except json.JSONDecodeError as e:
        logger.error(f"Error parsing config file: {e}")
        raise
    except jsonschema.ValidationError as e:
        logger.error(f"Configuration validation failed: {e.message}")
        raise


def parse_image_reference(name: str) -> Tuple[str, str]:
    """
    Split an image name (without tag or digest) into registry and repository.

    The first path component is a registry when it contains '.', ':' or is
    'localhost'; otherwise the image lives on Docker Hub, where single-name
    images sit in the implicit 'library' namespace.

        nginx                   -> (index.docker.io, library/nginx)
        linuxserver/sonarr      -> (index.docker.io, linuxserver/sonarr)
        ghcr.io/org/app         -> (ghcr.io, org/app)
    """
    parts = name.split('/')
    first = parts[0]

    if len(parts) > 1 and ('.' in first or ':' in first or first == 'localhost'):
        registry, path = first, parts[1:]
    else:
        registry, path = DEFAULT_REGISTRY, parts

    if registry.lower() in DOCKER_HUB_ALIASES:
        registry = DEFAULT_REGISTRY

    if registry == DEFAULT_REGISTRY and len(path) == 1:
        path = [DEFAULT_NAMESPACE] + path

    return registry, '/'.join(path)


def build_create_spec(container_info: Dict[str, Any]) -> Dict[str, Any]:
    """Build an engine container-create body from a container's inspect data.

    Config, HostConfig and the network endpoints are copied as they are;
    only the image reference is changed later, at recreation time.
    """
    network_settings = container_info.get('NetworkSettings') or {}

    body: Dict[str, Any] = copy.deepcopy(container_info.get('Config') or {})
    body['HostConfig'] = copy.deepcopy(container_info.get('HostConfig') or {})
    body['NetworkingConfig'] = {
        'EndpointsConfig': copy.deepcopy(network_settings.get('Networks') or {})
    }
    if network_settings.get('MacAddress'):
        body['MacAddress'] = network_settings['MacAddress']

    return body


def _is_true(value: Optional[str]) -> bool:
    return (value or '').strip().lower() in ('1', 'true', 'yes', 'on')


def _is_false(value: Optional[str]) -> bool:
    return (value or '').strip().lower() in ('0', 'false', 'no', 'off')


def _matches_filter(repository: str, names: Iterable[str]) -> bool:
    """Exact repository match or a match on any of its path segments."""
    names = {n.lower() for n in names}
    repository = repository.lower()
    return repository in names or any(part in names for part in repository.split('/'))


class ContainerUpdater:
    def __init__(self, docker: DockerClient, registry: RegistryClient,
                 dry_run: bool = False, interactive: bool = False,
                 digest_only: bool = False,
                 include: Iterable[str] = (), exclude: Iterable[str] = (),
                 stop_timeout: int = DEFAULT_STOP_TIMEOUT,
                 start_delay: float = DEFAULT_START_DELAY,
                 prompt: Callable[[str], str] = input,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initialize the Container Updater.

        Args:
            docker: Engine client used for every container and image operation
            registry: Registry client used for digests and tags
            dry_run: If True, only log what would be done without making changes
            interactive: Ask for confirmation before updating each image
            digest_only: Report version-tag updates but never apply them
            include: Only check repositories matching these names
            exclude: Never check repositories matching these names
            stop_timeout: Seconds to wait for a graceful stop before killing
            start_delay: Seconds to wait after starting each container
        """
        self.docker = docker
        self.registry = registry
        self.dry_run = dry_run
        self.interactive = interactive
        self.digest_only = digest_only
        self.include = list(include)
        self.exclude = list(exclude)
        self.stop_timeout = stop_timeout
        self.start_delay = start_delay
        self._prompt = prompt
        self._sleep = sleep
        self.logger = logger

    def _action(self, message: str) -> None:
        """Log a mutating step, marked when it will not actually happen."""
        if self.dry_run:
            self.logger.info(f"[DRY RUN] {message}")
        else:
            self.logger.info(message)

    # -- Scan ---------------------------------------------------------------

    def connect(self) -> None:
        """Ping the engine and log its details; raises EngineUnreachableError."""
        self.docker.ping()

        try:
            version = self.docker.version()
        except DockerAPIError as e:
            self.logger.warning(f"Could not read engine version: {e}")
            return

        self.logger.info(f"Host    : {self.docker.endpoint}")
        self.logger.info(f"OS      : {version.get('Os')} ({version.get('Arch')})")
        self.logger.info(f"Version : {version.get('Version')}")
        self.logger.info(f"API     : {version.get('ApiVersion')}")
        self.logger.info(f"Kernel  : {version.get('KernelVersion')}")

    def scan_images(self, images: List[Dict[str, Any]]) -> List[CheckImage]:
        """Turn the engine's image list into CheckImage rows.

        Images without a repository digest (built locally) or without a
        repository tag (dangling) cannot be checked and are skipped.
        """
        result = []
        for image in images:
            image_id = image.get('Id', '')
            repo_digests = [d for d in image.get('RepoDigests') or [] if not d.startswith('<none>')]
            repo_tags = [t for t in image.get('RepoTags') or [] if not t.startswith('<none>')]

            if not repo_digests:
                self.logger.warning(
                    f"Image {image_id} does not have a repository digest and will not be updated"
                )
                continue

            if not repo_tags:
                self.logger.warning(
                    f"Image {image_id} does not have a repository tag and will not be updated"
                )
                continue

            image_name, _, digest = repo_digests[0].partition('@')
            repo_tag = repo_tags[0]

            # Strip tag only when the colon is in the tag position, not a registry port
            last_slash = repo_tag.rfind('/')
            last_colon = repo_tag.rfind(':')
            tag = repo_tag[last_colon + 1:] if last_colon > last_slash else 'latest'

            registry, repository = parse_image_reference(image_name)
            result.append(CheckImage(
                id=image_id,
                original_name=image_name,
                original_tag=repo_tag,
                registry=registry,
                repository=repository,
                tag=tag,
                local_digest=digest,
            ))

        return result

    # -- Check --------------------------------------------------------------

    def _labels_by_image(self, containers: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, str]]]:
        labels: Dict[str, List[Dict[str, str]]] = {}
        for container in containers:
            labels.setdefault(container.get('ImageID', ''), []).append(
                container.get('Labels') or {}
            )
        return labels

    def _is_filtered(self, image: CheckImage) -> bool:
        """Exclusion wins over inclusion."""
        if self.exclude and _matches_filter(image.repository, self.exclude):
            return True
        if self.include and not _matches_filter(image.repository, self.include):
            return True
        return False

    @staticmethod
    def _is_label_excluded(labels: List[Dict[str, str]], allow_list: bool) -> bool:
        if any(_is_false(lbl.get(ENABLE_LABEL)) for lbl in labels):
            return True
        if allow_list and not any(_is_true(lbl.get(ENABLE_LABEL)) for lbl in labels):
            return True
        return False

    @staticmethod
    def _is_monitor_only(labels: List[Dict[str, str]]) -> bool:
        return any(
            _is_true(lbl.get(MONITOR_ONLY_LABEL)) or _is_true(lbl.get(NO_PULL_LABEL))
            for lbl in labels
        )

    def check_image(self, image: CheckImage, monitor_only: bool = False) -> Optional[UpdateImage]:
        """Compare one image with its registry; return the update to apply, if any.

        Registry and network errors propagate to the caller.
        """
        remote_digests = self.registry.get_digests(image.registry, image.repository, image.tag)

        if image.local_digest not in remote_digests:
            if monitor_only:
                self.logger.info(f"{image.original_tag}: UPDATE AVAILABLE (DIGEST) - MONITOR ONLY")
                return None

            self.logger.info(f"{image.original_tag}: UPDATE AVAILABLE (DIGEST)")
            return UpdateImage(
                id=image.id,
                original_name=image.original_name,
                original_tag=image.original_tag,
                tag=image.tag,
                local_digest=image.local_digest,
                new_digest=remote_digests[0],
            )

        latest_version = image.tag
        if '.' in image.tag and not monitor_only:
            tags = self.registry.get_tags(image.registry, image.repository)
            latest_version = find_latest_matching_version(image.tag, tags)

        if latest_version == image.tag:
            self.logger.info(f"{image.original_tag}: NO UPDATE")
            return None

        if self.digest_only:
            self.logger.info(f"{image.original_tag}: EXCLUDED (VERSION {latest_version})")
            return None

        self.logger.info(f"{image.original_tag}: UPDATE AVAILABLE (VERSION {latest_version})")
        return UpdateImage(
            id=image.id,
            original_name=image.original_name,
            original_tag=image.original_tag,
            tag=latest_version,
            local_digest=image.local_digest,
        )

    def check_images(self, images: List[CheckImage],
                     containers: List[Dict[str, Any]]) -> List[UpdateImage]:
        """Check every image; a failure only drops the image it happened on."""
        labels_by_image = self._labels_by_image(containers)
        allow_list = any(
            _is_true((c.get('Labels') or {}).get(ENABLE_LABEL)) for c in containers
        )
        if allow_list:
            self.logger.info(f"Found '{ENABLE_LABEL}' labels, only enabled images are checked")

        updates = []
        for image in images:
            self.logger.info(f"Checking image {image.original_tag}...")

            if self._is_filtered(image):
                self.logger.info(f"{image.original_tag}: EXCLUDED")
                continue

            labels = labels_by_image.get(image.id, [])
            if self._is_label_excluded(labels, allow_list):
                self.logger.info(f"{image.original_tag}: EXCLUDED (LABEL)")
                continue

            try:
                update = self.check_image(image, monitor_only=self._is_monitor_only(labels))
            except (RegistryError, requests.RequestException, ValueError) as e:
                self.logger.error(f"{image.original_tag}: UPDATE CHECK FAILED: {e}")
                continue

            if update:
                updates.append(update)

        return updates

    # -- Select -------------------------------------------------------------

    def _confirm(self, update: UpdateImage) -> bool:
        while True:
            try:
                answer = self._prompt(f"Update {update.original_tag}? [Y/N]: ")
            except EOFError:
                return False
            answer = answer.strip().lower()
            if answer in ('y', 'yes'):
                return True
            if answer in ('n', 'no'):
                return False

    def select_updates(self, updates: List[UpdateImage]) -> List[UpdateImage]:
        """In interactive mode, keep only the updates the operator confirms."""
        if not self.interactive:
            return list(updates)

        selected = []
        for update in updates:
            if self._confirm(update):
                self.logger.info(f"{update.original_tag}: selected for update")
                selected.append(update)
            else:
                self.logger.info(f"{update.original_tag}: skipped by operator")
        return selected

    # -- Update -------------------------------------------------------------

    def capture_container(self, container_id: str) -> ContainerInfo:
        """Inspect a container and keep everything needed to recreate it."""
        info = self.docker.inspect_container(container_id)
        labels = (info.get('Config') or {}).get('Labels') or {}

        return ContainerInfo(
            id=info.get('Id', container_id),
            name=(info.get('Name') or '').lstrip('/'),
            is_running=bool((info.get('State') or {}).get('Running')),
            create_spec=build_create_spec(info),
            dependencies=frozenset(parse_dependencies(labels)),
            project=labels.get(COMPOSE_PROJECT_LABEL, ''),
        )

    def build_update_group(self, update: UpdateImage,
                           containers: List[Dict[str, Any]]) -> ContainerUpdateGroup:
        """Capture every container bound to the image being updated."""
        captured = []
        for container in containers:
            if container.get('ImageID') != update.id:
                continue
            try:
                captured.append(self.capture_container(container['Id']))
            except DockerAPIError as e:
                self.logger.error(f"Could not inspect container {container.get('Id')}: {e}")

        return ContainerUpdateGroup(
            image_id=update.id,
            image_name=update.original_name,
            new_tag=update.tag,
            containers=captured,
        )

    def _teardown(self, container: ContainerInfo) -> bool:
        try:
            if container.is_running:
                self._action(f"Stopping container {container.name} ({container.id})...")
                if not self.dry_run and not self.docker.stop_container(container.id, self.stop_timeout):
                    self.logger.warning(
                        f"Failed to stop container {container.name}, killing it instead..."
                    )
                    self.docker.kill_container(container.id)

            self._action(f"Removing container {container.name} ({container.id})...")
            if not self.dry_run:
                self.docker.remove_container(container.id)
            return True

        except DockerAPIError as e:
            self.logger.error(f"CONTAINER REMOVAL FAILED for {container.name} ({container.id}): {e}")
            return False

    def _swap_image(self, update: UpdateImage) -> bool:
        try:
            self._action(f"Removing old image for {update.original_tag} ({update.local_digest})")
            if not self.dry_run:
                self.docker.remove_image(update.id)

            new_digest = f" ({update.new_digest})" if update.new_digest else ''
            self._action(f"Pulling new image {update.original_name}:{update.tag}{new_digest}")
            if not self.dry_run:
                for event in self.docker.pull_image(update.original_name, update.tag):
                    if event.get('status'):
                        self.logger.debug(f"{event.get('id', '')} {event['status']}".strip())
            return True

        except DockerAPIError as e:
            self.logger.error(f"REMOVING/PULLING NEW IMAGE FAILED for {update.original_tag}: {e}")
            return False

    def _recreate(self, container: ContainerInfo, image_reference: str) -> bool:
        body = dict(container.create_spec)
        body['Image'] = image_reference

        try:
            self._action(f"Restoring container {container.name} from {image_reference}...")
            if not self.dry_run:
                new_id = self.docker.create_container(container.name, body)
            else:
                new_id = container.id

            if container.is_running:
                self._action(f"Starting new container {container.name}...")
                if not self.dry_run:
                    self.docker.start_container(new_id)
                    self._sleep(self.start_delay)
            return True

        except DockerAPIError as e:
            self.logger.error(f"CONTAINER CREATION FAILED for {container.name}: {e}")
            return False

    def update_image(self, update: UpdateImage,
                     containers: List[Dict[str, Any]]) -> bool:
        """Run one image and its containers through the update cycle.

        Returns False when any step failed. A container that could not be
        removed is left in place and not recreated; when the image swap
        fails, the removed containers stay removed.
        """
        group = self.build_update_group(update, containers)
        ordered = stop_order(group.containers)

        if ordered:
            self.logger.info(
                f"Found {len(ordered)} container(s) using {update.original_tag}: "
                f"{', '.join(c.name for c in ordered)}"
            )
        else:
            self.logger.info(f"No containers found for {update.original_tag}, image updated only")

        removed = []
        for container in ordered:
            if self._teardown(container):
                removed.append(container)
            else:
                self.logger.warning(f"Container {container.name} was not removed, skipping its recreation")
        ok = len(removed) == len(ordered)

        if not self._swap_image(update):
            if removed:
                self.logger.error(
                    f"Containers {', '.join(c.name for c in removed)} were removed "
                    f"and will not be recreated"
                )
            return False

        for container in start_order(removed):
            ok = self._recreate(container, group.image_reference) and ok

        return ok

    def run(self) -> List[UpdateImage]:
        """Check all images and update the selected ones.

        Raises EngineUnreachableError when the engine cannot be contacted.
        """
        self.connect()

        if self.exclude:
            self.logger.info(f"EXCLUDE: {' '.join(self.exclude)}")
        if self.include:
            self.logger.info(f"INCLUDE: {' '.join(self.include)}")
        if self.dry_run:
            self.logger.info("=== DRY RUN MODE: no changes will be made to images or containers ===")

        images = self.scan_images(self.docker.list_images())
        containers = self.docker.list_containers()

        registries = {image.registry for image in images}
        self.logger.info(f"Checking {len(images)} images across {len(registries)} registries...")

        updates = self.check_images(images, containers)
        if not updates:
            self.logger.info("Nothing to update")
            return []

        self.logger.info(f"Found {len(updates)} image updates")

        selected = self.select_updates(updates)
        failed = [u for u in selected if not self.update_image(u, containers)]

        # Summary
        self.logger.info("=== Update Summary ===")
        for update in selected:
            status = "FAILED" if update in failed else "OK"
            self.logger.info(f"{update.original_tag} -> {update.original_name}:{update.tag} [{status}]")

        return selected


def _env_bool(name: str) -> bool:
    return os.environ.get(name, '').lower() == 'true'


def _env_list(name: str) -> List[str]:
    return [item.strip() for item in os.environ.get(name, '').split(',') if item.strip()]


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description='Update running containers when their images change'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        default=_env_bool('DRY_RUN'),
        help='Check for updates and log what would happen without making changes (env: DRY_RUN)'
    )
    parser.add_argument(
        '-i', '--interactive',
        action='store_true',
        default=_env_bool('INTERACTIVE'),
        help='Choose which images to update (env: INTERACTIVE)'
    )
    parser.add_argument(
        '--digest-only',
        action='store_true',
        default=_env_bool('DIGEST_ONLY'),
        help='Only apply digest updates, report newer version tags (env: DIGEST_ONLY)'
    )
    parser.add_argument(
        '--include',
        action='append',
        default=_env_list('INCLUDE'),
        help='Only check images matching this name; repeatable (env: INCLUDE, comma-separated)'
    )
    parser.add_argument(
        '--exclude',
        action='append',
        default=_env_list('EXCLUDE'),
        help='Never check images matching this name; repeatable (env: EXCLUDE, comma-separated)'
    )
    parser.add_argument(
        '--host',
        default=os.environ.get('DOCKER_HOST'),
        help='Docker engine endpoint, e.g. tcp://host:2375 (env: DOCKER_HOST)'
    )
    parser.add_argument(
        '--username',
        default=os.environ.get('DOCKER_USERNAME'),
        help='Username for the Docker engine endpoint (env: DOCKER_USERNAME)'
    )
    parser.add_argument(
        '--password',
        default=os.environ.get('DOCKER_PASSWORD'),
        help='Password for the Docker engine endpoint (env: DOCKER_PASSWORD)'
    )
    parser.add_argument(
        '--config',
        default=os.environ.get('CONFIG_FILE'),
        help='Optional JSON configuration file (env: CONFIG_FILE)'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=os.environ.get('LOG_LEVEL', 'INFO'),
        help='Logging level (env: LOG_LEVEL, default: INFO)'
    )
    parser.add_argument(
        '--log-file',
        default=os.environ.get('LOG_FILE'),
        help='Also append log output to this file (env: LOG_FILE)'
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level, args.log_file)
    logger.info(f"Container Updater {__version__}")

    try:
        config = load_config(args.config)
    except (OSError, json.JSONDecodeError, jsonschema.ValidationError):
        return EXIT_ERROR

    registry = RegistryClient(
        token_cache=TokenCache(),
        credentials=CredentialResolver(),
        insecure_registries=config.get('insecure_registries', []),
    )
    updater = ContainerUpdater(
        DockerClient(args.host, args.username, args.password),
        registry,
        dry_run=args.dry_run,
        interactive=args.interactive,
        digest_only=args.digest_only or config.get('digest_only', False),
        include=list(config.get('include', [])) + list(args.include or []),
        exclude=list(config.get('exclude', [])) + list(args.exclude or []),
        stop_timeout=config.get('stop_timeout', DEFAULT_STOP_TIMEOUT),
        start_delay=config.get('start_delay', DEFAULT_START_DELAY),
    )

    try:
        updater.run()
    except EngineUnreachableError as e:
        logger.error(f"Docker engine is not running: {e}")
        return EXIT_ENGINE_UNREACHABLE
    except KeyboardInterrupt:
        logger.info("Exiting...")
        return EXIT_ERROR
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return EXIT_ERROR

    return EXIT_OK


if __name__ == '__main__':
    sys.exit(main())
