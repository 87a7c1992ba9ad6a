"""Container dependency labels and dependency-first ordering.

Dependencies come from two labels:

  com.docker.compose.depends_on   "db:service_started:false,cache:service_healthy:true"
  container-updater.depends-on    "db,cache"

Compose names are service names, so each one is also added in its
project-qualified container-name forms (``<project>-<service>-1`` and the
legacy ``<project>_<service>_1``).
"""

import logging
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from update_models import ContainerInfo

logger = logging.getLogger(__name__)

COMPOSE_DEPENDS_ON_LABEL = "com.docker.compose.depends_on"
COMPOSE_PROJECT_LABEL = "com.docker.compose.project"
DEPENDS_ON_LABEL = "container-updater.depends-on"


def _split_list(value: Optional[str]) -> List[str]:
    return [item.strip() for item in (value or '').split(',') if item.strip()]


def compose_dependency_names(service: str, project: str) -> Set[str]:
    """The names a compose service may run under as a container."""
    names = {service}
    if project:
        names.add(f"{project}-{service}-1")
        names.add(f"{project}_{service}_1")
    return names


def parse_dependencies(labels: Optional[Mapping[str, str]]) -> Set[str]:
    """Collect the container names a container declares it depends on."""
    labels = labels or {}
    project = labels.get(COMPOSE_PROJECT_LABEL, '')
    dependencies: Set[str] = set()

    for entry in _split_list(labels.get(COMPOSE_DEPENDS_ON_LABEL)):
        # "service:condition:restart" - only the service name matters
        service = entry.split(':', 1)[0].strip()
        if service:
            dependencies.update(compose_dependency_names(service, project))

    dependencies.update(_split_list(labels.get(DEPENDS_ON_LABEL)))
    return dependencies


def stop_order(containers: Iterable[ContainerInfo]) -> List[ContainerInfo]:
    """Order containers so each comes after the dependencies it has in scope.

    Iterative depth-first post-order over the dependency graph restricted to
    ``containers``. Dependencies outside the set are ignored. An edge that
    closes a cycle is logged and skipped; the result always contains every
    container exactly once.
    """
    containers = list(containers)
    by_name: Dict[str, ContainerInfo] = {}
    for container in containers:
        if container.name in by_name:
            logger.warning(
                f"Duplicate container name '{container.name}'; dependency ordering "
                f"uses the first one found"
            )
            continue
        by_name[container.name] = container

    order: List[ContainerInfo] = []
    visited: Set[str] = set()
    visiting: Set[str] = set()

    for root in containers:
        if root.id in visited:
            continue

        visiting.add(root.id)
        stack: List[Tuple[ContainerInfo, Iterator[str]]] = [
            (root, iter(sorted(root.dependencies)))
        ]

        while stack:
            node, pending = stack[-1]
            for dep_name in pending:
                dep = by_name.get(dep_name)
                if dep is None or dep.id in visited:
                    continue
                if dep.id in visiting:
                    logger.warning(
                        f"Dependency cycle detected: {node.name} -> {dep.name}; "
                        f"ignoring this dependency"
                    )
                    continue
                visiting.add(dep.id)
                stack.append((dep, iter(sorted(dep.dependencies))))
                break
            else:
                stack.pop()
                visiting.discard(node.id)
                visited.add(node.id)
                order.append(node)

    return order


def start_order(containers: Iterable[ContainerInfo]) -> List[ContainerInfo]:
    """Recreation order: the stop order reversed."""
    return list(reversed(stop_order(containers)))
