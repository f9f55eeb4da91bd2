import logging
from collections import OrderedDict

from stackcheck.descriptor.exceptions import CircularDependencyError
from stackcheck.descriptor.template_utils import iter_references
from stackcheck.utils.collections import ensure_list

LOG = logging.getLogger(__name__)

# sections of a resource body which may reference other resources
DEPENDENCY_SECTIONS = ("Properties", "Metadata", "CreationPolicy", "UpdatePolicy")


def get_resource_dependencies(resource_id: str, resource: dict, resource_ids) -> list[str]:
    """
    Find the resources `resource` depends on: implicitly via ``Ref``, ``Fn::GetAtt`` and ``Fn::Sub`` placeholders,
    and explicitly via ``DependsOn``. Only names contained in `resource_ids` are returned, including `resource_id`
    itself if the resource references itself.
    """
    result = []

    def _add(target):
        if target in resource_ids and target not in result:
            result.append(target)

    for dependency in ensure_list(resource.get("DependsOn")) or []:
        _add(dependency)
    for section in DEPENDENCY_SECTIONS:
        body = resource.get(section)
        if not body:
            continue
        for reference in iter_references(body, section):
            if reference.function in ("Ref", "Fn::GetAtt", "Fn::Sub") and isinstance(reference.target, str):
                _add(reference.target)
    return result


def order_resources(resources: dict[str, dict]) -> OrderedDict[str, dict]:
    """
    Order the given resources so that every resource comes after all resources it depends on. Resources without
    mutual dependencies keep their declaration order.

    :param resources: the raw resource declarations, keyed by logical ID
    :return: the same declarations, in creation order
    :raises CircularDependencyError: if the resources depend on each other in a cycle
    """
    dependencies = {
        resource_id: get_resource_dependencies(resource_id, resource or {}, resources)
        for resource_id, resource in resources.items()
    }
    for resource_id, resource_dependencies in dependencies.items():
        if resource_id in resource_dependencies:
            raise CircularDependencyError([resource_id])

    ordered = OrderedDict()
    remaining = list(resources.keys())
    while remaining:
        for resource_id in remaining:
            if all(dep in ordered for dep in dependencies[resource_id]):
                ordered[resource_id] = resources[resource_id]
                remaining.remove(resource_id)
                break
        else:
            cycle = find_cycle({r: dependencies[r] for r in remaining})
            raise CircularDependencyError(cycle)

    LOG.debug("Resource creation order: %s", list(ordered.keys()))
    return ordered


def find_cycle(dependencies: dict[str, list[str]]) -> list[str]:
    """Return the resources of one dependency cycle among the given (unorderable) resources."""
    for start in dependencies:
        path = [start]
        current = start
        while True:
            candidates = [dep for dep in dependencies.get(current, []) if dep in dependencies]
            if not candidates:
                break
            current = candidates[0]
            if current in path:
                return path[path.index(current) :]
            path.append(current)
    return sorted(dependencies)
