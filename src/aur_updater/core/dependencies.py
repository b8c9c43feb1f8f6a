"""
Dependency aggregation.

Collects the run-time and build-time dependencies of the selected packages
into a reverse map (dependency -> requiring packages) and partitions it into
what is already installed, what the primary repositories provide and what
has to come from the AUR. Recursing into AUR-only dependencies is left to
the caller.
"""

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field

from aur_updater.core.errors import DependencyUnresolvable
from aur_updater.models.package import FIELD_KEYS, DependencyEdge, MetadataRecord, strip_constraint

logger = logging.getLogger(__name__)

# optdepends and checkdepends do not gate installation
GATING_KEYS = (FIELD_KEYS["dependencies"], FIELD_KEYS["build_dependencies"])

Probe = Callable[[str], bool]


def declared_dependencies(record: MetadataRecord, arch: str) -> set[str]:
    """Gating dependency names of ``record`` and its variants built on ``arch``, constraints stripped."""
    declared: set[str] = set()
    for key in GATING_KEYS:
        declared.update(record.merged(key, arch))
        for variant in record.variants:
            if record.builds_on(variant, arch):
                declared.update(record.variant_values(variant, key, arch))
    return {name for name in map(strip_constraint, declared) if name}


def collect_dependencies(records: Iterable[MetadataRecord], arch: str) -> dict[str, set[str]]:
    """
    Build the reverse dependency map for the selected packages.

    Version constraints are stripped, and names produced by the selected
    packages themselves are left out.

    Args:
        records: Parsed definitions of the selected packages.
        arch: Architecture whose suffixed lists are merged in.

    Returns:
        Mapping of dependency name to the set of requiring package bases.
    """
    records = list(records)
    produced = {r.base_name for r in records} | {name for r in records for name in r.variant_names}

    reverse: dict[str, set[str]] = {}
    for record in records:
        for name in declared_dependencies(record, arch):
            if name not in produced:
                reverse.setdefault(name, set()).add(record.base_name)

    logger.debug(f"Collected {len(reverse)} dependencies from {len(records)} package(s)")
    return reverse


def internal_dependencies(records: Mapping[str, MetadataRecord], arch: str) -> dict[str, set[str]]:
    """
    For each selected package, the other selected packages it needs.

    These are the dependencies collect_dependencies leaves out: they have to
    be built, and installed, within the same batch.

    Args:
        records: Parsed definitions keyed by the name they were selected as.
        arch: Architecture whose suffixed lists are merged in.
    """
    producers: dict[str, str] = {}
    for key, record in records.items():
        for name in (record.base_name, *record.variant_names):
            producers.setdefault(name, key)

    return {
        key: {producers[name] for name in declared_dependencies(record, arch) if name in producers} - {key}
        for key, record in records.items()
    }


def build_order(needs: Mapping[str, set[str]]) -> list[str]:
    """
    Order packages so that each one comes after the packages it needs.

    Packages whose needs are equally met keep their given order. A cycle is
    broken at its first member in the given order.

    Args:
        needs: Output of internal_dependencies.
    """
    order: list[str] = []
    placed: set[str] = set()
    remaining = list(needs)
    while remaining:
        ready = [name for name in remaining if needs[name] <= placed]
        if not ready:
            logger.warning(f"Dependency cycle between {', '.join(remaining)}")
            ready = remaining[:1]
        order += ready
        placed.update(ready)
        remaining = [name for name in remaining if name not in placed]
    return order


@dataclass
class DependencyPlan:
    """Partition of a reverse dependency map."""

    satisfied: set[str] = field(default_factory=set)
    repository: set[str] = field(default_factory=set)
    upstream: set[str] = field(default_factory=set)
    required_by: dict[str, frozenset[str]] = field(default_factory=dict)

    def edges(self, names: Iterable[str] | None = None) -> list[DependencyEdge]:
        """DependencyEdges for ``names`` (default: every dependency), sorted by name."""
        selected = self.required_by if names is None else names
        return [DependencyEdge(name, self.required_by.get(name, frozenset())) for name in sorted(selected)]

    def unresolvable(self, found_upstream: Iterable[str]) -> list[DependencyUnresolvable]:
        """Upstream-only dependencies the upstream source does not know either."""
        found = set(found_upstream)
        return [
            DependencyUnresolvable(name, self.required_by.get(name, frozenset()))
            for name in sorted(self.upstream - found)
        ]

    @property
    def actionable(self) -> bool:
        """True when something has to be installed or built."""
        return bool(self.repository or self.upstream)


def partition_dependencies(reverse: dict[str, set[str]], is_installed: Probe, in_repository: Probe) -> DependencyPlan:
    """
    Split dependencies into satisfied, repository-installable and upstream-only.

    Args:
        reverse: Output of collect_dependencies.
        is_installed: True when the dependency is already satisfied locally.
        in_repository: True when the primary repository provides it.
    """
    plan = DependencyPlan(required_by={name: frozenset(req) for name, req in reverse.items()})
    for name in sorted(reverse):
        if is_installed(name):
            plan.satisfied.add(name)
        elif in_repository(name):
            plan.repository.add(name)
        else:
            plan.upstream.add(name)

    logger.info(
        f"Dependencies: {len(plan.satisfied)} satisfied, "
        f"{len(plan.repository)} from repositories, {len(plan.upstream)} from AUR"
    )
    return plan
