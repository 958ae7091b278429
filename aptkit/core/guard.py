"""Essential package guard.

Refuses any plan that removes a package flagged essential or important,
or a hard dependency of such a package. Runs before anything destructive
and also in simulation mode.
"""

import logging
from typing import List

from .cache import DepCache, HARD_DEPENDS
from .errors import EssentialPackageRemoval

logger = logging.getLogger(__name__)


def essential_removals(cache: DepCache) -> List[str]:
    """List essential packages (and their dependencies) the plan removes.

    Returns:
        Entries like "dpkg" or "libc6 (due to dpkg)", deduplicated
    """
    added = set()
    found = []

    for package in cache.packages():
        pkg = cache.package(package)
        if not (pkg.essential or pkg.important):
            continue

        if cache.delete(package) and package not in added:
            added.add(package)
            found.append(pkg.name)

        if pkg.current is None:
            continue

        for dep in cache.version(pkg.current).depends:
            if dep.kind not in HARD_DEPENDS:
                continue
            target = cache.find_package(dep.target)
            if target is None or not cache.delete(target) or target in added:
                continue
            added.add(target)
            found.append(f"{cache.package(target).name} (due to {pkg.name})")

    return found


def check_essential_removals(cache: DepCache):
    """Raise EssentialPackageRemoval if the plan removes essential packages."""
    found = essential_removals(cache)
    if found:
        logger.error(f"Refusing to remove essential packages: {' '.join(found)}")
        raise EssentialPackageRemoval(found)
