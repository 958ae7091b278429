"""Problem resolver capability.

The plan builder marks what the user asked for, protects those marks and
then asks a problem resolver to repair whatever is left broken. The
resolver is an external collaborator: this module only defines the
bookkeeping every resolver shares, concrete solvers subclass it.
"""

import logging
from typing import Set

from .cache import DepCache

logger = logging.getLogger(__name__)


class ProblemResolver:
    """Base class for resolvers repairing a DepCache in place.

    Subclasses implement resolve(); protected packages must keep the
    mark the plan builder gave them, everything else may be changed.
    """

    def __init__(self, cache: DepCache):
        self.cache = cache
        self.protected: Set[int] = set()
        self.to_remove: Set[int] = set()

    def clear(self, package: int):
        """Forget any flag previously set on a package."""
        self.protected.discard(package)
        self.to_remove.discard(package)

    def reset(self):
        """Forget every flag, for a new transaction."""
        self.protected.clear()
        self.to_remove.clear()

    def protect(self, package: int):
        self.protected.add(package)

    def remove(self, package: int):
        self.to_remove.add(package)

    def install_protect(self):
        """Protect every package currently marked for installation."""
        for package in self.cache.packages():
            if self.cache.install_version(package) is not None and \
                    not self.cache.keep(package):
                self.protected.add(package)

    def resolve(self, broken_fix: bool = False) -> bool:
        """Repair the cache. Returns False if problems remain."""
        raise NotImplementedError
