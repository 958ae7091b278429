"""
Plan building

Turns requested package versions into marks on the DepCache, protects
those marks and lets the problem resolver repair the rest. All proposals
of one batch are applied inside a single action group so that garbage
collection only runs once the whole batch is in.
"""

import logging
from typing import Callable, Dict, List, Optional, Tuple

from .cache import DepCache
from .config import EngineConfig
from .errors import ResolutionError, UnresolvableDependencies
from .packages import Action, Filter, PackageRef, split_package_id
from .resolution import ProblemResolver

logger = logging.getLogger(__name__)


class PlanBuilder:
    """Builds a consistent install/remove plan on a DepCache.

    Usage:
        builder = PlanBuilder(cache, resolver, config)
        builder.build(install_versions, remove_versions)
        installing = builder.changed_packages()[2]
    """

    def __init__(self, cache: DepCache, resolver: ProblemResolver,
                 config: EngineConfig = None,
                 is_cancelled: Callable[[], bool] = None):
        self.cache = cache
        self.resolver = resolver
        self.config = config or EngineConfig()
        self.is_cancelled = is_cancelled or (lambda: False)
        self.expected_installs = 0
        self.broken_fix = False

    # =========================================================================
    # Package id resolution
    # =========================================================================

    def _name_matches(self, package: int) -> List[int]:
        """Current and candidate version of a package, if it is real."""
        pkg = self.cache.package(package)
        # Ignore packages that exist only due to dependencies
        if not pkg.versions and not self.cache.virtual_providers(pkg.name):
            return []
        found = []
        version = self.find_version(package)
        if version is not None:
            found.append(version)
        candidate = self.cache.candidate(package)
        if candidate is not None and candidate not in found:
            found.append(candidate)
        return found

    def resolve_package_ids(self, package_ids: List[str],
                            filters: Filter = Filter.NONE) -> List[int]:
        """Resolve package ids or bare names to version indices.

        Args:
            package_ids: "name;version;arch;data" ids, "name" or "name:arch"
            filters: Filter flags applied to the result

        Returns:
            List of version indices
        """
        result = []
        for pi in package_ids or []:
            if self.is_cancelled():
                break

            sections = split_package_id(pi)
            if sections is None:
                if self.cache.is_multiarch and ':' not in pi:
                    packages = self.cache.find_packages(pi)
                else:
                    found = self.cache.find_package(pi)
                    packages = [found] if found is not None else []
                for package in packages:
                    result.extend(self._name_matches(package))
                continue

            name, version, arch, _data = sections
            package = self.cache.find_package(name, arch or None)
            if package is None:
                logger.debug(f"Package id not found: {pi}")
                continue
            current = self.cache.current(package)
            candidate = self.cache.candidate(package)
            for index in (current, candidate):
                if index is not None and self.cache.version(index).version == version:
                    result.append(index)
                    break
            else:
                logger.debug(f"No version {version} for {name}")

        return self.filter_versions(result, filters)

    def filter_versions(self, versions: List[int], filters: Filter) -> List[int]:
        if not filters:
            return list(versions)
        return [v for v in versions if self.matches(v, filters)]

    def matches(self, version: int, filters: Filter) -> bool:
        """Check a version against Filter flags."""
        ver = self.cache.version(version)
        installed = self.cache.package_of(version).current == version
        if Filter.INSTALLED in filters and not installed:
            return False
        if Filter.NOT_INSTALLED in filters and installed:
            return False
        native = ver.arch in (self.cache.native_arch, 'all')
        if Filter.ARCH in filters and not native:
            return False
        if Filter.NOT_ARCH in filters and native:
            return False
        return True

    # =========================================================================
    # Proposals
    # =========================================================================

    def propose_action(self, package: int, action: Action) -> bool:
        """Mark one package for installation or removal.

        A pure virtual package with a single provider is replaced by that
        provider. Must be called inside an action group, see build().

        Args:
            package: Package index
            action: Action.INSTALL or Action.REMOVE

        Returns:
            True on success

        Raises:
            ResolutionError: Install requested but there is no candidate
        """
        cache = self.cache
        fix = self.resolver
        remove = action == Action.REMOVE

        pkg = cache.package(package)
        if cache.candidate(package) is None and cache.is_virtual(package):
            providers = cache.virtual_providers(pkg.name)
            if len(providers) == 1:
                package = providers[0]
                pkg = cache.package(package)

        # Nothing installed, nothing to remove
        if remove and pkg.current is None:
            fix.clear(package)
            fix.protect(package)
            fix.remove(package)
            return True

        if not remove and cache.candidate(package) is None:
            raise ResolutionError(pkg.name)

        fix.clear(package)
        fix.protect(package)
        if remove:
            fix.remove(package)
            cache.mark_delete(package, self.config.purge)
            return True

        cache.mark_install(package, auto_inst=False)
        if cache.keep(package):
            if self.config.reinstall:
                current = pkg.current
                if current is None or not cache.version(current).downloadable:
                    logger.info(f"Reinstallation of {pkg.name} is not possible, "
                                "it cannot be downloaded")
                else:
                    cache.set_reinstall(package, True)
            else:
                logger.debug(f"{pkg.name} is already the newest version")
        else:
            self.expected_installs += 1

        # Pull in dependencies unless we are repairing an already broken system
        if (cache.inst_broken(package) or cache.inst_policy_broken(package)) \
                and not self.broken_fix:
            cache.mark_install(package, auto_inst=True)

        return True

    def mark_auto_installed(self, versions: List[int], flag: bool):
        for index in versions:
            if self.is_cancelled():
                break
            self.cache.mark_auto(self.cache.version(index).package, flag)

    def build(self, install: List[int], remove: List[int],
              mark_auto: bool = False, simulate: bool = False):
        """Propose every action of one batch, then repair once.

        Args:
            install: Version indices to install
            remove: Version indices to remove
            mark_auto: Flag the installed packages as automatically installed
            simulate: Simulation, auto flags are left alone

        Raises:
            ResolutionError: A requested package has no candidate
            UnresolvableDependencies: The resolver left broken packages
        """
        cache = self.cache
        # Enter the special broken fixing mode if the system is already broken
        self.broken_fix = cache.broken_count() != 0
        self.expected_installs = 0

        with cache.action_group():
            for index in install:
                if self.is_cancelled():
                    break
                self.propose_action(cache.version(index).package, Action.INSTALL)

            if not simulate:
                self.mark_auto_installed(install, mark_auto)

            for index in remove:
                if self.is_cancelled():
                    break
                self.propose_action(cache.version(index).package, Action.REMOVE)

            self.resolver.install_protect()
            if not self.resolver.resolve(True):
                # advisory only, the broken count below is what matters
                logger.debug("Problem resolver reported errors, checking broken count")

            broken = cache.broken_packages()
            if broken:
                names = [cache.package(p).name for p in broken]
                for p in broken:
                    for dep in cache.unsatisfied(p):
                        logger.info(f"{cache.package(p).name} is broken: {dep}")
                raise UnresolvableDependencies(names)

        logger.debug(f"Plan built: {cache.inst_count()} to install, "
                     f"{cache.del_count()} to remove, "
                     f"{self.expected_installs} expected installs")

    # =========================================================================
    # Post-resolution passes
    # =========================================================================

    def automatic_remove(self):
        """Remove automatically installed packages nothing needs anymore.

        Raises:
            UnresolvableDependencies: The removal broke something
        """
        do_autoremove = self.config.autoremove
        if do_autoremove and not self.config.allow_remove:
            logger.info("We are not supposed to delete stuff, can't start AutoRemover")
            do_autoremove = False
        if not do_autoremove:
            return

        cache = self.cache
        with cache.action_group():
            for package in cache.packages():
                if not cache.garbage(package):
                    continue
                pkg = cache.package(package)
                if pkg.current is not None and not pkg.config_files_only:
                    logger.debug(f"Auto-removing {pkg.name}")
                    cache.mark_delete(package, self.config.purge)
                else:
                    cache.mark_keep(package)

        broken = cache.broken_packages()
        if broken:
            raise UnresolvableDependencies(
                [cache.package(p).name for p in broken],
                reason="Internal Error, AutoRemover broke stuff")

    def apply_purge(self):
        """With purge configured, purge everything that gets removed."""
        if not self.config.purge:
            return
        with self.cache.action_group():
            for package in self.cache.packages():
                if self.cache.delete(package) and not self.cache.purge(package):
                    self.cache.mark_delete(package, True)

    def plan(self) -> Dict[PackageRef, Action]:
        """Current plan, keyed by the version each action applies to."""
        result = {}
        cache = self.cache
        for package in cache.packages():
            if cache.new_install(package):
                result[cache.ref(cache.install_version(package))] = Action.INSTALL
            elif cache.delete(package):
                result[cache.ref(cache.current(package))] = Action.REMOVE
            elif cache.upgrade(package):
                result[cache.ref(cache.install_version(package))] = Action.UPGRADE
            elif cache.downgrade(package):
                result[cache.ref(cache.install_version(package))] = Action.DOWNGRADE
        return result

    def changed_packages(self) -> Tuple[List[int], List[int], List[int], List[int]]:
        """Versions that change, as (removing, downgrading, installing, updating)."""
        removing, downgrading, installing, updating = [], [], [], []
        cache = self.cache
        for package in cache.packages():
            if cache.new_install(package):
                installing.append(cache.install_version(package))
            elif cache.delete(package):
                removing.append(self.find_version(package))
            elif cache.upgrade(package):
                updating.append(cache.install_version(package))
            elif cache.downgrade(package):
                downgrading.append(cache.install_version(package))
        return removing, downgrading, installing, updating

    def find_version(self, package: int) -> Optional[int]:
        """Installed version, else candidate, else newest known version."""
        current = self.cache.current(package)
        if current is not None:
            return current
        candidate = self.cache.candidate(package)
        if candidate is not None:
            return candidate
        versions = self.cache.package(package).versions
        return versions[0] if versions else None
