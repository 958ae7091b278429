"""
Arena-indexed dependency cache

Packages and versions live in two flat tables and refer to each other by
integer index. A lookup that finds nothing returns None, which plays the
role of the "end" iterator of a native package cache.

On top of the tables the cache keeps the per-package marks of the
transaction being planned (keep / install / delete) and answers the
questions the plan builder and the problem resolver ask: what is the
candidate, what is broken, what became garbage.
"""

import logging
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional

from .config import get_native_arch
from .packages import PackageRef

logger = logging.getLogger(__name__)

# Depth limit for recursive auto-installation
MAX_AUTO_INSTALL_DEPTH = 100


# =============================================================================
# Version ordering (dpkg algorithm)
# =============================================================================

def _order(c: str) -> int:
    if c == '~':
        return -1
    if c.isdigit():
        return 0
    if c.isalpha():
        return ord(c)
    return ord(c) + 256


def _compare_fragment(a: str, b: str) -> int:
    i = j = 0
    while i < len(a) or j < len(b):
        first_diff = 0
        while (i < len(a) and not a[i].isdigit()) or (j < len(b) and not b[j].isdigit()):
            ac = _order(a[i]) if i < len(a) else 0
            bc = _order(b[j]) if j < len(b) else 0
            if ac != bc:
                return ac - bc
            i += 1
            j += 1
        while i < len(a) and a[i] == '0':
            i += 1
        while j < len(b) and b[j] == '0':
            j += 1
        while i < len(a) and a[i].isdigit() and j < len(b) and b[j].isdigit():
            if not first_diff:
                first_diff = ord(a[i]) - ord(b[j])
            i += 1
            j += 1
        if i < len(a) and a[i].isdigit():
            return 1
        if j < len(b) and b[j].isdigit():
            return -1
        if first_diff:
            return first_diff
    return 0


def _split_version(version: str):
    epoch = 0
    if ':' in version:
        raw_epoch, version = version.split(':', 1)
        epoch = int(raw_epoch) if raw_epoch.isdigit() else 0
    upstream, revision = version, ''
    if '-' in version:
        upstream, revision = version.rsplit('-', 1)
    return epoch, upstream, revision


def version_compare(a: str, b: str) -> int:
    """Compare two Debian version strings.

    Returns:
        Negative if a < b, zero if equal, positive if a > b
    """
    a_epoch, a_upstream, a_revision = _split_version(a)
    b_epoch, b_upstream, b_revision = _split_version(b)
    if a_epoch != b_epoch:
        return a_epoch - b_epoch
    result = _compare_fragment(a_upstream, b_upstream)
    if result:
        return result
    return _compare_fragment(a_revision, b_revision)


def version_matches(version: str, op: Optional[str], required: Optional[str]) -> bool:
    """Check a version against a relation such as ('>=', '1.2')."""
    if not op or required is None:
        return True
    result = version_compare(version, required)
    if op == '<<':
        return result < 0
    if op == '<=':
        return result <= 0
    if op == '=':
        return result == 0
    if op == '>=':
        return result >= 0
    if op == '>>':
        return result > 0
    raise ValueError(f"Unknown version relation: {op}")


# =============================================================================
# Records
# =============================================================================

class DepType(Enum):
    """Kind of a dependency relation."""
    DEPENDS = "Depends"
    PRE_DEPENDS = "Pre-Depends"
    RECOMMENDS = "Recommends"
    SUGGESTS = "Suggests"
    CONFLICTS = "Conflicts"
    BREAKS = "Breaks"


HARD_DEPENDS = (DepType.DEPENDS, DepType.PRE_DEPENDS)
NEGATIVE_DEPENDS = (DepType.CONFLICTS, DepType.BREAKS)


@dataclass
class Dependency:
    """One dependency relation of a version."""
    target: str
    kind: DepType = DepType.DEPENDS
    op: Optional[str] = None
    version: Optional[str] = None

    def __str__(self):
        if self.op:
            return f"{self.kind.value}: {self.target} ({self.op} {self.version})"
        return f"{self.kind.value}: {self.target}"


@dataclass
class Version:
    """Version record. package is the index of the owning Package."""
    index: int
    package: int
    version: str
    arch: str
    archive: str = ""
    summary: str = ""
    depends: List[Dependency] = field(default_factory=list)
    provides: List[str] = field(default_factory=list)
    downloadable: bool = True
    size: int = 0


@dataclass
class Package:
    """Package record. versions holds version indices, newest first."""
    index: int
    name: str
    arch: str
    versions: List[int] = field(default_factory=list)
    current: Optional[int] = None
    essential: bool = False
    important: bool = False
    auto: bool = False
    config_files_only: bool = False


class Mode(Enum):
    """Mark of a package in the transaction being planned."""
    KEEP = "keep"
    INSTALL = "install"
    DELETE = "delete"


@dataclass
class _State:
    mode: Mode = Mode.KEEP
    install: Optional[int] = None
    purge: bool = False
    reinstall: bool = False
    garbage: bool = False
    candidate: Optional[int] = None  # pinned candidate


class DepCache:
    """Package/version tables plus the marks of one planned transaction."""

    def __init__(self, native_arch: str = None):
        self.native_arch = native_arch or get_native_arch()
        self._packages: List[Package] = []
        self._versions: List[Version] = []
        self._states: List[_State] = []
        self._by_key: Dict[tuple, int] = {}
        self._by_name: Dict[str, List[int]] = {}
        self._provides: Optional[Dict[str, List[int]]] = None
        self._group_depth = 0

    # =========================================================================
    # Building
    # =========================================================================

    def add_package(self, name: str, arch: str = None, essential: bool = False,
                    important: bool = False, auto: bool = False) -> int:
        """Add a package record (or return the existing one).

        Returns:
            Package index
        """
        arch = arch or self.native_arch
        existing = self._by_key.get((name, arch))
        if existing is not None:
            return existing

        index = len(self._packages)
        self._packages.append(Package(
            index=index, name=name, arch=arch,
            essential=essential, important=important, auto=auto,
        ))
        self._states.append(_State())
        self._by_key[(name, arch)] = index
        self._by_name.setdefault(name, []).append(index)
        return index

    def add_version(self, package: int, version: str, archive: str = "",
                    summary: str = "", depends: List[Dependency] = None,
                    provides: List[str] = None, downloadable: bool = True,
                    installed: bool = False, size: int = 0,
                    arch: str = None) -> int:
        """Add a version to a package.

        Args:
            package: Owning package index
            version: Debian version string
            archive: Origin/archive label (e.g. "stable")
            installed: This is the currently installed version

        Returns:
            Version index
        """
        pkg = self._packages[package]
        index = len(self._versions)
        self._versions.append(Version(
            index=index,
            package=package,
            version=version,
            arch=arch or pkg.arch,
            archive=archive,
            summary=summary,
            depends=list(depends or []),
            provides=list(provides or []),
            downloadable=downloadable,
            size=size,
        ))
        pkg.versions.append(index)
        pkg.versions.sort(
            key=lambda v: VersionKey(self._versions[v].version), reverse=True)
        if installed:
            pkg.current = index
        self._provides = None
        return index

    # =========================================================================
    # Lookups
    # =========================================================================

    def __len__(self):
        return len(self._packages)

    def packages(self) -> Iterator[int]:
        return iter(range(len(self._packages)))

    def package(self, index: int) -> Package:
        return self._packages[index]

    def version(self, index: int) -> Version:
        return self._versions[index]

    def package_of(self, version: int) -> Package:
        return self._packages[self._versions[version].package]

    def ref(self, version: int) -> PackageRef:
        """Immutable identifier of a version."""
        ver = self._versions[version]
        return PackageRef(name=self._packages[ver.package].name,
                          version=ver.version, arch=ver.arch, data=ver.archive)

    @property
    def is_multiarch(self) -> bool:
        arches = {p.arch for p in self._packages if p.arch != 'all'}
        return len(arches) > 1

    def find_package(self, name: str, arch: str = None) -> Optional[int]:
        """Find a package by name, "name:arch" or (name, arch).

        Without an architecture the native one wins, then "all", then
        whatever comes first.
        """
        if arch is None and ':' in name:
            name, arch = name.split(':', 1)
            if arch == 'any':
                arch = None
        if arch is not None:
            return self._by_key.get((name, arch))

        candidates = self._by_name.get(name, [])
        if not candidates:
            return None
        for preferred in (self.native_arch, 'all'):
            for index in candidates:
                if self._packages[index].arch == preferred:
                    return index
        return candidates[0]

    def find_packages(self, name: str) -> List[int]:
        """All packages with this name, on every architecture."""
        return list(self._by_name.get(name, []))

    def current(self, package: int) -> Optional[int]:
        return self._packages[package].current

    def candidate(self, package: int) -> Optional[int]:
        """Candidate version: pinned one, else newest downloadable one.

        The installed version wins when nothing newer can be downloaded.
        """
        state = self._states[package]
        if state.candidate is not None:
            return state.candidate

        pkg = self._packages[package]
        best = None
        for index in pkg.versions:
            if self._versions[index].downloadable:
                best = index
                break
        if pkg.current is None:
            return best
        if best is None or version_compare(
                self._versions[pkg.current].version,
                self._versions[best].version) >= 0:
            return pkg.current
        return best

    def set_candidate(self, package: int, version: int):
        """Pin the candidate version of a package."""
        if self._versions[version].package != package:
            raise ValueError("version does not belong to package")
        self._states[package].candidate = version

    def is_virtual(self, package: int) -> bool:
        return not self._packages[package].versions

    def _provides_index(self) -> Dict[str, List[int]]:
        if self._provides is None:
            index: Dict[str, List[int]] = {}
            for ver in self._versions:
                index.setdefault(self._packages[ver.package].name, []).append(ver.index)
                for name in ver.provides:
                    index.setdefault(name, []).append(ver.index)
            self._provides = index
        return self._provides

    def providers(self, name: str) -> List[int]:
        """Version indices providing a name (own name or Provides)."""
        if ':' in name:
            name = name.split(':', 1)[0]
        return list(self._provides_index().get(name, []))

    def virtual_providers(self, name: str) -> List[int]:
        """Packages providing name through Provides only."""
        owners = []
        for index in self.providers(name):
            owner = self._versions[index].package
            if self._packages[owner].name != name and owner not in owners:
                owners.append(owner)
        return owners

    # =========================================================================
    # Transaction state queries
    # =========================================================================

    def mode(self, package: int) -> Mode:
        return self._states[package].mode

    def install_version(self, package: int) -> Optional[int]:
        """Version the package will have once the transaction is applied."""
        state = self._states[package]
        if state.mode == Mode.INSTALL:
            return state.install
        if state.mode == Mode.DELETE:
            return None
        return self._packages[package].current

    def new_install(self, package: int) -> bool:
        return (self._states[package].mode == Mode.INSTALL
                and self._packages[package].current is None)

    def _install_compare(self, package: int) -> int:
        state = self._states[package]
        current = self._packages[package].current
        if state.mode != Mode.INSTALL or current is None:
            return 0
        return version_compare(self._versions[state.install].version,
                               self._versions[current].version)

    def upgrade(self, package: int) -> bool:
        return self._install_compare(package) > 0

    def downgrade(self, package: int) -> bool:
        return self._install_compare(package) < 0

    def delete(self, package: int) -> bool:
        return self._states[package].mode == Mode.DELETE

    def keep(self, package: int) -> bool:
        return self._states[package].mode == Mode.KEEP

    def purge(self, package: int) -> bool:
        return self._states[package].purge

    def reinstall(self, package: int) -> bool:
        return self._states[package].reinstall

    def garbage(self, package: int) -> bool:
        return self._states[package].garbage

    def _dep_satisfied(self, dep: Dependency, exclude: int = None) -> bool:
        for index in self.providers(dep.target):
            ver = self._versions[index]
            if ver.package == exclude:
                continue
            if self.install_version(ver.package) != index:
                continue
            owner = self._packages[ver.package]
            if owner.name == dep.target.split(':', 1)[0]:
                if version_matches(ver.version, dep.op, dep.version):
                    return True
            elif not dep.op:
                # unversioned provides only satisfy unversioned relations
                return True
        return False

    def unsatisfied(self, package: int, kinds=HARD_DEPENDS) -> List[Dependency]:
        """Dependencies of the install version that are not met."""
        index = self.install_version(package)
        if index is None:
            return []
        problems = []
        for dep in self._versions[index].depends:
            if dep.kind not in kinds:
                continue
            if dep.kind in NEGATIVE_DEPENDS:
                if self._dep_satisfied(dep, exclude=package):
                    problems.append(dep)
            elif not self._dep_satisfied(dep):
                problems.append(dep)
        return problems

    def inst_broken(self, package: int) -> bool:
        return bool(self.unsatisfied(package, HARD_DEPENDS + NEGATIVE_DEPENDS))

    def inst_policy_broken(self, package: int) -> bool:
        return bool(self.unsatisfied(package, (DepType.RECOMMENDS,)))

    def broken_packages(self) -> List[int]:
        return [p for p in self.packages() if self.inst_broken(p)]

    def broken_count(self) -> int:
        return len(self.broken_packages())

    def inst_count(self) -> int:
        return sum(1 for p in self.packages()
                   if self._states[p].mode == Mode.INSTALL)

    def del_count(self) -> int:
        return sum(1 for p in self.packages() if self.delete(p))

    def deb_size(self) -> int:
        """Bytes of archives needed for the planned installs."""
        total = 0
        for p in self.packages():
            state = self._states[p]
            if state.mode == Mode.INSTALL and state.install is not None:
                total += self._versions[state.install].size
        return total

    # =========================================================================
    # Marking
    # =========================================================================

    def mark_install(self, package: int, auto_inst: bool = True,
                     from_user: bool = True, depth: int = 0) -> bool:
        """Mark the candidate of a package for installation.

        Args:
            package: Package index
            auto_inst: Also install unmet Depends/Pre-Depends
            from_user: False when pulled in as a dependency (marked auto)

        Returns:
            False if there is no candidate to install
        """
        candidate = self.candidate(package)
        if candidate is None:
            return False

        pkg = self._packages[package]
        state = self._states[package]
        if candidate == pkg.current and not state.reinstall:
            state.mode = Mode.KEEP
            state.install = None
        else:
            state.mode = Mode.INSTALL
            state.install = candidate
            if pkg.current is None:
                pkg.auto = not from_user

        if auto_inst and depth < MAX_AUTO_INSTALL_DEPTH:
            for dep in self.unsatisfied(package, HARD_DEPENDS):
                target = self._pick_target(dep)
                if target is None:
                    logger.debug(f"No installable target for {pkg.name} {dep}")
                    continue
                self.mark_install(target, auto_inst=True, from_user=False,
                                  depth=depth + 1)

        self._changed()
        return True

    def _pick_target(self, dep: Dependency) -> Optional[int]:
        """Package to install for an unmet dependency, or None."""
        real = self.find_package(dep.target)
        if real is not None and not self.is_virtual(real):
            candidate = self.candidate(real)
            if candidate is not None and version_matches(
                    self._versions[candidate].version, dep.op, dep.version):
                return real
            return None
        providers = self.virtual_providers(dep.target)
        if len(providers) == 1 and self.candidate(providers[0]) is not None:
            return providers[0]
        return None

    def mark_delete(self, package: int, purge: bool = False):
        state = self._states[package]
        pkg = self._packages[package]
        if pkg.current is None and not pkg.config_files_only:
            state.mode = Mode.KEEP
            state.install = None
        else:
            state.mode = Mode.DELETE
            state.install = None
            state.purge = purge
        state.reinstall = False
        self._changed()

    def mark_keep(self, package: int):
        state = self._states[package]
        state.mode = Mode.KEEP
        state.install = None
        state.purge = False
        state.reinstall = False
        self._changed()

    def clear_marks(self):
        """Drop every mark and pinned candidate, back to keep-all."""
        self._states = [_State() for _ in self._packages]
        self._changed()

    def mark_auto(self, package: int, flag: bool):
        self._packages[package].auto = flag
        self._changed()

    def set_reinstall(self, package: int, flag: bool):
        pkg = self._packages[package]
        state = self._states[package]
        state.reinstall = flag
        if flag and pkg.current is not None:
            state.mode = Mode.INSTALL
            state.install = pkg.current
        elif not flag and state.mode == Mode.INSTALL and state.install == pkg.current:
            state.mode = Mode.KEEP
            state.install = None
        self._changed()

    # =========================================================================
    # Action groups and garbage
    # =========================================================================

    @contextmanager
    def action_group(self):
        """Defer garbage computation until the outermost group closes."""
        self._group_depth += 1
        try:
            yield self
        finally:
            self._group_depth -= 1
            if self._group_depth == 0:
                self._mark_and_sweep()

    def _changed(self):
        if self._group_depth == 0:
            self._mark_and_sweep()

    def _mark_and_sweep(self):
        """Recompute garbage: auto packages no manual package needs."""
        reachable = set()
        queue = deque()
        for p in self.packages():
            pkg = self._packages[p]
            if self.install_version(p) is None:
                continue
            if not pkg.auto or pkg.essential:
                reachable.add(p)
                queue.append(p)

        while queue:
            p = queue.popleft()
            index = self.install_version(p)
            if index is None:
                continue
            for dep in self._versions[index].depends:
                if dep.kind not in HARD_DEPENDS + (DepType.RECOMMENDS,):
                    continue
                for provider in self.providers(dep.target):
                    owner = self._versions[provider].package
                    if owner in reachable or self.install_version(owner) != provider:
                        continue
                    reachable.add(owner)
                    queue.append(owner)

        for p in self.packages():
            self._states[p].garbage = (
                self.install_version(p) is not None and p not in reachable
            )


class VersionKey:
    """Sort key wrapper for Debian version strings."""

    __slots__ = ('version',)

    def __init__(self, version: str):
        self.version = version

    def __lt__(self, other):
        return version_compare(self.version, other.version) < 0

    def __eq__(self, other):
        return version_compare(self.version, other.version) == 0
