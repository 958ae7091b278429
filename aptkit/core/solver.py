"""
Problem resolver using libsolv

Loads the DepCache tables into a libsolv pool, turns the marks of the
planned transaction into solver jobs and writes the solver's decision
back into the cache marks.
"""

import logging
from typing import Dict, List

import solv

from .cache import DepCache, DepType, Mode
from .resolution import ProblemResolver

logger = logging.getLogger(__name__)

# Map Debian relations to libsolv flags
OP_FLAGS = {
    '>=': solv.REL_GT | solv.REL_EQ,
    '<=': solv.REL_LT | solv.REL_EQ,
    '=': solv.REL_EQ,
    '>>': solv.REL_GT,
    '<<': solv.REL_LT,
}

DEP_KEYS = {
    DepType.DEPENDS: solv.SOLVABLE_REQUIRES,
    DepType.PRE_DEPENDS: solv.SOLVABLE_REQUIRES,
    DepType.RECOMMENDS: solv.SOLVABLE_RECOMMENDS,
    DepType.SUGGESTS: solv.SOLVABLE_SUGGESTS,
    DepType.CONFLICTS: solv.SOLVABLE_CONFLICTS,
    DepType.BREAKS: solv.SOLVABLE_CONFLICTS,
}


class LibsolvProblemResolver(ProblemResolver):
    """ProblemResolver backed by the libsolv SAT solver."""

    def __init__(self, cache: DepCache, install_recommends: bool = False):
        super().__init__(cache)
        self.install_recommends = install_recommends
        self.problems: List[str] = []
        self._solvable_to_version: Dict[int, int] = {}
        self._version_to_solvable: Dict[int, 'solv.XSolvable'] = {}

    def _create_pool(self) -> solv.Pool:
        """Create a libsolv Pool mirroring the cache tables."""
        pool = solv.Pool()
        pool.setdisttype(solv.Pool.DISTTYPE_DEB)
        pool.setarch(self.cache.native_arch)

        installed = pool.add_repo("@System")
        installed.appdata = {"type": "installed"}
        pool.installed = installed
        available = pool.add_repo("available")
        available.appdata = {"type": "available"}

        self._solvable_to_version = {}
        self._version_to_solvable = {}

        for package in self.cache.packages():
            pkg = self.cache.package(package)
            for index in pkg.versions:
                ver = self.cache.version(index)
                if index == pkg.current:
                    repo = installed
                elif ver.downloadable:
                    repo = available
                else:
                    continue

                s = repo.add_solvable()
                s.name = pkg.name
                s.evr = ver.version
                s.arch = ver.arch
                s.add_deparray(solv.SOLVABLE_PROVIDES,
                               pool.Dep(pkg.name).Rel(solv.REL_EQ, pool.Dep(ver.version)))
                for name in ver.provides:
                    s.add_deparray(solv.SOLVABLE_PROVIDES, pool.Dep(name))
                for dep in ver.depends:
                    s.add_deparray(DEP_KEYS[dep.kind], self._make_dep(pool, dep))

                self._solvable_to_version[s.id] = index
                self._version_to_solvable[index] = s

        pool.createwhatprovides()
        return pool

    def _make_dep(self, pool: solv.Pool, dep) -> 'solv.Dep':
        name = dep.target.split(':', 1)[0]
        flags = OP_FLAGS.get(dep.op) if dep.op else None
        if flags is None:
            return pool.Dep(name)
        return pool.Dep(name).Rel(flags, pool.Dep(dep.version))

    def _jobs(self, pool: solv.Pool) -> list:
        """Turn the cache marks into solver jobs."""
        jobs = []
        for package in self.cache.packages():
            mode = self.cache.mode(package)
            weak = 0 if package in self.protected else solv.Job.SOLVER_WEAK
            if mode == Mode.INSTALL:
                s = self._version_to_solvable.get(self.cache.install_version(package))
                if s is not None:
                    jobs.append(pool.Job(
                        solv.Job.SOLVER_SOLVABLE | solv.Job.SOLVER_INSTALL | weak, s.id))
            elif mode == Mode.DELETE or package in self.to_remove:
                s = self._version_to_solvable.get(self.cache.current(package))
                if s is not None:
                    jobs.append(pool.Job(
                        solv.Job.SOLVER_SOLVABLE | solv.Job.SOLVER_ERASE | weak, s.id))
            elif package in self.protected:
                s = self._version_to_solvable.get(self.cache.current(package))
                if s is not None:
                    jobs.append(pool.Job(solv.Job.SOLVER_SOLVABLE | solv.Job.SOLVER_LOCK, s.id))
        return jobs

    def resolve(self, broken_fix: bool = False) -> bool:
        """Solve and apply the result to the cache.

        Args:
            broken_fix: The cache was already broken before planning;
                        let the solver uninstall anything unprotected.

        Returns:
            True if the solver found a solution
        """
        pool = self._create_pool()
        jobs = self._jobs(pool)

        solver = pool.Solver()
        solver.set_flag(solv.Solver.SOLVER_FLAG_FOCUS_INSTALLED, 1)
        solver.set_flag(solv.Solver.SOLVER_FLAG_ALLOW_UNINSTALL, 1)
        if not self.install_recommends:
            solver.set_flag(solv.Solver.SOLVER_FLAG_IGNORE_RECOMMENDED, 1)

        problems = solver.solve(jobs)
        if problems:
            self.problems = [str(problem) for problem in problems]
            for problem in self.problems:
                logger.debug(f"libsolv problem: {problem}")
            return False
        self.problems = []

        trans = solver.transaction()
        final = set()
        if trans.isempty():
            # nothing changes: every installed package stays
            for package in self.cache.packages():
                current = self.cache.current(package)
                if current is not None and current in self._version_to_solvable:
                    final.add(current)
        else:
            for s in trans.newsolvables():
                final.add(self._solvable_to_version[s.id])
            for s in trans.keptsolvables():
                final.add(self._solvable_to_version[s.id])

        self._apply(final)
        return True

    def _apply(self, final: set):
        """Write the solver's final package set back into the marks."""
        desired: Dict[int, int] = {}
        for index in final:
            desired[self.cache.version(index).package] = index

        with self.cache.action_group():
            for package in self.cache.packages():
                target = desired.get(package)
                if target == self.cache.install_version(package):
                    continue
                name = self.cache.package(package).name
                if target is None:
                    if self.cache.current(package) is not None:
                        logger.debug(f"Resolver removes {name}")
                        self.cache.mark_delete(package)
                elif target == self.cache.current(package):
                    logger.debug(f"Resolver keeps {name}")
                    self.cache.mark_keep(package)
                else:
                    logger.debug(f"Resolver installs {name} "
                                 f"{self.cache.version(target).version}")
                    self.cache.set_candidate(package, target)
                    self.cache.mark_install(package, auto_inst=False, from_user=False)
