"""
Transaction engine

Orchestrates one package transaction:

    lock → plan → automatic removal → purge → essential guard
         → fetch checks (space, trust) → [simulation summary]
         → download → installer supervision

Every AptkitError raised along the way is reported to the transport as a
single error event before it propagates, and the transport always
receives finished().
"""

import logging
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .cache import DepCache
from .conffile import ConfFileResolver, HelperConfFileResolver, frontend_env
from .config import EngineConfig, INSTALLER_PATH, get_config
from .errors import (
    AptkitError, FetchFailed, IncompatibleArchitecture, InstallerFailed,
    RemovalDisabled, TransactionError, UnresolvableDependencies,
)
from .events import EventEmitter, PERCENTAGE_INVALID, Status, Transport
from .fetch import Fetcher, FetchResult, check_free_space
from .guard import check_essential_removals
from .lock import InstallLock
from .packages import Action, PackageRef, PackageState
from .plan import PlanBuilder
from .resolution import ProblemResolver
from .supervisor import (
    InstallerOutcome, InstallerSession, InstallerSupervisor, TransactionState,
    installer_arguments,
)
from .trust import check_trusted

logger = logging.getLogger(__name__)

DPKG = "/usr/bin/dpkg"
DPKG_DEB = "dpkg-deb"
DEB_FIELDS = ("Package", "Version", "Architecture", "Description")


@dataclass
class TransactionResult:
    """Result of a transaction.

    Failures are raised as AptkitError, a result is only returned for
    runs that completed, were simulated, had nothing to do or were
    cancelled.
    """
    success: bool
    outcome: Optional[InstallerOutcome] = None  # None if the installer never ran
    simulated: bool = False
    cancelled: bool = False
    nothing_to_do: bool = False
    plan: Dict[PackageRef, Action] = field(default_factory=dict)


def read_deb_fields(path: Path) -> Dict[str, str]:
    """Control fields of a local .deb file.

    Raises:
        TransactionError: The file is not a valid package
    """
    try:
        result = subprocess.run(
            [DPKG_DEB, "--field", str(path), *DEB_FIELDS],
            capture_output=True,
            text=True,
        )
    except OSError as e:
        raise TransactionError(f"Cannot run {DPKG_DEB}: {e}")
    if result.returncode != 0:
        logger.debug(f"{DPKG_DEB} failed on {path}: {result.stderr}")
        raise TransactionError("DEB package is invalid!")

    values = {}
    for line in result.stdout.splitlines():
        if not line or line[0].isspace():
            # continuation of the long description
            continue
        key, _, value = line.partition(':')
        values[key.strip()] = value.strip()

    if not values.get("Package") or not values.get("Version"):
        raise TransactionError("DEB package is invalid!")
    return values


class TransactionEngine:
    """Runs install/remove transactions on a DepCache.

    Usage:
        engine = TransactionEngine(cache, make_fetcher, transport)
        result = engine.install_packages(["vim;2:9.0-1;amd64;main"])

    fetcher_factory is called with the cache once the plan is final and
    must return a Fetcher for the planned archives.
    """

    def __init__(self, cache: DepCache,
                 fetcher_factory: Callable[[DepCache], Fetcher],
                 transport: Transport,
                 config: EngineConfig = None,
                 resolver: ProblemResolver = None,
                 conffile_resolver: ConfFileResolver = None):
        self.cache = cache
        self.fetcher_factory = fetcher_factory
        self.transport = transport
        self.config = config or get_config()
        self._resolver = resolver
        self.conffile_resolver = conffile_resolver or HelperConfFileResolver(
            self.config.conffile_helper, self.config.frontend_socket)
        self.state = TransactionState()
        self.emitter = EventEmitter(cache, transport, self.state.is_cancelled)
        self.lock_factory = InstallLock
        self.session_factory = InstallerSession

    @property
    def resolver(self) -> ProblemResolver:
        """Problem resolver, libsolv-backed unless one was given."""
        if self._resolver is None:
            from .solver import LibsolvProblemResolver
            self._resolver = LibsolvProblemResolver(self.cache)
        return self._resolver

    # =========================================================================
    # Reporting
    # =========================================================================

    @contextmanager
    def _reporting(self):
        """Report errors once and always finish."""
        try:
            yield
        except AptkitError as e:
            # pmerror lines were reported while the installer ran
            if not (isinstance(e, InstallerFailed) and e.from_installer):
                self.transport.error(e.kind, e.message)
            raise
        finally:
            self.transport.finished()

    def _begin(self):
        """Start a new transaction: fresh state, fresh emitter, no marks."""
        self.state = TransactionState()
        self.emitter = EventEmitter(self.cache, self.transport, self.state.is_cancelled)
        self.cache.clear_marks()
        if self._resolver is not None:
            self._resolver.reset()

    def cancel(self) -> bool:
        """Request cancellation of the current transaction.

        Only the first request counts. The installer is signalled on its
        next status line; before the installer runs, the engine stops at
        the next checkpoint.
        """
        if not self.state.request_cancel():
            return False
        logger.info("Cancellation requested")
        self.transport.status(Status.CANCEL)
        return True

    # =========================================================================
    # Entry points
    # =========================================================================

    def _builder(self, config: EngineConfig = None) -> PlanBuilder:
        return PlanBuilder(self.cache, self.resolver, config or self.config,
                           self.state.is_cancelled)

    def _resolve_ids(self, package_ids: List[str]) -> List[int]:
        self.transport.status(Status.QUERY)
        # id resolution never touches the resolver
        builder = PlanBuilder(self.cache, self._resolver, self.config,
                              self.state.is_cancelled)
        return builder.resolve_package_ids(package_ids)

    def run_transaction(self, install: List[int], remove: List[int],
                        simulate: bool = False, mark_auto: bool = False,
                        only_trusted: bool = True) -> TransactionResult:
        """Plan and run a transaction.

        Args:
            install: Version indices to install
            remove: Version indices to remove
            simulate: Only report what would change
            mark_auto: Flag the installed packages as automatically installed
            only_trusted: Refuse unauthenticated archives

        Returns:
            TransactionResult

        Raises:
            AptkitError: Any failure, already reported to the transport
        """
        with self._reporting():
            self._begin()
            return self._run(install, remove, simulate, mark_auto, only_trusted,
                             self.config)

    def install_packages(self, package_ids: List[str], simulate: bool = False,
                         only_trusted: bool = True) -> TransactionResult:
        with self._reporting():
            self._begin()
            versions = self._resolve_ids(package_ids)
            return self._run(versions, [], simulate, False, only_trusted, self.config)

    def update_packages(self, package_ids: List[str], simulate: bool = False,
                        only_trusted: bool = True) -> TransactionResult:
        with self._reporting():
            self._begin()
            versions = self._resolve_ids(package_ids)
            for index in versions:
                if self.cache.package_of(index).current is None:
                    logger.info(f"{self.cache.package_of(index).name} is not installed, "
                                "it will be installed")
            return self._run(versions, [], simulate, False, only_trusted, self.config)

    def remove_packages(self, package_ids: List[str], simulate: bool = False,
                        autoremove: bool = False) -> TransactionResult:
        with self._reporting():
            self._begin()
            versions = self._resolve_ids(package_ids)
            config = replace(self.config, autoremove=autoremove)
            return self._run([], versions, simulate, False, True, config)

    def install_file(self, path, simulate: bool = False) -> TransactionResult:
        """Install a local .deb file with dpkg.

        Raises:
            IncompatibleArchitecture: The file is for another architecture
            TransactionError: The file is invalid or dpkg failed
        """
        with self._reporting():
            self._begin()
            values = read_deb_fields(path)
            arch = values.get("Architecture", "")
            if arch not in ("all", self.config.native_arch):
                raise IncompatibleArchitecture(arch, self.config.native_arch)

            ref = PackageRef(values["Package"], values["Version"], arch, "local")
            summary = values.get("Description", "")
            if simulate:
                self.transport.package(PackageState.INSTALLING, ref.package_id, summary)
                return TransactionResult(success=True, simulated=True)

            env = {'PATH': INSTALLER_PATH}
            env.update(frontend_env(self.config.frontend_socket))

            self.transport.package(PackageState.INSTALLING, ref.package_id, summary)
            try:
                result = subprocess.run(
                    [DPKG, "-i", str(path)],
                    env=env,
                    capture_output=True,
                    text=True,
                )
            except OSError as e:
                raise TransactionError(f"Cannot run {DPKG}: {e}")

            if result.returncode != 0:
                logger.error(f"dpkg -i {path} failed with {result.returncode}")
                raise TransactionError(result.stdout or result.stderr)

            self.transport.package(PackageState.INSTALLED, ref.package_id, summary)
            return TransactionResult(success=True)

    # =========================================================================
    # Transaction flow
    # =========================================================================

    def _acquire_lock(self) -> InstallLock:
        lock = self.lock_factory(self.config.lock_file,
                                 retry_interval=self.config.lock_retry_interval)
        waiting = []

        def on_wait(holder_pid):
            if not waiting:
                waiting.append(holder_pid)
                logger.info(f"Waiting for the install lock (held by {holder_pid})")
                self.transport.status(Status.WAITING_FOR_LOCK)

        lock.acquire(self.config.lock_timeout, wait_callback=on_wait)
        return lock

    def _run(self, install: List[int], remove: List[int], simulate: bool,
             mark_auto: bool, only_trusted: bool,
             config: EngineConfig) -> TransactionResult:
        cache = self.cache
        self.transport.status(Status.SETUP)

        lock = None if simulate else self._acquire_lock()
        try:
            builder = self._builder(config)
            builder.build(install, remove, mark_auto=mark_auto, simulate=simulate)
            builder.automatic_remove()
            builder.apply_purge()

            # Also runs in simulation
            check_essential_removals(cache)

            broken = cache.broken_packages()
            if broken:
                raise UnresolvableDependencies(
                    [cache.package(p).name for p in broken],
                    reason="Internal error, the plan has broken packages")

            plan = builder.plan()
            if cache.del_count() == 0 and cache.inst_count() == 0:
                logger.info("Nothing to do")
                return TransactionResult(success=True, simulated=simulate,
                                         nothing_to_do=True)

            if cache.del_count() != 0 and not config.allow_remove:
                raise RemovalDisabled()

            fetcher = self.fetcher_factory(cache)
            if fetcher.total_needed() != cache.deb_size():
                logger.debug(f"Archive sizes do not match: {fetcher.total_needed()} "
                             f"fetched, {cache.deb_size()} planned")
            check_free_space(config.archives_dir,
                             fetcher.fetch_needed() - fetcher.partial_present())

            allow_untrusted = not only_trusted or config.allow_unauthenticated
            check_trusted(fetcher.artifacts(), self.emitter,
                          allow_untrusted=allow_untrusted, simulate=simulate)

            if simulate:
                self.emitter.emit_changed(builder)
                return TransactionResult(success=True, simulated=True, plan=plan)

            self.transport.status(Status.DOWNLOAD)
            if fetcher.run() != FetchResult.CONTINUE and not self.state.is_cancelled():
                raise FetchFailed("Failed to download the package archives")

            # Packages the installer will name in its status lines
            removing, downgrading, installing, updating = builder.changed_packages()
            self.emitter.set_transaction_packages(
                removing + downgrading + installing + updating)

            if self.state.is_cancelled():
                logger.info("Transaction cancelled before the installer started")
                return TransactionResult(success=False, cancelled=True, plan=plan)

            # Not safe to cancel anymore
            self.transport.allow_cancel(False)
            self.transport.status(Status.RUNNING)
            self.transport.percentage(PERCENTAGE_INVALID)
            self.transport.sub_percentage(PERCENTAGE_INVALID)

            supervisor = InstallerSupervisor(self.emitter, self.state, config,
                                             self.conffile_resolver,
                                             session_factory=self.session_factory)
            outcome = supervisor.run(installer_arguments(cache, config.installer_argv))
            return TransactionResult(
                success=outcome == InstallerOutcome.SUCCESS,
                outcome=outcome,
                cancelled=outcome == InstallerOutcome.CANCELLED,
                plan=plan,
            )
        finally:
            if lock is not None:
                lock.release()
