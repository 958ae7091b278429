"""
Installer supervision

Runs the installer (apt-get/dpkg) as a child process and translates its
status descriptor output into package lifecycle events.

Architecture:
    engine (parent)                      installer (child)
        │                                    │
        ├── pipe() + pty.fork() ─────────────┤
        │                                    │  LC_ALL=C, debconf frontend
        │   drains the pty (discarded)       │  exec apt-get -o APT::Status-Fd=N
        │   reads status lines ◄──────────── │  pmstatus:pkg:25:Preparing pkg
        │   answers conffile prompts ──────► │  (on the terminal)
        │   waitpid(WNOHANG)                 │
        └────────────────────────────────────┘
                                             exit(status)
"""

import logging
import os
import pty
import signal
import threading
import time
from enum import Enum
from typing import Callable, List, Optional

from .cache import DepCache
from .conffile import ConfFileResolver, Decision, frontend_env
from .config import EngineConfig, INSTALLER_PATH
from .errors import ErrorKind, InstallerFailed, ProtocolError
from .events import EventEmitter, MessageKind, Status
from .packages import PackageState
from .status import ConfFilePrompt, ErrorLine, Phase, StatusUpdate, parse_status_line

logger = logging.getLogger(__name__)

STATUS_FD_PLACEHOLDER = "{status_fd}"
STATUS_FD_ENV = "APTKIT_STATUS_FD"
EXEC_FAILED = 127

READ_SIZE = 4096


class InstallerOutcome(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TransactionState:
    """State shared by the engine and the supervision loop.

    The cancellation flag may be set from any thread. Everything else is
    only touched by the loop.
    """

    def __init__(self):
        self._cancel = threading.Event()
        self._cancel_lock = threading.Lock()
        self.last_package = ""
        self.last_sub_percent = 0
        # package closed by Installed/Removed, not closed again
        self.finished_package = ""
        self.last_error: Optional[str] = None
        self.terminated = False

    def request_cancel(self) -> bool:
        """Set the cancellation flag. True only for the first request."""
        with self._cancel_lock:
            if self._cancel.is_set():
                return False
            self._cancel.set()
            return True

    def is_cancelled(self) -> bool:
        return self._cancel.is_set()


class InstallerSession:
    """A forked installer with its terminal and status channel."""

    def __init__(self):
        self.pid: Optional[int] = None
        self.master_fd: Optional[int] = None
        self.status_fd: Optional[int] = None
        self.returncode: Optional[int] = None
        self._terminal_open = False

    def spawn(self, argv: List[str], env: dict = None):
        """Fork and exec argv on a new pseudo-terminal.

        Every "{status_fd}" in argv is replaced by the descriptor number of
        the status pipe's write end, which is also exported as
        APTKIT_STATUS_FD.
        """
        read_fd, write_fd = os.pipe()
        argv = [arg.replace(STATUS_FD_PLACEHOLDER, str(write_fd)) for arg in argv]

        try:
            pid, master_fd = pty.fork()
        except OSError:
            os.close(read_fd)
            os.close(write_fd)
            raise
        if pid == 0:
            # Child process - never returns
            try:
                os.close(read_fd)
                os.set_inheritable(write_fd, True)
                child_env = dict(os.environ)
                child_env.update(env or {})
                # Installer output is parsed, keep it untranslated
                child_env['LC_ALL'] = 'C'
                child_env[STATUS_FD_ENV] = str(write_fd)
                os.execvpe(argv[0], argv, child_env)
            except OSError as e:
                os.write(2, f"Cannot execute {argv[0]}: {e}\n".encode())
            finally:
                os._exit(EXEC_FAILED)

        os.close(write_fd)
        os.set_blocking(read_fd, False)
        os.set_blocking(master_fd, False)
        self.pid = pid
        self.master_fd = master_fd
        self.status_fd = read_fd
        self._terminal_open = True
        logger.debug(f"Installer started: pid {pid}: {' '.join(argv)}")

    def drain_terminal(self):
        """Read and discard whatever the installer printed."""
        while self._terminal_open:
            try:
                data = os.read(self.master_fd, READ_SIZE)
            except BlockingIOError:
                return
            except OSError:
                # EIO once the child side is gone
                self._terminal_open = False
                return
            if not data:
                self._terminal_open = False
                return

    def read_status(self) -> bytes:
        """Whatever is available on the status channel, b"" if nothing."""
        chunks = []
        while self.status_fd is not None:
            try:
                data = os.read(self.status_fd, READ_SIZE)
            except BlockingIOError:
                break
            if not data:
                break
            chunks.append(data)
        return b"".join(chunks)

    def write_terminal(self, data: bytes) -> bool:
        """Answer on the installer's terminal."""
        try:
            return os.write(self.master_fd, data) == len(data)
        except OSError as e:
            logger.debug(f"Failed to write to the installer terminal: {e}")
            return False

    def poll(self) -> Optional[int]:
        """Reap the child if it exited. Returns the exit code or None."""
        if self.returncode is not None:
            return self.returncode
        pid, status = os.waitpid(self.pid, os.WNOHANG)
        if pid == 0:
            return None
        self.returncode = os.waitstatus_to_exitcode(status)
        return self.returncode

    def terminate(self, sig: int = signal.SIGTERM):
        """Signal the installer's process group."""
        try:
            os.killpg(self.pid, sig)
        except ProcessLookupError:
            logger.debug(f"Installer {self.pid} already gone")

    def close(self):
        for fd in (self.status_fd, self.master_fd):
            if fd is not None:
                try:
                    os.close(fd)
                except OSError:
                    pass
        self.status_fd = None
        self.master_fd = None
        self._terminal_open = False


def installer_arguments(cache: DepCache, base_argv: List[str]) -> List[str]:
    """Command line handing the planned changes to apt-get.

    Installs are pinned to the planned version, removals get a "-"
    suffix and purges a "_" suffix.
    """
    argv = list(base_argv)
    targets = []
    reinstall = False
    for package in cache.packages():
        pkg = cache.package(package)
        name = pkg.name
        if pkg.arch not in (cache.native_arch, 'all'):
            name = f"{pkg.name}:{pkg.arch}"

        if cache.delete(package):
            targets.append(name + ('_' if cache.purge(package) else '-'))
        elif cache.new_install(package) or cache.upgrade(package) \
                or cache.downgrade(package) or cache.reinstall(package):
            version = cache.version(cache.install_version(package)).version
            targets.append(f"{name}={version}")
            reinstall = reinstall or cache.reinstall(package)

    if reinstall:
        argv.append("--reinstall")
    return argv + targets


def _clamp(value: int) -> int:
    return min(max(value, 0), 100)


class InstallerSupervisor:
    """Drives one installer run and reports its progress.

    Usage:
        supervisor = InstallerSupervisor(emitter, state, config, resolver)
        outcome = supervisor.run(argv)
    """

    def __init__(self, emitter: EventEmitter, state: TransactionState,
                 config: EngineConfig = None,
                 conffile_resolver: ConfFileResolver = None,
                 session_factory: Callable[[], InstallerSession] = InstallerSession):
        self.emitter = emitter
        self.transport = emitter.transport
        self.state = state
        self.config = config or EngineConfig()
        self.conffile_resolver = conffile_resolver or ConfFileResolver()
        self.session_factory = session_factory
        self.session: Optional[InstallerSession] = None

    # =========================================================================
    # Process handling
    # =========================================================================

    def installer_env(self) -> dict:
        env = {'PATH': INSTALLER_PATH}
        env.update(frontend_env(self.config.frontend_socket))
        if self.config.locale:
            # debconf questions still get translated
            env['LANGUAGE'] = self.config.locale
            env['LANG'] = self.config.locale
        return env

    def run(self, argv: List[str], env: dict = None) -> InstallerOutcome:
        """Spawn the installer and supervise it until it exits.

        Returns:
            InstallerOutcome.SUCCESS or InstallerOutcome.CANCELLED

        Raises:
            InstallerFailed: The installer exited unsuccessfully
        """
        child_env = self.installer_env()
        child_env.update(env or {})

        session = self.session_factory()
        self.session = session
        session.spawn(argv, child_env)

        buffer = b""
        started = False
        last_activity = time.monotonic()
        try:
            while session.poll() is None:
                session.drain_terminal()
                data = session.read_status()
                if data:
                    started = True
                    last_activity = time.monotonic()
                    buffer = self.feed(buffer + data)

                now = time.monotonic()
                if not started:
                    # wait until we get the first message from the installer
                    time.sleep(self.config.startup_interval)
                    last_activity = now
                elif now - last_activity > self.config.terminal_timeout:
                    logger.warning(f"No status line from the installer for "
                                   f"{self.config.terminal_timeout} seconds")
                    last_activity = now

                time.sleep(self.config.poll_interval)

            # The child is gone, pick up what it wrote last
            session.drain_terminal()
            buffer = self.feed(buffer + session.read_status())
            if buffer.strip():
                self.handle_line(buffer.decode('utf-8', 'replace'))
        finally:
            session.close()

        return self._outcome(session.returncode)

    def feed(self, data: bytes) -> bytes:
        """Dispatch every complete line, return the incomplete rest."""
        *lines, rest = data.split(b"\n")
        for line in lines:
            self.handle_line(line.decode('utf-8', 'replace'))
        return rest

    def _outcome(self, returncode: int) -> InstallerOutcome:
        if returncode == 0:
            logger.debug("Installer finished successfully")
            return InstallerOutcome.SUCCESS

        if self.state.is_cancelled():
            logger.info(f"Installer cancelled (exit code {returncode})")
            return InstallerOutcome.CANCELLED

        if self.state.last_error:
            detail, from_installer = self.state.last_error, True
        elif returncode < 0:
            detail, from_installer = f"installer killed by signal {-returncode}", False
        else:
            detail, from_installer = f"installer exited with status {returncode}", False
        logger.error(f"Installer failed: {detail}")
        raise InstallerFailed(detail, from_installer=from_installer, exit_code=returncode)

    # =========================================================================
    # Status line dispatch
    # =========================================================================

    def handle_line(self, line: str):
        """Dispatch one status line."""
        if not line.strip():
            return

        if self.state.is_cancelled() and not self.state.terminated:
            logger.info("Cancelling the installer")
            self.state.terminated = True
            if self.session is not None:
                self.session.terminate()

        try:
            parsed = parse_status_line(line)
        except ProtocolError as e:
            logger.warning(f"Skipping status line: {e}")
            return

        if isinstance(parsed, ErrorLine):
            self._on_error(parsed)
        elif isinstance(parsed, ConfFilePrompt):
            self._on_conffile(parsed)
        else:
            self._on_status(parsed)

        self.transport.percentage(int(parsed.percent))

    def _on_error(self, line: ErrorLine):
        logger.error(f"Installer error for {line.package}: {line.message}")
        self.state.last_error = line.message
        self.transport.error(ErrorKind.PACKAGE_FAILED_TO_INSTALL, line.message)

    def _on_conffile(self, prompt: ConfFilePrompt):
        package = self.state.last_package or prompt.package
        decision = self.conffile_resolver.resolve(package, prompt.original, prompt.new)
        logger.debug(f"Conffile {prompt.original} of {package}: {decision.value}")

        if decision == Decision.USE_NEW:
            answer = b"Y\n"
        else:
            answer = b"N\n"
            if decision == Decision.UNRESOLVED:
                self.transport.message(
                    MessageKind.CONFIG_FILES_CHANGED,
                    f"The configuration file '{prompt.original}' "
                    f"(modified by you or a script) has a newer version '{prompt.new}'.\n"
                    "Please verify your changes and update it manually.")

        if self.session is None or not self.session.write_terminal(answer):
            logger.warning(f"Could not answer the conffile prompt for {prompt.original}")

    def _emit(self, package: str, state: PackageState):
        if state == PackageState.FINISHED:
            self.state.finished_package = package
        elif package == self.state.finished_package:
            self.state.finished_package = ""
        self.emitter.emit_transaction_package(package, state)

    def _close_out(self, package: str):
        """Report package as finished unless that already happened."""
        if package and package != self.state.finished_package:
            self._emit(package, PackageState.FINISHED)

    def _boundary(self, package: str):
        """A new package starts: finish the previous one."""
        if self.state.last_package and self.state.last_package != package:
            self._close_out(self.state.last_package)

    def _sub_percentage(self, value: int):
        self.transport.sub_percentage(_clamp(value))

    def _on_status(self, update: StatusUpdate):
        st = self.state
        pkg = update.package
        phase = update.phase

        if phase == Phase.PREPARING_TO_CONFIGURE:
            # Configuring comes next
            st.last_sub_percent = 100
            self._emit(pkg, PackageState.PREPARING)
            self._sub_percentage(75)
        elif phase == Phase.PREPARING_FOR_REMOVAL:
            st.last_sub_percent = 50
            self._emit(pkg, PackageState.REMOVING)
            self._sub_percentage(st.last_sub_percent)
        elif phase == Phase.PREPARING:
            self._boundary(pkg)
            self._emit(pkg, PackageState.PREPARING)
            self._sub_percentage(25)
        elif phase == Phase.UNPACKING:
            self._emit(pkg, PackageState.DECOMPRESSING)
            self._sub_percentage(50)
        elif phase == Phase.CONFIGURING:
            if st.last_sub_percent >= 100:
                # wraps without a close-out, only start phases close out
                st.last_sub_percent = 0
            self._emit(pkg, PackageState.INSTALLING)
            self._sub_percentage(st.last_sub_percent)
            st.last_sub_percent += 25
        elif phase == Phase.RUNNING_DPKG:
            pass
        elif phase == Phase.RUNNING:
            self.transport.status(Status.COMMIT)
        elif phase == Phase.INSTALLING:
            self._boundary(pkg)
            st.last_sub_percent = 0
            self._emit(pkg, PackageState.INSTALLING)
            self._sub_percentage(0)
        elif phase == Phase.REMOVING:
            if st.last_package != pkg or st.last_sub_percent >= 100:
                self._close_out(st.last_package)
                st.last_sub_percent = 0
            st.last_sub_percent += 25
            self._emit(pkg, PackageState.REMOVING)
            self._sub_percentage(st.last_sub_percent)
        elif phase in (Phase.INSTALLED, Phase.REMOVED):
            st.last_sub_percent = 100
            self._emit(pkg, PackageState.FINISHED)
            self._sub_percentage(100)
        else:
            logger.warning(f"Unmapped installer status: {update.message!r} ({pkg})")

        if phase not in (Phase.RUNNING, Phase.RUNNING_DPKG):
            st.last_package = pkg
