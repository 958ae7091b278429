"""
Transport and event emission

The engine never talks to a UI directly: it reports lifecycle package
events, progress, status changes, errors and messages to a Transport.
EventEmitter sits in front of the transport and turns cache versions
into package events.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, List, TextIO

from .cache import DepCache, VersionKey
from .errors import ErrorKind
from .packages import PackageState

logger = logging.getLogger(__name__)

# Percentage value meaning "unknown", resets progress bars
PERCENTAGE_INVALID = 101


class Status(Enum):
    """Coarse transaction status."""
    SETUP = "setup"
    WAITING_FOR_LOCK = "waiting-for-lock"
    QUERY = "query"
    RUNNING = "running"
    DOWNLOAD = "download"
    COMMIT = "commit"
    CANCEL = "cancel"
    FINISHED = "finished"


class MessageKind(Enum):
    """Non-fatal notices."""
    CONFIG_FILES_CHANGED = "config-files-changed"


class Transport:
    """Receiver of transaction events. Subclass and override what you need."""

    def package(self, state: PackageState, package_id: str, summary: str):
        pass

    def percentage(self, value: int):
        pass

    def sub_percentage(self, value: int):
        pass

    def status(self, status: Status):
        pass

    def error(self, kind: ErrorKind, message: str):
        pass

    def message(self, kind: MessageKind, text: str):
        pass

    def allow_cancel(self, allowed: bool):
        pass

    def finished(self):
        pass


class LoggingTransport(Transport):
    """Transport writing every event to the log."""

    def __init__(self, log: logging.Logger = None):
        self.log = log or logger

    def package(self, state, package_id, summary):
        self.log.info(f"[{state.value}] {package_id} {summary}")

    def percentage(self, value):
        self.log.debug(f"percentage {value}")

    def sub_percentage(self, value):
        self.log.debug(f"sub-percentage {value}")

    def status(self, status):
        self.log.info(f"status {status.value}")

    def error(self, kind, message):
        self.log.error(f"{kind.value}: {message}")

    def message(self, kind, text):
        self.log.warning(f"{kind.value}: {text}")

    def allow_cancel(self, allowed):
        self.log.debug(f"allow-cancel {allowed}")

    def finished(self):
        self.log.info("finished")


@dataclass
class TransportMessage:
    """One event as a JSON line."""
    msg_type: str  # 'package', 'percentage', 'status', 'error', ...
    state: str = ""
    package_id: str = ""
    summary: str = ""
    value: int = 0
    kind: str = ""
    text: str = ""
    extra: dict = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps({
            'type': self.msg_type,
            'state': self.state,
            'package_id': self.package_id,
            'summary': self.summary,
            'value': self.value,
            'kind': self.kind,
            'text': self.text,
            'extra': self.extra,
        })

    @classmethod
    def from_json(cls, data: str) -> 'TransportMessage':
        d = json.loads(data)
        return cls(
            msg_type=d['type'],
            state=d.get('state', ''),
            package_id=d.get('package_id', ''),
            summary=d.get('summary', ''),
            value=d.get('value', 0),
            kind=d.get('kind', ''),
            text=d.get('text', ''),
            extra=d.get('extra', {}),
        )


class JsonTransport(Transport):
    """Transport writing one JSON object per event to a stream."""

    def __init__(self, stream: TextIO):
        self.stream = stream

    def _write(self, msg: TransportMessage):
        try:
            self.stream.write(msg.to_json() + "\n")
            self.stream.flush()
        except (OSError, ValueError) as e:
            # closed pipe on the UI side, keep the transaction going
            logger.debug(f"Cannot write event: {e}")

    def package(self, state, package_id, summary):
        self._write(TransportMessage('package', state=state.value,
                                     package_id=package_id, summary=summary))

    def percentage(self, value):
        self._write(TransportMessage('percentage', value=value))

    def sub_percentage(self, value):
        self._write(TransportMessage('sub_percentage', value=value))

    def status(self, status):
        self._write(TransportMessage('status', state=status.value))

    def error(self, kind, message):
        self._write(TransportMessage('error', kind=kind.value, text=message))

    def message(self, kind, text):
        self._write(TransportMessage('message', kind=kind.value, text=text))

    def allow_cancel(self, allowed):
        self._write(TransportMessage('allow_cancel', value=int(allowed)))

    def finished(self):
        self._write(TransportMessage('finished'))


class EventEmitter:
    """Turns cache versions into package events on a transport."""

    def __init__(self, cache: DepCache, transport: Transport,
                 is_cancelled: Callable[[], bool] = None):
        self.cache = cache
        self.transport = transport
        self.is_cancelled = is_cancelled or (lambda: False)
        self._transaction_versions: List[int] = []

    def set_transaction_packages(self, versions: Iterable[int]):
        """Versions the installer is about to process, looked up by name."""
        self._transaction_versions = [v for v in versions if v is not None]

    def _sort_key(self, version: int):
        ver = self.cache.version(version)
        return (self.cache.package(ver.package).name, ver.arch, VersionKey(ver.version))

    def _identity(self, version: int):
        ver = self.cache.version(version)
        return (self.cache.package(ver.package).name, ver.arch, ver.version, ver.archive)

    def emit_package(self, version: int, state: PackageState = None,
                     predicate: Callable[[int], bool] = None):
        """Emit one version, deriving the state when none is given."""
        if predicate is not None and not predicate(version):
            return
        if state is None or state == PackageState.UNKNOWN:
            if self.cache.package_of(version).current == version:
                state = PackageState.INSTALLED
            else:
                state = PackageState.AVAILABLE
        ver = self.cache.version(version)
        self.transport.package(state, self.cache.ref(version).package_id, ver.summary)

    def emit(self, versions: Iterable[int],
             predicate: Callable[[int], bool] = None,
             state: PackageState = None) -> List[int]:
        """Sort, deduplicate, filter and emit a set of versions.

        Returns:
            The sorted, deduplicated versions (before filtering)
        """
        ordered = sorted((v for v in versions if v is not None), key=self._sort_key)
        seen = set()
        unique = []
        for version in ordered:
            identity = self._identity(version)
            if identity in seen:
                continue
            seen.add(identity)
            unique.append(version)

        for version in unique:
            if self.is_cancelled():
                break
            self.emit_package(version, state, predicate)
        return unique

    def emit_transaction_package(self, name: str, state: PackageState):
        """Emit the package named by the installer.

        Transaction packages are looked up first, then the cache.
        """
        base, _, arch = name.partition(':')
        for version in self._transaction_versions:
            if self.cache.package_of(version).name != base:
                continue
            if arch and self.cache.version(version).arch not in (arch, 'all'):
                continue
            self.emit_package(version, state)
            return

        package = self.cache.find_package(name)
        if package is None:
            return
        pkg = self.cache.package(package)
        # Ignore packages that exist only due to dependencies
        if not pkg.versions and not self.cache.virtual_providers(pkg.name):
            return

        emitted = []
        current = self.cache.current(package)
        first = current if current is not None else (pkg.versions[0] if pkg.versions else None)
        for version in (first, self.cache.candidate(package)):
            if version is not None and version not in emitted:
                emitted.append(version)
                self.emit_package(version, state)

    def emit_changed(self, builder):
        """Emit what a plan would change, as shown in simulations.

        Args:
            builder: PlanBuilder holding the plan
        """
        removing, downgrading, installing, updating = builder.changed_packages()
        self.emit(removing, state=PackageState.REMOVING)
        self.emit(downgrading, state=PackageState.DOWNGRADING)
        self.emit(installing, state=PackageState.INSTALLING)
        self.emit(updating, state=PackageState.UPDATING)
