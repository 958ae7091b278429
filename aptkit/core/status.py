"""Installer status-line parser.

The installer writes one line per update to the status descriptor:

    pmstatus:dpkg:25.0000:Installing dpkg:
    pmstatus:libc6:amd64:50.0000:Unpacking libc6:
    pmerror:foo:75.0000:subprocess installed post-installation script returned error exit status 1
    pmconffile:/etc/foo.conf:60.0000:'/etc/foo.conf' '/etc/foo.conf.dpkg-new' 1 1

parse_status_line() turns such a line into one of ErrorLine, ConfFilePrompt
or StatusUpdate, independently of any I/O.
"""

import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Tuple, Union

from .errors import ProtocolError

STATUS = "pmstatus"
ERROR = "pmerror"
CONFFILE = "pmconffile"

_QUOTED = re.compile(r"'([^']*)'")


class Phase(Enum):
    """Phase keywords of pmstatus messages, in matching order."""
    PREPARING_TO_CONFIGURE = "Preparing to configure"
    PREPARING_FOR_REMOVAL = "Preparing for removal"
    PREPARING = "Preparing"
    UNPACKING = "Unpacking"
    CONFIGURING = "Configuring"
    RUNNING_DPKG = "Running dpkg"
    RUNNING = "Running"
    INSTALLING = "Installing"
    REMOVING = "Removing"
    INSTALLED = "Installed"
    REMOVED = "Removed"
    UNKNOWN = ""

    @classmethod
    def from_message(cls, message: str) -> 'Phase':
        for phase in cls:
            if phase is not cls.UNKNOWN and message.startswith(phase.value):
                return phase
        return cls.UNKNOWN


@dataclass(frozen=True)
class ErrorLine:
    package: str
    percent: float
    message: str


@dataclass(frozen=True)
class ConfFilePrompt:
    package: str
    percent: float
    original: str
    new: str


@dataclass(frozen=True)
class StatusUpdate:
    package: str
    percent: float
    phase: Phase
    message: str
    extra: str = ""


StatusLine = Union[ErrorLine, ConfFilePrompt, StatusUpdate]


def _is_number(value: str) -> bool:
    try:
        return math.isfinite(float(value))
    except ValueError:
        return False


def _split(line: str) -> Tuple[str, str, float, List[str]]:
    """Split into (kind, package, percent, remaining fields).

    The package may contain colons (libc6:amd64), so the percent is the
    first numeric field after it.
    """
    fields = line.split(':')
    if len(fields) < 4:
        raise ProtocolError(line, "fewer than four fields")

    kind = fields[0]
    if not kind:
        raise ProtocolError(line, "empty kind")
    if not fields[1]:
        raise ProtocolError(line, "empty package")

    for i in range(2, len(fields)):
        if _is_number(fields[i]):
            package = ':'.join(fields[1:i])
            return kind, package, float(fields[i]), fields[i + 1:]

    raise ProtocolError(line, "no numeric percent field")


def parse_status_line(line: str) -> StatusLine:
    """Parse one status line.

    Raises:
        ProtocolError: The line is malformed or of an unknown kind
    """
    line = line.strip()
    kind, package, percent, rest = _split(line)

    if kind == ERROR:
        return ErrorLine(package, percent, ':'.join(rest))

    if kind == CONFFILE:
        paths = _QUOTED.findall(':'.join(rest))
        if len(paths) < 2:
            raise ProtocolError(line, "conffile prompt without two quoted paths")
        return ConfFilePrompt(package, percent, paths[0], paths[1])

    if kind == STATUS:
        message = rest[0] if rest else ""
        extra = ':'.join(rest[1:])
        return StatusUpdate(package, percent, Phase.from_message(message), message, extra)

    raise ProtocolError(line, f"unknown kind {kind}")
