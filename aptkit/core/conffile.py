"""
Conffile conflict resolution

When dpkg finds a locally modified configuration file that the new package
also changes, it asks on the terminal whether to install the package
maintainer's version. The supervisor forwards the question to a
ConfFileResolver and writes the answer back.
"""

import logging
import os
import subprocess
from enum import Enum

logger = logging.getLogger(__name__)

# Exit codes of the conffile helper
HELPER_USE_NEW = 10
HELPER_KEEP_OLD = 20


class Decision(Enum):
    USE_NEW = "use-new"
    KEEP_OLD = "keep-old"
    UNRESOLVED = "unresolved"


class ConfFileResolver:
    """Decides conffile conflicts. The default keeps the local file unresolved."""

    def resolve(self, package: str, original: str, new: str) -> Decision:
        return Decision.UNRESOLVED


def frontend_env(frontend_socket: str = None) -> dict:
    """Debconf frontend variables for helpers and the installer."""
    if frontend_socket:
        return {'DEBIAN_FRONTEND': 'passthrough', 'DEBCONF_PIPE': frontend_socket}
    return {'DEBIAN_FRONTEND': 'noninteractive'}


class HelperConfFileResolver(ConfFileResolver):
    """Asks an external helper program.

    The helper is called as `<helper> <package> <original> <new>` and
    answers with its exit code: 10 to install the new file, 20 to keep
    the old one. Anything else leaves the conflict unresolved.
    """

    def __init__(self, helper: str, frontend_socket: str = None):
        self.helper = helper
        self.frontend_socket = frontend_socket

    def resolve(self, package: str, original: str, new: str) -> Decision:
        env = dict(os.environ)
        env.pop('DEBCONF_PIPE', None)
        env.update(frontend_env(self.frontend_socket))

        try:
            result = subprocess.run(
                [self.helper, package, original, new],
                env=env,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
            )
        except OSError as e:
            logger.warning(f"Cannot run conffile helper {self.helper}: {e}")
            return Decision.UNRESOLVED

        if result.returncode == HELPER_USE_NEW:
            return Decision.USE_NEW
        if result.returncode == HELPER_KEEP_OLD:
            return Decision.KEEP_OLD

        if result.returncode < 0:
            logger.warning(f"Conffile helper killed by signal {-result.returncode}")
        else:
            logger.debug(f"Conffile helper returned {result.returncode}: {result.stderr}")
        return Decision.UNRESOLVED
