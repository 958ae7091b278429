"""Error taxonomy for aptkit transactions.

Every fatal condition is an AptkitError carrying the ErrorKind reported
to the transport. Errors raised before the installer child is spawned
leave no partial state behind; errors raised after it was spawned are
only raised once the child has been reaped.
"""

from enum import Enum
from typing import List, Optional


class ErrorKind(Enum):
    """Structured error kinds reported to the transport."""
    DEP_RESOLUTION_FAILED = "dep-resolution-failed"
    UNRESOLVABLE_DEPENDENCIES = "unresolvable-dependencies"
    CANNOT_REMOVE_SYSTEM_PACKAGE = "cannot-remove-system-package"
    CANNOT_INSTALL_REPO_UNSIGNED = "cannot-install-repo-unsigned"
    CANNOT_GET_LOCK = "cannot-get-lock"
    PACKAGE_FAILED_TO_INSTALL = "package-failed-to-install"
    PACKAGE_FAILED_TO_REMOVE = "package-failed-to-remove"
    PACKAGE_DOWNLOAD_FAILED = "package-download-failed"
    PACKAGE_ID_INVALID = "package-id-invalid"
    NO_SPACE_ON_DEVICE = "no-space-on-device"
    INCOMPATIBLE_ARCHITECTURE = "incompatible-architecture"
    TRANSACTION_ERROR = "transaction-error"
    INTERNAL_ERROR = "internal-error"


class AptkitError(Exception):
    """Base class for all transaction errors."""

    kind = ErrorKind.INTERNAL_ERROR

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ResolutionError(AptkitError):
    """The cache has no installation candidate for a requested package."""

    kind = ErrorKind.DEP_RESOLUTION_FAILED

    def __init__(self, package: str):
        self.package = package
        super().__init__(
            f"Package {package} is virtual and has no installation candidate"
        )


class UnresolvableDependencies(AptkitError):
    """The problem resolver left broken packages behind."""

    kind = ErrorKind.UNRESOLVABLE_DEPENDENCIES

    def __init__(self, broken: List[str], reason: str = ""):
        self.broken = list(broken)
        message = reason or "Unable to resolve dependencies"
        if self.broken:
            message += ": " + ", ".join(self.broken)
        super().__init__(message)


class EssentialPackageRemoval(AptkitError):
    """The plan would remove essential packages or their dependencies."""

    kind = ErrorKind.CANNOT_REMOVE_SYSTEM_PACKAGE

    def __init__(self, packages: List[str]):
        self.packages = list(packages)
        super().__init__(
            "WARNING: You are trying to remove the following essential "
            "packages: " + " ".join(self.packages)
        )


class UntrustedPackages(AptkitError):
    """Some artifacts to install cannot be authenticated."""

    kind = ErrorKind.CANNOT_INSTALL_REPO_UNSIGNED

    def __init__(self, descriptions: List[str]):
        self.descriptions = list(descriptions)
        super().__init__(
            "The following packages cannot be authenticated:\n"
            + "".join(f"{desc} " for desc in self.descriptions)
        )


class LockTimeout(AptkitError):
    """The install lock could not be acquired in time."""

    kind = ErrorKind.CANNOT_GET_LOCK

    def __init__(self, path, holder: Optional[int] = None):
        self.path = path
        self.holder = holder
        message = f"Unable to acquire the install lock {path}"
        if holder:
            message += f" (held by process {holder})"
        super().__init__(message)


class InstallerFailed(AptkitError):
    """The installer child exited unsuccessfully.

    from_installer is True when the detail is the installer's own pmerror
    message, which was already reported while the child was running.
    """

    kind = ErrorKind.PACKAGE_FAILED_TO_INSTALL

    def __init__(self, detail: str, from_installer: bool = False,
                 exit_code: Optional[int] = None):
        self.detail = detail
        self.from_installer = from_installer
        self.exit_code = exit_code
        super().__init__(detail)


class ProtocolError(AptkitError):
    """A status line could not be parsed. Never fatal."""

    def __init__(self, line: str, reason: str):
        self.line = line
        self.reason = reason
        super().__init__(f"Malformed status line ({reason}): {line!r}")


class InvalidPackageId(AptkitError):
    """A package id does not have the name;version;arch;data form."""

    kind = ErrorKind.PACKAGE_ID_INVALID

    def __init__(self, package_id: str):
        self.package_id = package_id
        super().__init__(f"Invalid package id: {package_id!r}")


class NoSpace(AptkitError):
    """Not enough free space to download the archives."""

    kind = ErrorKind.NO_SPACE_ON_DEVICE

    def __init__(self, directory):
        self.directory = directory
        super().__init__(f"You don't have enough free space in {directory}")


class FetchFailed(AptkitError):
    """The fetcher did not complete and was not cancelled."""

    kind = ErrorKind.PACKAGE_DOWNLOAD_FAILED


class RemovalDisabled(AptkitError):
    """The plan removes packages but removals are disabled by configuration."""

    kind = ErrorKind.PACKAGE_FAILED_TO_REMOVE

    def __init__(self):
        super().__init__("Packages need to be removed but remove is disabled.")


class IncompatibleArchitecture(AptkitError):
    """A local package file is built for another architecture."""

    kind = ErrorKind.INCOMPATIBLE_ARCHITECTURE

    def __init__(self, found: str, expected: str):
        self.found = found
        self.expected = expected
        super().__init__(
            f"Package has wrong architecture, it is {found}, but we need {expected}"
        )


class TransactionError(AptkitError):
    """Generic failure while running a transaction step."""

    kind = ErrorKind.TRANSACTION_ERROR
