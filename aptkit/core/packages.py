"""
Package identifiers and lifecycle vocabulary

A package is identified on the wire by a package id of the form
name;version;arch;data where data is the origin/archive label.
"""

from dataclasses import dataclass
from enum import Enum, Flag

from .errors import InvalidPackageId

PACKAGE_ID_SECTIONS = 4


class Action(Enum):
    """Intended action for one package in a plan."""
    INSTALL = "install"
    REMOVE = "remove"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    KEEP = "keep"


class PackageState(Enum):
    """Lifecycle states reported to the transport."""
    UNKNOWN = "unknown"
    INSTALLED = "installed"
    AVAILABLE = "available"
    INSTALLING = "installing"
    REMOVING = "removing"
    UPDATING = "updating"
    DOWNGRADING = "downgrading"
    PREPARING = "preparing"
    DECOMPRESSING = "decompressing"
    FINISHED = "finished"
    UNTRUSTED = "untrusted"


class Filter(Flag):
    """Result filters for package lookups."""
    NONE = 0
    INSTALLED = 1
    NOT_INSTALLED = 2
    ARCH = 4
    NOT_ARCH = 8


def split_package_id(package_id: str):
    """Split a package id into its four sections.

    Returns:
        List of sections, or None if the id is malformed
    """
    if package_id is None:
        return None
    sections = package_id.split(';')
    if len(sections) != PACKAGE_ID_SECTIONS:
        return None
    # name has to be valid
    if not sections[0]:
        return None
    return sections


def is_package_id(value: str) -> bool:
    """Check if a string is a well formed package id."""
    return split_package_id(value) is not None


@dataclass(frozen=True)
class PackageRef:
    """Immutable package identifier.

    Two refs with the same key but different versions are distinct
    candidate states (installed vs. candidate).
    """
    name: str
    version: str
    arch: str
    data: str = ""

    @property
    def key(self):
        return (self.name, self.arch)

    @property
    def package_id(self) -> str:
        return f"{self.name};{self.version};{self.arch};{self.data}"

    @classmethod
    def from_package_id(cls, package_id: str) -> 'PackageRef':
        sections = split_package_id(package_id)
        if sections is None:
            raise InvalidPackageId(package_id)
        name, version, arch, data = sections
        return cls(name=name, version=version, arch=arch, data=data)

    def __str__(self):
        return self.package_id
