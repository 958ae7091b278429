"""Trust verification of fetched artifacts.

Runs after the fetch layer has staged the archives and before the
installer is started. Untrusted artifacts are always reported to the
transport; whether they block the transaction depends on the caller's
policy.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .errors import UntrustedPackages
from .packages import PackageState

logger = logging.getLogger(__name__)


@dataclass
class Artifact:
    """An archive staged by the fetch layer.

    version is the cache version index the archive realizes.
    """
    version: int
    short_desc: str
    trusted: bool
    uri: str = ""
    size: int = 0


def partition_artifacts(artifacts: List[Artifact]) -> Tuple[List[Artifact], List[Artifact]]:
    """Split artifacts into (trusted, untrusted)."""
    trusted, untrusted = [], []
    for artifact in artifacts:
        (trusted if artifact.trusted else untrusted).append(artifact)
    return trusted, untrusted


def check_trusted(artifacts: List[Artifact], emitter=None,
                  allow_untrusted: bool = False,
                  simulate: bool = False) -> bool:
    """Verify every artifact is trusted.

    Args:
        artifacts: Artifacts staged for installation
        emitter: EventEmitter receiving untrusted packages (optional)
        allow_untrusted: Caller policy accepts unauthenticated artifacts
        simulate: Simulation only reports, never fails

    Returns:
        True if all artifacts are trusted, False if untrusted ones were
        accepted (policy or simulation)

    Raises:
        UntrustedPackages: Untrusted artifacts and no override
    """
    _trusted, untrusted = partition_artifacts(artifacts)
    if not untrusted:
        return True

    if emitter is not None:
        emitter.emit([a.version for a in untrusted], state=PackageState.UNTRUSTED)

    if allow_untrusted:
        logger.debug("Authentication warning overridden.")
        return False

    descriptions = [a.short_desc for a in untrusted]
    if simulate:
        logger.info(f"Untrusted packages in simulation: {' '.join(descriptions)}")
        return False

    raise UntrustedPackages(descriptions)
