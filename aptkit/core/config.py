"""
Central configuration for aptkit.

Lookup order for the configuration file:
    1. $APTKIT_CONFIG if set
    2. .aptkit.local in the project root (parent of bin/) → DEV tree
    3. /etc/aptkit/aptkit.conf (system installation)

Missing files are not an error: every setting has a default.

File format (one setting per line):
    allow_unauthenticated=false
    frontend_socket=/run/debconf.sock
    terminal_timeout=120
    # Comments start with #
"""

import logging
import os
import platform
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

# Config file names
LOCAL_CONFIG_FILE = ".aptkit.local"
DEFAULT_CONFIG_FILE = Path("/etc/aptkit/aptkit.conf")
CONFIG_ENV = "APTKIT_CONFIG"

# Helper asked to resolve conffile conflicts (exit 10 = new, 20 = keep)
CONFFILE_HELPER = Path("/usr/share/aptkit/helpers/conffile")

# dpkg frontend lock, same file apt and dpkg honour
LOCK_FILE = Path("/var/lib/dpkg/lock-frontend")
ARCHIVES_DIR = Path("/var/cache/apt/archives")

DEFAULT_TERMINAL_TIMEOUT = 120  # seconds without a status line before warning
DEFAULT_LOCK_TIMEOUT = 10  # lock attempts, one per retry interval
DEFAULT_LOCK_RETRY_INTERVAL = 1.0
DEFAULT_POLL_INTERVAL = 0.005
DEFAULT_STARTUP_INTERVAL = 0.1

# PATH given to the installer, the caller environment may be minimal
INSTALLER_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

# {status_fd} is replaced by the child's end of the status pipe
DEFAULT_INSTALLER_ARGV = [
    "apt-get", "-y", "--no-download",
    "-o", "APT::Status-Fd={status_fd}",
    "-o", "Dpkg::Use-Pty=0",
    "install",
]

_ARCH_MAP = {
    'x86_64': 'amd64',
    'aarch64': 'arm64',
    'armv7l': 'armhf',
    'i686': 'i386',
    'i386': 'i386',
    'ppc64le': 'ppc64el',
    's390x': 's390x',
    'riscv64': 'riscv64',
}

_cached_config: Optional['EngineConfig'] = None


def get_native_arch() -> str:
    """Debian architecture name of the running machine."""
    machine = platform.machine()
    return _ARCH_MAP.get(machine, machine)


@dataclass
class EngineConfig:
    """Settings for one TransactionEngine."""
    allow_unauthenticated: bool = False
    autoremove: bool = False
    allow_remove: bool = True
    purge: bool = False
    reinstall: bool = False
    frontend_socket: Optional[str] = None
    locale: Optional[str] = None
    terminal_timeout: int = DEFAULT_TERMINAL_TIMEOUT
    lock_timeout: int = DEFAULT_LOCK_TIMEOUT
    lock_retry_interval: float = DEFAULT_LOCK_RETRY_INTERVAL
    poll_interval: float = DEFAULT_POLL_INTERVAL
    startup_interval: float = DEFAULT_STARTUP_INTERVAL
    conffile_helper: str = str(CONFFILE_HELPER)
    archives_dir: str = str(ARCHIVES_DIR)
    lock_file: str = str(LOCK_FILE)
    native_arch: str = field(default_factory=get_native_arch)
    installer_argv: List[str] = field(
        default_factory=lambda: list(DEFAULT_INSTALLER_ARGV))


def _coerce(raw: str, default):
    """Convert a raw string to the type of the field's default value."""
    if isinstance(default, bool):
        value = raw.lower()
        if value in ('1', 'true', 'yes', 'on'):
            return True
        if value in ('0', 'false', 'no', 'off'):
            return False
        raise ValueError(f"not a boolean: {raw}")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    if isinstance(default, list):
        return raw.split()
    # Optional[str] settings: empty means unset
    return raw or None


def _get_project_root() -> Optional[Path]:
    """Find project root when running from ./bin/ of a dev tree."""
    if sys.argv and sys.argv[0]:
        script_path = Path(sys.argv[0]).resolve()
        if script_path.parent.name == 'bin':
            return script_path.parent.parent
    return None


def _find_config_file() -> Optional[Path]:
    env_path = os.environ.get(CONFIG_ENV)
    if env_path:
        return Path(env_path)

    project_root = _get_project_root()
    if project_root and (project_root / LOCAL_CONFIG_FILE).exists():
        return project_root / LOCAL_CONFIG_FILE

    if DEFAULT_CONFIG_FILE.exists():
        return DEFAULT_CONFIG_FILE
    return None


def _read_config_file(path: Path) -> dict:
    """Read key=value settings. Returns an empty dict if unreadable."""
    values = {}
    try:
        with open(path) as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith('#'):
                    continue
                if '=' in line:
                    key, value = line.split('=', 1)
                    values[key.strip()] = value.strip()
    except (OSError, IOError) as e:
        logger.debug(f"Cannot read config {path}: {e}")
    return values


def load_config(path: Path = None) -> EngineConfig:
    """Build an EngineConfig from a settings file.

    Args:
        path: Settings file (default: auto-detected, see module docstring)

    Returns:
        EngineConfig, with defaults for anything not set
    """
    config = EngineConfig()
    if path is None:
        path = _find_config_file()
    if path is None:
        return config

    known = {f.name for f in fields(EngineConfig)}
    for key, raw in _read_config_file(Path(path)).items():
        if key not in known:
            logger.warning(f"Ignoring unknown setting '{key}' in {path}")
            continue
        try:
            setattr(config, key, _coerce(raw, getattr(config, key)))
        except ValueError as e:
            logger.warning(f"Ignoring invalid value for '{key}' in {path}: {e}")
    return config


def get_config() -> EngineConfig:
    """Get the process-wide configuration (loaded once)."""
    global _cached_config
    if _cached_config is None:
        _cached_config = load_config()
    return _cached_config


def reset_config_cache():
    """Forget the cached configuration (used by tests)."""
    global _cached_config
    _cached_config = None
