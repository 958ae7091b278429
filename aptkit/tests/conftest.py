"""Shared fixtures: a small Debian-like cache and recording doubles."""

import fcntl
import os
import signal
from pathlib import Path
from typing import List

import pytest

from aptkit.core.cache import DepCache, DepType, Dependency
from aptkit.core.config import EngineConfig
from aptkit.core.events import Transport
from aptkit.core.fetch import Fetcher, FetchResult
from aptkit.core.lock import InstallLock
from aptkit.core.resolution import ProblemResolver


def build_cache() -> DepCache:
    """amd64 cache with a handful of installed and available packages.

    installed: libc6, dpkg (essential), nano (upgradable), old-tool (auto,
               unused), libfoo (auto, needed by foo-utils), foo-utils
    available: vim + vim-common, nano 7.2-2, multi-arch libbar
    """
    cache = DepCache(native_arch='amd64')

    libc6 = cache.add_package('libc6')
    cache.add_version(libc6, '2.36-9', archive='stable', summary='GNU C Library',
                      installed=True, size=2800)

    dpkg = cache.add_package('dpkg', essential=True)
    cache.add_version(dpkg, '1.21.22', archive='stable', summary='Debian package manager',
                      depends=[Dependency('libc6', DepType.PRE_DEPENDS, '>=', '2.34')],
                      installed=True, size=1500)

    vim_common = cache.add_package('vim-common')
    cache.add_version(vim_common, '2:9.0.1378-2', archive='stable',
                      summary='Vi IMproved - Common files', size=200)

    vim = cache.add_package('vim')
    cache.add_version(vim, '2:9.0.1378-2', archive='stable', summary='Vi IMproved',
                      depends=[Dependency('vim-common', DepType.DEPENDS, '=', '2:9.0.1378-2'),
                               Dependency('libc6', DepType.DEPENDS, '>=', '2.34')],
                      provides=['editor'], size=1700)

    nano = cache.add_package('nano')
    cache.add_version(nano, '7.2-1', archive='stable', summary='small editor',
                      provides=['editor'], installed=True, size=680)
    cache.add_version(nano, '7.2-2', archive='stable-updates', summary='small editor',
                      provides=['editor'], size=690)

    old = cache.add_package('old-tool', auto=True)
    cache.add_version(old, '1.0-1', archive='stable', summary='unused helper',
                      installed=True, size=10)

    libfoo = cache.add_package('libfoo1', auto=True)
    cache.add_version(libfoo, '1.2-1', archive='stable', summary='foo library',
                      installed=True, size=50)

    foo = cache.add_package('foo-utils')
    cache.add_version(foo, '1.2-1', archive='stable', summary='foo utilities',
                      depends=[Dependency('libfoo1')], installed=True, size=70)

    for arch in ('amd64', 'i386'):
        libbar = cache.add_package('libbar0', arch=arch)
        cache.add_version(libbar, '0.9-3', archive='stable', summary='bar library',
                          size=40)

    return cache


@pytest.fixture
def cache():
    """Fresh test cache, see build_cache()."""
    return build_cache()


@pytest.fixture
def config(tmp_path):
    """Engine configuration pointing at temporary paths."""
    archives = tmp_path / 'archives'
    archives.mkdir()
    return EngineConfig(
        lock_file=str(tmp_path / 'lock-frontend'),
        archives_dir=str(archives),
        conffile_helper=str(tmp_path / 'conffile-helper'),
        native_arch='amd64',
        lock_timeout=0,
        lock_retry_interval=0.01,
        poll_interval=0.001,
        startup_interval=0.001,
    )


def pkg(cache: DepCache, name: str, arch: str = None) -> int:
    """Package index by name."""
    index = cache.find_package(name, arch)
    assert index is not None, name
    return index


def candidate(cache: DepCache, name: str) -> int:
    return cache.candidate(pkg(cache, name))


def current(cache: DepCache, name: str) -> int:
    return cache.current(pkg(cache, name))


class RecordingTransport(Transport):
    """Transport keeping every event in order."""

    def __init__(self):
        self.events = []

    def package(self, state, package_id, summary):
        self.events.append(('package', state, package_id))

    def percentage(self, value):
        self.events.append(('percentage', value))

    def sub_percentage(self, value):
        self.events.append(('sub_percentage', value))

    def status(self, status):
        self.events.append(('status', status))

    def error(self, kind, message):
        self.events.append(('error', kind, message))

    def message(self, kind, text):
        self.events.append(('message', kind, text))

    def allow_cancel(self, allowed):
        self.events.append(('allow_cancel', allowed))

    def finished(self):
        self.events.append(('finished',))

    def of_type(self, event_type: str) -> list:
        return [e for e in self.events if e[0] == event_type]

    def packages(self) -> list:
        """(state, name) of every package event."""
        return [(e[1], e[2].split(';')[0]) for e in self.of_type('package')]

    def percentages(self) -> List[int]:
        return [e[1] for e in self.of_type('percentage')]

    def sub_percentages(self) -> List[int]:
        return [e[1] for e in self.of_type('sub_percentage')]


@pytest.fixture
def transport():
    return RecordingTransport()


class FakeResolver(ProblemResolver):
    """Resolver that leaves the marks alone."""

    def __init__(self, cache, result: bool = True):
        super().__init__(cache)
        self.result = result
        self.calls = []

    def resolve(self, broken_fix: bool = False) -> bool:
        self.calls.append(broken_fix)
        return self.result


class FakeFetcher(Fetcher):
    """Fetcher with canned artifacts and result."""

    def __init__(self, artifacts=None, total=0, needed=0, partial=0,
                 result: FetchResult = FetchResult.CONTINUE, on_run=None):
        self._artifacts = list(artifacts or [])
        self.total = total
        self.needed = needed
        self.partial = partial
        self.result = result
        self.on_run = on_run
        self.ran = False

    def artifacts(self):
        return list(self._artifacts)

    def total_needed(self):
        return self.total

    def fetch_needed(self):
        return self.needed

    def partial_present(self):
        return self.partial

    def run(self):
        self.ran = True
        if self.on_run:
            self.on_run()
        return self.result


class FakeSession:
    """Installer session replaying canned status chunks."""

    def __init__(self, chunks=(), returncode=0):
        self.chunks = list(chunks)
        self.returncode = returncode
        self.argv = None
        self.env = None
        self.written = []
        self.signals = []
        self.closed = False

    def spawn(self, argv, env=None):
        self.argv = argv
        self.env = env

    def drain_terminal(self):
        pass

    def read_status(self):
        return self.chunks.pop(0) if self.chunks else b""

    def write_terminal(self, data):
        self.written.append(data)
        return True

    def poll(self):
        return None if self.chunks else self.returncode

    def terminate(self, sig=signal.SIGTERM):
        self.signals.append(sig)

    def close(self):
        self.closed = True


@pytest.fixture
def lock_holder():
    """Hold a record lock on a file from a forked process, as apt does.

    Record locks never conflict inside one process, so the holder has to
    be another one. Returns the holder's PID.
    """
    children = []

    def hold(path) -> int:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        ready_r, ready_w = os.pipe()
        done_r, done_w = os.pipe()
        pid = os.fork()
        if pid == 0:
            try:
                os.close(ready_r)
                os.close(done_w)
                fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o640)
                fcntl.lockf(fd, fcntl.LOCK_EX)
                os.write(ready_w, b'1')
                # hold until the parent closes its end
                os.read(done_r, 1)
            finally:
                os._exit(0)

        os.close(ready_w)
        os.close(done_r)
        os.read(ready_r, 1)
        os.close(ready_r)
        children.append((pid, done_w))
        return pid

    yield hold
    for pid, done_w in children:
        os.close(done_w)
        os.waitpid(pid, 0)


def lock_is_free(path) -> bool:
    """Whether another process could take the lock right now."""
    pid = os.fork()
    if pid == 0:
        free = False
        try:
            free = InstallLock(path).try_acquire()
        finally:
            os._exit(0 if free else 1)
    _, status = os.waitpid(pid, 0)
    return os.WIFEXITED(status) and os.WEXITSTATUS(status) == 0
