"""Tests for the transaction engine"""

import subprocess
from dataclasses import replace
from types import SimpleNamespace

import pytest

from aptkit.core import fetch as fetch_module
from aptkit.core import transaction as transaction_module
from aptkit.core.conffile import ConfFileResolver
from aptkit.core.config import DEFAULT_INSTALLER_ARGV
from aptkit.core.errors import (
    EssentialPackageRemoval, ErrorKind, FetchFailed, IncompatibleArchitecture,
    InstallerFailed, LockTimeout, NoSpace, RemovalDisabled, TransactionError,
    UntrustedPackages,
)
from aptkit.core.events import PERCENTAGE_INVALID, Status
from aptkit.core.fetch import FetchResult, check_free_space
from aptkit.core.packages import Action, PackageRef, PackageState
from aptkit.core.supervisor import InstallerOutcome
from aptkit.core.trust import Artifact
from aptkit.core.transaction import TransactionEngine

from conftest import (
    FakeFetcher, FakeResolver, FakeSession, candidate, current, lock_is_free, pkg,
)

VIM_LINES = (
    b"pmstatus:vim-common:25:Installing vim-common\n"
    b"pmstatus:vim:50:Installing vim\n"
    b"pmstatus:vim:100:Installed vim\n"
)


def vim_artifacts(cache, trusted=True):
    return [Artifact(candidate(cache, 'vim-common'), 'vim-common', trusted, size=200),
            Artifact(candidate(cache, 'vim'), 'vim', trusted, size=1700)]


@pytest.fixture
def make_engine(cache, transport, config):
    """Build an engine with a fake fetcher and optionally a fake installer."""
    def make(fetcher=None, session=None, config=config):
        fetcher = fetcher or FakeFetcher()
        engine = TransactionEngine(cache, lambda _cache: fetcher, transport, config,
                                   resolver=FakeResolver(cache),
                                   conffile_resolver=ConfFileResolver())
        if session is not None:
            engine.session_factory = lambda: session
        return engine
    return make


def assert_reported_once(transport, kind):
    assert [e[1] for e in transport.of_type('error')] == [kind]
    assert transport.events[-1] == ('finished',)


class TestSimulation:
    """Simulated transactions report what would change."""

    def test_install(self, cache, transport, config, make_engine):
        fetcher = FakeFetcher(vim_artifacts(cache), total=1900, needed=1900)
        engine = make_engine(fetcher)
        result = engine.run_transaction([candidate(cache, 'vim')], [], simulate=True)

        assert result.success and result.simulated
        assert result.plan == {
            PackageRef('vim', '2:9.0.1378-2', 'amd64', 'stable'): Action.INSTALL,
            PackageRef('vim-common', '2:9.0.1378-2', 'amd64', 'stable'): Action.INSTALL,
        }
        assert transport.packages() == [
            (PackageState.INSTALLING, 'vim'), (PackageState.INSTALLING, 'vim-common')]
        assert transport.events[0] == ('status', Status.SETUP)
        assert transport.events[-1] == ('finished',)
        assert not fetcher.ran

    def test_no_lock_taken(self, cache, config, make_engine, tmp_path):
        engine = make_engine()
        engine.run_transaction([candidate(cache, 'vim')], [], simulate=True)
        assert not (tmp_path / 'lock-frontend').exists()

    def test_install_by_id(self, cache, transport, make_engine):
        engine = make_engine()
        result = engine.install_packages(['vim'], simulate=True)
        assert result.simulated
        assert transport.events[:2] == [('status', Status.QUERY), ('status', Status.SETUP)]
        assert ('package', PackageState.INSTALLING, 'vim;2:9.0.1378-2;amd64;stable') \
            in transport.events

    def test_update_by_id(self, cache, transport, make_engine):
        engine = make_engine()
        engine.update_packages(['nano;7.2-2;amd64;stable-updates'], simulate=True)
        assert transport.packages() == [(PackageState.UPDATING, 'nano')]

    def test_remove_with_autoremove(self, cache, transport, make_engine):
        engine = make_engine()
        engine.remove_packages(['foo-utils'], simulate=True, autoremove=True)
        assert transport.packages() == [
            (PackageState.REMOVING, 'foo-utils'),
            (PackageState.REMOVING, 'libfoo1'),
            (PackageState.REMOVING, 'old-tool'),
        ]

    def test_remove_without_autoremove(self, cache, transport, make_engine):
        engine = make_engine()
        engine.remove_packages(['foo-utils'], simulate=True)
        assert transport.packages() == [(PackageState.REMOVING, 'foo-utils')]

    def test_nothing_to_do(self, cache, transport, make_engine):
        engine = make_engine()
        result = engine.run_transaction([current(cache, 'libc6')], [])
        assert result.success and result.nothing_to_do
        assert transport.of_type('error') == []
        assert transport.events[-1] == ('finished',)

    def test_untrusted_reported_in_simulation(self, cache, transport, make_engine):
        engine = make_engine(FakeFetcher(vim_artifacts(cache, trusted=False)))
        result = engine.run_transaction([candidate(cache, 'vim')], [], simulate=True)
        assert result.simulated
        assert (PackageState.UNTRUSTED, 'vim') in transport.packages()


class TestFailures:
    """Every failure is reported exactly once, then finished()."""

    def test_essential_removal(self, cache, transport, make_engine):
        engine = make_engine()
        with pytest.raises(EssentialPackageRemoval):
            engine.run_transaction([], [current(cache, 'dpkg')], simulate=True)
        assert_reported_once(transport, ErrorKind.CANNOT_REMOVE_SYSTEM_PACKAGE)

    def test_essential_removal_not_simulated(self, cache, transport, make_engine):
        fetcher = FakeFetcher()
        engine = make_engine(fetcher)
        with pytest.raises(EssentialPackageRemoval):
            engine.run_transaction([], [current(cache, 'dpkg')])
        assert not fetcher.ran

    def test_untrusted_refused(self, cache, transport, make_engine, config):
        fetcher = FakeFetcher(vim_artifacts(cache, trusted=False))
        engine = make_engine(fetcher)
        with pytest.raises(UntrustedPackages):
            engine.run_transaction([candidate(cache, 'vim')], [])
        assert_reported_once(transport, ErrorKind.CANNOT_INSTALL_REPO_UNSIGNED)
        assert not fetcher.ran
        # lock released
        assert lock_is_free(config.lock_file)

    def test_removal_disabled(self, cache, transport, make_engine, config):
        engine = make_engine(config=replace(config, allow_remove=False))
        with pytest.raises(RemovalDisabled):
            engine.run_transaction([], [current(cache, 'foo-utils')])
        assert_reported_once(transport, ErrorKind.PACKAGE_FAILED_TO_REMOVE)

    def test_fetch_failed(self, cache, transport, make_engine):
        fetcher = FakeFetcher(vim_artifacts(cache), result=FetchResult.FAILED)
        engine = make_engine(fetcher)
        with pytest.raises(FetchFailed):
            engine.run_transaction([candidate(cache, 'vim')], [])
        assert_reported_once(transport, ErrorKind.PACKAGE_DOWNLOAD_FAILED)

    def test_no_space(self, cache, transport, make_engine, monkeypatch):
        monkeypatch.setattr(fetch_module.os, 'statvfs',
                            lambda _path: SimpleNamespace(f_bfree=1, f_frsize=512))
        monkeypatch.setattr(fetch_module, '_filesystem_type', lambda _path: 'ext4')
        engine = make_engine(FakeFetcher(vim_artifacts(cache), needed=4096))
        with pytest.raises(NoSpace):
            engine.run_transaction([candidate(cache, 'vim')], [])
        assert_reported_once(transport, ErrorKind.NO_SPACE_ON_DEVICE)

    def test_lock_timeout(self, cache, transport, make_engine, config, lock_holder):
        holder = lock_holder(config.lock_file)
        engine = make_engine(config=replace(config, lock_timeout=2))
        with pytest.raises(LockTimeout) as exc:
            engine.run_transaction([candidate(cache, 'vim')], [])
        assert exc.value.holder == holder
        assert transport.of_type('status').count(('status', Status.WAITING_FOR_LOCK)) == 1
        assert_reported_once(transport, ErrorKind.CANNOT_GET_LOCK)

    def test_installer_pmerror_not_reported_twice(self, cache, transport, make_engine):
        session = FakeSession([b"pmerror:vim:60:trying to overwrite /usr/bin/vi\n"], 100)
        engine = make_engine(FakeFetcher(vim_artifacts(cache)), session)
        with pytest.raises(InstallerFailed):
            engine.run_transaction([candidate(cache, 'vim')], [])
        assert transport.of_type('error') == [
            ('error', ErrorKind.PACKAGE_FAILED_TO_INSTALL, 'trying to overwrite /usr/bin/vi')]
        assert transport.events[-1] == ('finished',)

    def test_installer_exit_status(self, cache, transport, make_engine):
        session = FakeSession([], 2)
        engine = make_engine(FakeFetcher(vim_artifacts(cache)), session)
        with pytest.raises(InstallerFailed):
            engine.run_transaction([candidate(cache, 'vim')], [])
        assert transport.of_type('error') == [
            ('error', ErrorKind.PACKAGE_FAILED_TO_INSTALL, 'installer exited with status 2')]


class TestRun:
    """Complete runs against a fake installer."""

    def test_install(self, cache, transport, make_engine, config):
        session = FakeSession([VIM_LINES])
        fetcher = FakeFetcher(vim_artifacts(cache), total=1900, needed=1900)
        engine = make_engine(fetcher, session)
        result = engine.run_transaction([candidate(cache, 'vim')], [])

        assert result.success
        assert result.outcome == InstallerOutcome.SUCCESS
        assert fetcher.ran
        assert session.argv == DEFAULT_INSTALLER_ARGV + [
            'vim-common=2:9.0.1378-2', 'vim=2:9.0.1378-2']
        assert [e[1] for e in transport.of_type('status')] == [
            Status.SETUP, Status.DOWNLOAD, Status.RUNNING]
        assert transport.of_type('allow_cancel') == [('allow_cancel', False)]
        assert transport.percentages() == [PERCENTAGE_INVALID, 25, 50, 100]
        assert transport.packages() == [
            (PackageState.INSTALLING, 'vim-common'), (PackageState.FINISHED, 'vim-common'),
            (PackageState.INSTALLING, 'vim'), (PackageState.FINISHED, 'vim')]
        assert transport.events[-1] == ('finished',)
        assert lock_is_free(config.lock_file)

    def test_untrusted_allowed_by_caller(self, cache, transport, make_engine):
        session = FakeSession([VIM_LINES])
        engine = make_engine(FakeFetcher(vim_artifacts(cache, trusted=False)), session)
        result = engine.run_transaction([candidate(cache, 'vim')], [], only_trusted=False)
        assert result.success
        assert (PackageState.UNTRUSTED, 'vim') in transport.packages()

    def test_untrusted_allowed_by_config(self, cache, transport, make_engine, config):
        session = FakeSession([VIM_LINES])
        engine = make_engine(FakeFetcher(vim_artifacts(cache, trusted=False)), session,
                             config=replace(config, allow_unauthenticated=True))
        assert engine.run_transaction([candidate(cache, 'vim')], []).success

    def test_cancel_during_download(self, cache, transport, make_engine):
        session = FakeSession([VIM_LINES])
        fetcher = FakeFetcher(vim_artifacts(cache), result=FetchResult.CANCELLED)
        engine = make_engine(fetcher, session)
        fetcher.on_run = engine.cancel

        result = engine.run_transaction([candidate(cache, 'vim')], [])
        assert result.cancelled and not result.success
        assert session.argv is None
        assert ('status', Status.CANCEL) in transport.events
        assert transport.of_type('error') == []
        assert transport.of_type('allow_cancel') == []

    def test_cancel_once(self, transport, make_engine):
        engine = make_engine()
        assert engine.cancel() is True
        assert engine.cancel() is False
        assert transport.of_type('status') == [('status', Status.CANCEL)]

    def test_removal_with_shell_installer(self, cache, transport, make_engine, config):
        script = ('for target in "$@"; do '
                  'name=${target%?}; '
                  'echo "pmstatus:$name:50:Removing $name" >> /proc/self/fd/{status_fd}; '
                  'echo "pmstatus:$name:100:Removed $name" >> /proc/self/fd/{status_fd}; '
                  'done')
        config = replace(config, installer_argv=['/bin/sh', '-c', script, 'installer'])
        engine = make_engine(config=config)
        engine.session_factory = transaction_module.InstallerSession

        result = engine.run_transaction([], [current(cache, 'foo-utils')])
        assert result.outcome == InstallerOutcome.SUCCESS
        assert transport.packages() == [
            (PackageState.REMOVING, 'foo-utils'), (PackageState.FINISHED, 'foo-utils')]


NANO_LINES = (
    b"pmstatus:nano:50:Installing nano\n"
    b"pmstatus:nano:100:Installed nano\n"
)


class TestRepeatedRuns:
    """One engine, several transactions: nothing carries over."""

    def test_second_run_starts_clean(self, cache, transport, make_engine):
        engine = make_engine(FakeFetcher(vim_artifacts(cache)), FakeSession([VIM_LINES]))
        assert engine.run_transaction([candidate(cache, 'vim')], []).success

        second = FakeSession([NANO_LINES])
        engine.session_factory = lambda: second
        transport.events.clear()
        result = engine.install_packages(['nano;7.2-2;amd64;stable-updates'])

        assert result.success
        assert second.argv == DEFAULT_INSTALLER_ARGV + ['nano=7.2-2']
        assert result.plan == {
            PackageRef('nano', '7.2-2', 'amd64', 'stable-updates'): Action.UPGRADE}
        assert transport.packages() == [
            (PackageState.INSTALLING, 'nano'), (PackageState.FINISHED, 'nano')]

    def test_cancel_does_not_carry_over(self, cache, transport, make_engine):
        session = FakeSession([NANO_LINES])
        fetcher = FakeFetcher(result=FetchResult.CANCELLED)
        engine = make_engine(fetcher, session)
        fetcher.on_run = engine.cancel
        assert engine.run_transaction([candidate(cache, 'vim')], []).cancelled
        assert session.argv is None

        fetcher.on_run = None
        fetcher.result = FetchResult.CONTINUE
        result = engine.run_transaction([candidate(cache, 'nano')], [])
        assert result.success and not result.cancelled
        assert session.argv == DEFAULT_INSTALLER_ARGV + ['nano=7.2-2']

    def test_resolver_flags_reset(self, cache, make_engine):
        engine = make_engine()
        engine.run_transaction([candidate(cache, 'vim')], [], simulate=True)
        assert pkg(cache, 'vim') in engine.resolver.protected

        engine.run_transaction([candidate(cache, 'nano')], [], simulate=True)
        assert pkg(cache, 'vim') not in engine.resolver.protected
        assert engine.resolver.protected == {pkg(cache, 'nano')}

    def test_marks_reset_after_failure(self, cache, transport, make_engine):
        engine = make_engine()
        with pytest.raises(EssentialPackageRemoval):
            engine.run_transaction([], [current(cache, 'dpkg')], simulate=True)

        result = engine.run_transaction([candidate(cache, 'vim')], [], simulate=True)
        assert set(ref.name for ref in result.plan) == {'vim', 'vim-common'}


DEB_FIELDS_OUTPUT = (
    "Package: hello\n"
    "Version: 2.10-3\n"
    "Architecture: {arch}\n"
    "Description: example package based on GNU hello\n"
    " The GNU hello program produces a familiar, friendly greeting.\n"
)


@pytest.fixture
def fake_dpkg(monkeypatch):
    """Replace dpkg-deb and dpkg with canned results."""
    calls = []
    behaviour = {'arch': 'amd64', 'deb_rc': 0, 'dpkg_rc': 0, 'dpkg_stdout': ''}

    def run(argv, **kwargs):
        calls.append(argv)
        if argv[0] == transaction_module.DPKG_DEB:
            return subprocess.CompletedProcess(
                argv, behaviour['deb_rc'],
                stdout=DEB_FIELDS_OUTPUT.format(arch=behaviour['arch']), stderr='')
        return subprocess.CompletedProcess(
            argv, behaviour['dpkg_rc'], stdout=behaviour['dpkg_stdout'],
            stderr='dpkg: error processing archive')

    monkeypatch.setattr(transaction_module.subprocess, 'run', run)
    return SimpleNamespace(calls=calls, behaviour=behaviour)


class TestInstallFile:
    """Local .deb installation."""

    def test_install(self, transport, make_engine, fake_dpkg):
        result = make_engine().install_file('/tmp/hello.deb')
        assert result.success
        assert fake_dpkg.calls[-1] == [transaction_module.DPKG, '-i', '/tmp/hello.deb']
        assert transport.events == [
            ('package', PackageState.INSTALLING, 'hello;2.10-3;amd64;local'),
            ('package', PackageState.INSTALLED, 'hello;2.10-3;amd64;local'),
            ('finished',),
        ]

    def test_simulate(self, transport, make_engine, fake_dpkg):
        result = make_engine().install_file('/tmp/hello.deb', simulate=True)
        assert result.simulated
        assert len(fake_dpkg.calls) == 1
        assert transport.packages() == [(PackageState.INSTALLING, 'hello')]

    def test_arch_all(self, make_engine, fake_dpkg):
        fake_dpkg.behaviour['arch'] = 'all'
        assert make_engine().install_file('/tmp/hello.deb').success

    @pytest.mark.parametrize("simulate", [False, True])
    def test_wrong_arch(self, transport, make_engine, fake_dpkg, simulate):
        fake_dpkg.behaviour['arch'] = 'arm64'
        with pytest.raises(IncompatibleArchitecture) as exc:
            make_engine().install_file('/tmp/hello.deb', simulate=simulate)
        assert exc.value.found == 'arm64'
        assert_reported_once(transport, ErrorKind.INCOMPATIBLE_ARCHITECTURE)

    def test_invalid_deb(self, transport, make_engine, fake_dpkg):
        fake_dpkg.behaviour['deb_rc'] = 2
        with pytest.raises(TransactionError) as exc:
            make_engine().install_file('/tmp/hello.deb')
        assert exc.value.message == "DEB package is invalid!"

    def test_dpkg_failure(self, transport, make_engine, fake_dpkg):
        fake_dpkg.behaviour['dpkg_rc'] = 1
        fake_dpkg.behaviour['dpkg_stdout'] = 'Errors were encountered while processing'
        with pytest.raises(TransactionError) as exc:
            make_engine().install_file('/tmp/hello.deb')
        assert exc.value.message == 'Errors were encountered while processing'
        assert_reported_once(transport, ErrorKind.TRANSACTION_ERROR)

    def test_dpkg_failure_uses_stderr(self, make_engine, fake_dpkg):
        fake_dpkg.behaviour['dpkg_rc'] = 1
        with pytest.raises(TransactionError) as exc:
            make_engine().install_file('/tmp/hello.deb')
        assert exc.value.message == 'dpkg: error processing archive'


class TestFreeSpace:

    def test_enough_space(self, tmp_path):
        check_free_space(tmp_path, 1)

    def test_nothing_needed(self):
        # statvfs is not even consulted
        check_free_space('/nonexistent', 0)

    def test_missing_directory(self, tmp_path):
        with pytest.raises(TransactionError):
            check_free_space(tmp_path / 'missing', 10)

    def test_ramfs_exempt(self, tmp_path, monkeypatch):
        monkeypatch.setattr(fetch_module.os, 'statvfs',
                            lambda _path: SimpleNamespace(f_bfree=0, f_frsize=4096))
        monkeypatch.setattr(fetch_module, '_filesystem_type', lambda _path: 'ramfs')
        check_free_space(tmp_path, 10 ** 9)

    def test_filesystem_type_from_mounts(self, tmp_path, monkeypatch):
        mounts = tmp_path / 'mounts'
        mounts.write_text(
            "/dev/sda1 / ext4 rw 0 0\n"
            "none /srv/cache ramfs rw 0 0\n")
        monkeypatch.setattr(fetch_module, 'PROC_MOUNTS', str(mounts))
        assert fetch_module._filesystem_type('/srv/cache/archives') == 'ramfs'
        assert fetch_module._filesystem_type('/srv/cachex') == 'ext4'
