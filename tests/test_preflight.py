"""Tests for preflight module."""

from unittest import mock

import pytest

from cachyprox.exceptions import HostEnvironmentError
from cachyprox.preflight import is_local_cli, run_preflight
from cachyprox.resource_store import LocalCommandRunner, QmResourceStore, SshCommandRunner


@pytest.fixture
def local_store():
    store = QmResourceStore(LocalCommandRunner())
    store.ping = mock.Mock()
    return store


def test_is_local_cli(local_store, fake_store):
    assert is_local_cli(local_store)
    assert not is_local_cli(QmResourceStore(SshCommandRunner("pve", key_path="/tmp/key")))
    assert not is_local_cli(fake_store)


@mock.patch("cachyprox.preflight.shutil.which", return_value="/usr/sbin/qm")
@mock.patch("cachyprox.preflight.os.geteuid", return_value=0)
def test_preflight_passes(mock_euid, mock_which, local_store):
    run_preflight(local_store)

    assert mock_which.call_count == 3
    local_store.ping.assert_called_once()


@mock.patch("cachyprox.preflight.os.geteuid", return_value=1000)
def test_preflight_requires_root(mock_euid, local_store):
    with pytest.raises(HostEnvironmentError, match="Root privileges required"):
        run_preflight(local_store)
    local_store.ping.assert_not_called()


@mock.patch("cachyprox.preflight.os.geteuid", return_value=0)
def test_preflight_missing_command(mock_euid, local_store):
    """Test the first missing tool is named in the error."""
    with mock.patch("cachyprox.preflight.shutil.which", side_effect=lambda c: None if c == "pvesm" else f"/usr/sbin/{c}"):
        with pytest.raises(HostEnvironmentError, match="Required command not found: pvesm"):
            run_preflight(local_store)


@mock.patch("cachyprox.preflight.os.geteuid", return_value=1000)
def test_preflight_remote_store_only_pings(mock_euid, fake_store):
    """Test remote backends skip local privilege and tooling checks."""
    run_preflight(fake_store)

    fake_store.fail_on.add("ping")
    with pytest.raises(HostEnvironmentError, match="qm command failed"):
        run_preflight(fake_store)
