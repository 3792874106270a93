"""Tests for the cachyprox CLI."""

from pathlib import Path
from unittest import mock

import pytest
from typer.testing import CliRunner

from cachyprox.cli import app
from cachyprox.config import Config
from cachyprox.exceptions import FetchError, FetchErrorKind, HostEnvironmentError, Interrupted

ISO_PATH = Path("/var/lib/vz/template/iso/cachyos-desktop-linux-251129.iso")
CREATE_ARGS = [
    "create", "--vmid", "111", "--name", "cachy", "--storage", "local-lvm",
    "--bridge", "vmbr0", "--iso-storage", "local", "--firmware", "1", "--disk-size", "32G",
]

runner = CliRunner()


@pytest.fixture
def fetcher():
    fetcher = mock.Mock()
    fetcher.fetch.return_value = ISO_PATH
    return fetcher


@pytest.fixture
def cli_env(fake_store, fetcher):
    """Patch the host, the ISO download and log file for CLI runs."""
    with mock.patch("cachyprox.cli.build_store", return_value=fake_store), \
         mock.patch("cachyprox.cli.ArtifactFetcher", return_value=fetcher), \
         mock.patch("cachyprox.cli.run_preflight") as mock_preflight, \
         mock.patch("cachyprox.cli.configure_logging"), \
         mock.patch.object(Config, "LOG_FILE", ""), \
         mock.patch.object(Config, "REAP_WAIT_SECONDS", 0):
        yield mock_preflight


def test_create_success(cli_env, fake_store):
    result = runner.invoke(app, CREATE_ARGS + ["--yes"])

    assert result.exit_code == 0
    assert "created successfully" in result.output
    assert "qm start 111" in result.output
    assert fake_store.vms[111]["boot"] == "order=ide1;scsi0"
    cli_env.assert_called_once_with(fake_store)


def test_create_confirmation_declined(cli_env, fake_store, fetcher):
    result = runner.invoke(app, CREATE_ARGS, input="n\n")

    assert result.exit_code == 0
    assert "nothing was changed" in result.output
    assert fake_store.vms == {}
    fetcher.fetch.assert_not_called()


def test_create_invalid_input(cli_env, fake_store):
    result = runner.invoke(app, CREATE_ARGS + ["--yes", "--cores", "0"])

    assert result.exit_code == 3
    assert "Invalid cores" in result.output
    assert fake_store.vms == {}


def test_create_step_failure_cleans_up(cli_env, fake_store):
    """Test a failed step exits 5 and reports the cleanup."""
    fake_store.fail_on.add("disk")

    result = runner.invoke(app, CREATE_ARGS + ["--yes"])

    assert result.exit_code == 5
    assert "step 'disk'" in result.output
    assert "stopped and destroyed" in result.output
    assert fake_store.vms == {}


def test_create_preflight_failure(cli_env, fake_store):
    cli_env.side_effect = HostEnvironmentError("Root privileges required")

    result = runner.invoke(app, CREATE_ARGS + ["--yes"])

    assert result.exit_code == 2
    assert "Root privileges required" in result.output


def test_create_skip_preflight(cli_env, fake_store):
    result = runner.invoke(app, CREATE_ARGS + ["--yes", "--skip-preflight"])

    assert result.exit_code == 0
    cli_env.assert_not_called()


def test_create_fetch_failure(cli_env, fake_store, fetcher):
    fetcher.fetch.side_effect = FetchError(FetchErrorKind.NETWORK_FAILURE, "Failed to download")

    result = runner.invoke(app, CREATE_ARGS + ["--yes"])

    assert result.exit_code == 4
    assert fake_store.vms == {}


def test_create_interrupted(cli_env, fake_store):
    with mock.patch.object(fake_store, "set_boot_order", side_effect=KeyboardInterrupt):
        result = runner.invoke(app, CREATE_ARGS + ["--yes"])

    assert result.exit_code == 130
    assert fake_store.vms == {}


def test_create_from_profile(cli_env, fake_store, tmp_path):
    """Test settings are read from a YAML profile."""
    profile = tmp_path / "vm.yaml"
    profile.write_text(
        "vmid: 222\nname: profiled\nstorage: local-lvm\nbridge: vmbr1\niso_storage: local\n"
        "firmware: 2\ncloud_init: false\ndisk_size: 64G\n"
    )

    result = runner.invoke(app, ["create", "--profile", str(profile), "--yes"])

    assert result.exit_code == 0
    vm = fake_store.vms[222]
    assert vm["bios"] == "seabios"
    assert "efidisk0" not in vm
    assert vm["net0"] == "virtio,bridge=vmbr1"


def test_validate_does_not_mutate(cli_env, fake_store):
    result = runner.invoke(app, ["validate", "--vmid", "150", "--storage", "local-lvm", "--firmware", "1"])

    assert "Configuration is valid" in result.output
    assert fake_store.calls == []


def test_validate_reports_storage(cli_env, fake_store):
    result = runner.invoke(app, ["validate", "--vmid", "150", "--storage", "tank"])

    assert result.exit_code == 3
    assert "tank" in result.output
    assert "lvmthin" in result.output


def test_pools(cli_env):
    result = runner.invoke(app, ["pools"])

    assert result.exit_code == 0
    assert "local-lvm" in result.output
    assert "lvmthin" in result.output


def test_fetch_command(cli_env, fetcher):
    result = runner.invoke(app, ["fetch"])

    assert result.exit_code == 0
    assert "ISO ready" in result.output


def test_fetch_command_interrupted(cli_env, fetcher):
    fetcher.fetch.side_effect = KeyboardInterrupt

    result = runner.invoke(app, ["fetch"])

    assert result.exit_code == 130


def test_get_store_failure():
    with mock.patch("cachyprox.cli.build_store", side_effect=HostEnvironmentError("Unknown BACKEND 'x'")), \
         mock.patch("cachyprox.cli.configure_logging"):
        result = runner.invoke(app, ["pools"])

    assert result.exit_code == 2
    assert "Unknown BACKEND" in result.output


def test_create_parallel_fetch_asks_for_confirmation(cli_env, fake_store, fetcher):
    """Test the summary and prompt are shown after the concurrent resolve and fetch."""
    result = runner.invoke(app, CREATE_ARGS + ["--parallel-fetch"], input="n\n")

    assert result.exit_code == 0
    assert "VM Configuration" in result.output
    assert "nothing was changed" in result.output
    assert fake_store.vms == {}
    fetcher.fetch.assert_called_once()


def test_create_parallel_fetch(cli_env, fake_store, fetcher):
    result = runner.invoke(app, CREATE_ARGS + ["--parallel-fetch", "--yes"])

    assert result.exit_code == 0
    assert fake_store.vms[111]["ide1"] == f"{ISO_PATH},media=cdrom"
    fetcher.fetch.assert_called_once()


def test_create_sigterm_during_step(cli_env, fake_store):
    """Test a termination signal inside a step exits 130 and removes the VM."""
    with mock.patch.object(fake_store, "attach_disk", side_effect=Interrupted("Script interrupted (SIGTERM)")):
        result = runner.invoke(app, CREATE_ARGS + ["--yes"])

    assert result.exit_code == 130
    assert "stopped and destroyed" in result.output
    assert fake_store.vms == {}


@pytest.mark.parametrize(
    "args,field",
    [(["--cores", "0"], "cores"), (["--bridge", "vmbr9"], "bridge"), (["--disk-size", "32"], "disk_size")],
)
def test_validate_checks_every_field(cli_env, fake_store, args, field):
    """Test validate accepts the same field options as create."""
    result = runner.invoke(app, ["validate", "--vmid", "150"] + args)

    assert result.exit_code == 3
    assert f"Invalid {field}" in result.output
    assert fake_store.calls == []
