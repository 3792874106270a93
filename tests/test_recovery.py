"""Tests for recovery module."""

import signal
from unittest import mock

import pytest

from cachyprox.recovery import FailureRecovery, RecoveryOutcome


@pytest.fixture
def recovery(fake_store):
    return FailureRecovery(fake_store, wait_seconds=2.0, sleep=mock.Mock())


def test_compensate_destroys_partial_vm(recovery, fake_store):
    """Test a half-built VM is stopped, given time to settle and destroyed."""
    fake_store.add_vm(111)
    recovery.allocate(111)

    assert recovery.compensate() is RecoveryOutcome.CLEANED
    assert fake_store.vms == {}
    assert [c[0] for c in fake_store.calls] == ["stop", "destroy"]
    recovery.sleep.assert_called_once_with(2.0)


def test_compensate_runs_once(recovery, fake_store):
    fake_store.add_vm(111)
    recovery.allocate(111)

    recovery.compensate()
    recovery.compensate()

    assert recovery.attempted
    assert [c[0] for c in fake_store.calls] == ["stop", "destroy"]


def test_compensate_vm_never_created(recovery, fake_store):
    recovery.allocate(111)

    assert recovery.compensate() is RecoveryOutcome.NOT_FOUND
    assert fake_store.calls == []


def test_compensate_skipped_when_ready(recovery, fake_store):
    fake_store.add_vm(111)
    recovery.allocate(111)
    recovery.mark_ready()

    assert recovery.compensate() is RecoveryOutcome.NOT_NEEDED
    assert 111 in fake_store.vms


def test_compensate_without_identity(recovery, fake_store):
    assert recovery.compensate() is RecoveryOutcome.NOT_NEEDED
    assert not recovery.attempted


def test_compensate_ignores_stop_failure(recovery, fake_store):
    fake_store.add_vm(111)
    fake_store.fail_on.add("stop")
    recovery.allocate(111)

    assert recovery.compensate() is RecoveryOutcome.CLEANED
    assert fake_store.vms == {}


def test_compensate_destroy_failure_does_not_raise(recovery, fake_store):
    """Test a failing destroy is reported, not raised."""
    fake_store.add_vm(111)
    fake_store.fail_on.add("destroy")
    recovery.allocate(111)

    assert recovery.compensate() is RecoveryOutcome.FAILED
    assert 111 in fake_store.vms


@pytest.mark.parametrize("error", [RuntimeError("boom"), KeyboardInterrupt()])
def test_context_manager_compensates_and_propagates(recovery, fake_store, error):
    """Test any exception leaving the block triggers cleanup and is re-raised."""
    fake_store.add_vm(111)

    with pytest.raises(type(error)):
        with recovery:
            recovery.allocate(111)
            raise error

    assert recovery.outcome is RecoveryOutcome.CLEANED
    assert fake_store.vms == {}


def test_context_manager_no_exception(recovery, fake_store):
    fake_store.add_vm(111)

    with recovery:
        recovery.allocate(111)

    assert not recovery.attempted
    assert 111 in fake_store.vms


def test_second_interrupt_during_wait_still_destroys(fake_store):
    """Test a repeated Ctrl-C during cleanup does not leave the VM behind."""
    recovery = FailureRecovery(fake_store, sleep=mock.Mock(side_effect=KeyboardInterrupt))
    fake_store.add_vm(111)
    recovery.allocate(111)

    assert recovery.compensate() is RecoveryOutcome.CLEANED
    assert fake_store.vms == {}


def test_interrupt_during_destroy_is_reported(recovery, fake_store):
    fake_store.add_vm(111)
    recovery.allocate(111)

    with mock.patch.object(fake_store, "destroy_vm", side_effect=KeyboardInterrupt):
        assert recovery.compensate() is RecoveryOutcome.FAILED


def test_signals_ignored_during_cleanup(recovery, fake_store):
    """Test SIGINT and SIGTERM are ignored while compensating and restored afterwards."""
    previous = {signum: signal.getsignal(signum) for signum in (signal.SIGINT, signal.SIGTERM)}
    seen = {}

    def destroy(vmid):
        seen.update({signum: signal.getsignal(signum) for signum in previous})
        del fake_store.vms[vmid]

    fake_store.add_vm(111)
    recovery.allocate(111)
    with mock.patch.object(fake_store, "destroy_vm", side_effect=destroy):
        recovery.compensate()

    assert seen == {signal.SIGINT: signal.SIG_IGN, signal.SIGTERM: signal.SIG_IGN}
    assert {signum: signal.getsignal(signum) for signum in previous} == previous
