"""Verification failures are reported, not raised."""

from eth_utils import to_checksum_address

from nil_proxy.deployment import DeploymentReport, deploy_transparent_proxy
from nil_proxy.testing import PROXY_ABI, PROXY_ADMIN_ABI
from nil_proxy.verification import VerificationCheck, run_check


def test_check_compares_addresses_case_insensitive():
    check = VerificationCheck(
        name="admin",
        expected=to_checksum_address("0x000187c2e5ae0e5e9e1e0aa0e0e0e0e0e0e0e0e0"),
        actual="0x000187c2e5ae0e5e9e1e0aa0e0e0e0e0e0e0e0e0",
    )
    assert check.passed


def test_run_check_captures_errors(caplog):
    """A failing read becomes a failed check."""

    def broken():
        raise RuntimeError("node down")

    check = run_check("value", 42, broken)
    assert not check.passed
    assert isinstance(check.error, RuntimeError)
    assert check.actual is None
    assert "node down" in str(check)
    assert "Verification read value failed" in caplog.text


def test_broken_read_does_not_abort(config, provider, account, artifacts):
    """The run completes even when admin reads fail."""
    provider.break_read(PROXY_ABI, "fetchAdmin")

    report = deploy_transparent_proxy(config, account, artifacts)

    assert report.completed
    assert not report.verified
    failed = {c.name for c in report.verification_failures}
    assert failed == {"proxy admin", "proxy admin unchanged"}
    assert all(c.error is not None for c in report.verification_failures)


def test_broken_owner_read(config, provider, account, artifacts):
    provider.break_read(PROXY_ADMIN_ABI, "owner")
    report = deploy_transparent_proxy(config, account, artifacts)
    assert [c.name for c in report.verification_failures] == ["proxy admin owner"]


def test_unexpected_value_after_upgrade(config, provider, account, artifacts):
    """State that does not match the upgrade initializer fails the value check."""
    report = DeploymentReport(admin_mode=config.admin_mode, account=account.address)
    sleeps = []

    def tamper(seconds):
        sleeps.append(seconds)
        if len(sleeps) == 2:
            # Upgrade done, overwrite the value stored in the proxy
            provider.get_contract(report.proxy.address).storage["value"] = 1

    deploy_transparent_proxy(config, account, artifacts, report=report, sleep=tamper)

    failed = {c.name: c for c in report.verification_failures}
    assert set(failed) == {"upgraded value"}
    assert failed["upgraded value"].expected == 77
    assert failed["upgraded value"].actual == 1
