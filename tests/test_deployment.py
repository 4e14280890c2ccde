"""Deploy, upgrade and verify a transparent proxy in both admin modes."""

import itertools
from dataclasses import replace

import pytest
from hexbytes import HexBytes

from nil_proxy.abi import ContractArtifact
from nil_proxy.account_store import provision_smart_account
from nil_proxy.client import RPCError, TransactionFailed
from nil_proxy.config import AdminMode
from nil_proxy.deployment import DeploymentReport, deploy_transparent_proxy
from nil_proxy.testing import LOGIC_V2_ABI
from nil_proxy.verification import fetch_admin, fetch_implementation, fetch_message, fetch_owner, fetch_value


def test_deploy_and_upgrade_with_proxy_admin(config, client, provider, account, artifacts):
    """ProxyAdmin owned by the account upgrades 42 to 77."""
    report = deploy_transparent_proxy(config, account, artifacts)

    assert report.completed
    assert report.verified, [str(c) for c in report.verification_failures]
    assert report.admin == report.proxy_admin.address

    proxy = report.proxy.address
    assert fetch_admin(client, proxy, artifacts.proxy.abi) == report.proxy_admin.address
    assert fetch_implementation(client, proxy, artifacts.proxy.abi) == report.logic_v2.address
    assert fetch_owner(client, report.proxy_admin.address, artifacts.proxy_admin.abi) == account.address
    assert fetch_value(client, proxy, artifacts.logic_v2.abi) == 77
    assert fetch_message(client, proxy, artifacts.logic_v2.abi) == "hello world"

    # Value attached to the upgrade ended up in the proxy
    assert client.get_balance(proxy) == config.upgrade_transfer_value

    pre = {c.name: c for c in report.pre_upgrade_checks}
    assert pre["initial value"].actual == 42
    assert pre["proxy implementation"].actual == report.logic.address

    post = {c.name: c for c in report.post_upgrade_checks}
    assert set(post) == {"proxy admin owner", "upgraded implementation", "proxy admin unchanged", "upgraded value", "upgraded message"}


def test_deploy_and_upgrade_with_account_as_admin(config, client, account, artifacts):
    """The account itself is the proxy admin and calls upgradeToAndCall."""
    config = replace(config, admin_mode=AdminMode.account)
    report = deploy_transparent_proxy(config, account, artifacts)

    assert report.verified, [str(c) for c in report.verification_failures]
    assert report.proxy_admin is None
    assert report.admin == account.address

    proxy = report.proxy.address
    assert fetch_admin(client, proxy, artifacts.proxy.abi) == account.address
    assert fetch_implementation(client, proxy, artifacts.proxy.abi) == report.logic_v2.address
    assert fetch_value(client, proxy, artifacts.logic_v2.abi) == 77
    assert "proxy admin owner" not in {c.name for c in report.post_upgrade_checks}


def test_admin_cannot_reach_logic(config, client, account, artifacts):
    """Reads from the admin account are not routed to the logic contract."""
    config = replace(config, admin_mode=AdminMode.account)
    report = deploy_transparent_proxy(config, account, artifacts)

    with pytest.raises(RPCError, match="ProxyDeniedAdminAccess"):
        fetch_value(client, report.proxy.address, artifacts.logic_v2.abi, sender=account.address)


def test_post_upgrade_message(config, client, account, artifacts):
    """setMessage() through the upgraded proxy."""
    config = replace(config, post_upgrade_message="gm gm")
    report = deploy_transparent_proxy(config, account, artifacts)

    assert report.verified
    assert report.set_message_tx_hash
    assert report.post_upgrade_checks[-1].name == "post upgrade message"
    assert fetch_message(client, report.proxy.address, artifacts.logic_v2.abi) == "gm gm"


def test_post_upgrade_message_skipped_for_account_admin(config, account, artifacts):
    config = replace(config, admin_mode=AdminMode.account, post_upgrade_message="gm gm")
    report = deploy_transparent_proxy(config, account, artifacts)
    assert report.verified
    assert report.set_message_tx_hash is None


def test_settle_delay(config, account, artifacts):
    """We wait the settle delay before both read backs."""
    config = replace(config, settle_delay=5.0)
    waits = []
    deploy_transparent_proxy(config, account, artifacts, sleep=waits.append)
    assert waits == [5.0, 5.0]


def test_hard_failure_propagates(config, client, account, artifacts):
    """A failed deploy aborts the run and the report shows how far we got."""
    artifacts.logic_v2 = ContractArtifact(name="Broken", abi=LOGIC_V2_ABI, bytecode=HexBytes("0xdeadbeef"))
    report = DeploymentReport(admin_mode=config.admin_mode, account=account.address)

    with pytest.raises(TransactionFailed, match="Unknown creation code"):
        deploy_transparent_proxy(config, account, artifacts, report=report)

    assert report.failed_phase == "logic v2"
    assert isinstance(report.error, TransactionFailed)
    assert report.proxy is not None
    assert report.upgrade_tx_hash is None
    assert not report.completed
    assert not report.verified

    # Proxy still points to the first logic contract
    assert fetch_implementation(client, report.proxy.address, artifacts.proxy.abi) == report.logic.address


def test_rerun_with_fresh_account(config, client, artifacts, tmp_path, monkeypatch):
    """A second run with a new account gives a new deployment and leaves the first one alone."""
    salts = itertools.count(1)
    monkeypatch.setattr("nil_proxy.deployment.random_salt", lambda: next(salts))

    first_account = provision_smart_account(replace(config, account_file=tmp_path / "first.json"), client, artifacts.smart_account)
    first = deploy_transparent_proxy(config, first_account, artifacts)

    second_account = provision_smart_account(replace(config, account_file=tmp_path / "second.json"), client, artifacts.smart_account)
    second_config = replace(config, upgrade_value=88)
    second = deploy_transparent_proxy(second_config, second_account, artifacts)

    assert first.verified and second.verified
    assert second_account.address != first_account.address
    assert second.proxy.address != first.proxy.address
    assert fetch_value(client, first.proxy.address, artifacts.logic_v2.abi) == 77
    assert fetch_value(client, second.proxy.address, artifacts.logic_v2.abi) == 88
