"""Smart account provisioning and the persisted account file."""

import json
from dataclasses import replace

import pytest
from eth_keys import keys

from nil_proxy.abi import ArtifactError, encode_deploy_data
from nil_proxy.account_store import provision_smart_account, read_account_file
from nil_proxy.address import calculate_address
from nil_proxy.client import RPCError


def test_fresh_account_written_once(config, client, provider, artifacts):
    """A new account is generated, persisted, funded and deployed."""
    assert not config.account_file.exists()

    account = provision_smart_account(config, client, artifacts.smart_account)

    data = json.loads(config.account_file.read_text())
    assert data["SMART_ACCOUNT_ADDRESS"] == account.address
    assert data["PRIVATE_KEY"] == account.private_key
    assert data["SALT"] == account.salt

    # The persisted address is derived from the persisted key and salt
    public_key = keys.PrivateKey(bytes.fromhex(data["PRIVATE_KEY"][2:])).public_key.to_compressed_bytes()
    code = encode_deploy_data(artifacts.smart_account, [public_key])
    assert calculate_address(config.shard_id, code, data["SALT"]) == data["SMART_ACCOUNT_ADDRESS"]

    # The deployed account contract holds the public key of the persisted private key
    assert provider.get_contract(account.address).pubkey == public_key

    assert client.get_balance(account.address) == config.faucet_amount
    assert account.check_deployment_status()


def test_account_file_reused(config, client, provider, artifacts):
    """The second run loads the persisted account and does not redeploy it."""
    first = provision_smart_account(config, client, artifacts.smart_account)
    content = config.account_file.read_text()
    deploy_messages = [m for m in provider.messages if m.is_deploy]
    assert len(deploy_messages) == 1

    second = provision_smart_account(config, client, artifacts.smart_account)

    assert second.address == first.address
    assert config.account_file.read_text() == content
    assert len([m for m in provider.messages if m.is_deploy]) == 1

    # Topped up on every run
    assert client.get_balance(second.address) == 2 * config.faucet_amount


def test_failed_first_run_resumes_with_persisted_account(config, client, provider, artifacts):
    """An account persisted before its funding failed is deployed by the next run."""
    provider.fail_method("faucet_topUpViaFaucet", "faucet is dry")
    with pytest.raises(RPCError, match="faucet is dry"):
        provision_smart_account(config, client, artifacts.smart_account)

    persisted = read_account_file(config.account_file)
    assert len(client.get_code(persisted.address)) == 0

    provider.restore_method("faucet_topUpViaFaucet")
    account = provision_smart_account(config, client, artifacts.smart_account)

    assert account.address == persisted.address
    assert account.check_deployment_status()
    assert read_account_file(config.account_file) == persisted


def test_environment_credentials_take_precedence(config, client, artifacts, tmp_path):
    """With PRIVATE_KEY and SMART_ACCOUNT_ADDRESS set, no account file is read or written."""
    existing = provision_smart_account(replace(config, account_file=tmp_path / "other.json"), client, artifacts.smart_account)

    env_config = replace(
        config,
        private_key=existing.private_key,
        smart_account_address=existing.address,
    )
    account = provision_smart_account(env_config, client, artifacts.smart_account)

    assert account.address == existing.address
    assert not config.account_file.exists()


def test_environment_credentials_without_contract_code(config, client, account):
    """A deployed account from the environment does not need the smart account artifact."""
    env_config = replace(config, private_key=account.private_key, smart_account_address=account.address)
    loaded = provision_smart_account(env_config, client, None)
    assert loaded.address == account.address


def test_new_account_needs_contract_code(config, client):
    with pytest.raises(ArtifactError, match="no compiled smart account contract"):
        provision_smart_account(config, client, None)
    assert not config.account_file.exists()


def test_read_account_file_missing(tmp_path):
    assert read_account_file(tmp_path / "smartAccount.json") is None
