"""Shared fixtures.

All tests run against :py:class:`nil_proxy.testing.NilTestProvider`, no network needed.
"""

from pathlib import Path

import pytest
from web3 import Web3

from nil_proxy.abi import ArtifactPaths, ProxyArtifacts
from nil_proxy.account_store import provision_smart_account
from nil_proxy.client import PublicClient
from nil_proxy.config import DeployConfig
from nil_proxy.smart_account import SmartAccount
from nil_proxy.testing import TEST_FAUCET_ADDRESS, NilTestProvider, write_test_artifacts


@pytest.fixture()
def provider() -> NilTestProvider:
    return NilTestProvider()


@pytest.fixture()
def web3(provider) -> Web3:
    return Web3(provider)


@pytest.fixture()
def client(web3) -> PublicClient:
    return PublicClient(web3)


@pytest.fixture()
def artifact_paths(tmp_path: Path) -> ArtifactPaths:
    return write_test_artifacts(tmp_path / "artifacts")


@pytest.fixture()
def artifacts(artifact_paths) -> ProxyArtifacts:
    return artifact_paths.load()


@pytest.fixture()
def config(tmp_path: Path, artifact_paths) -> DeployConfig:
    """Configuration with no waiting."""
    return DeployConfig(
        rpc_endpoint="http://localhost:8529",
        faucet_address=TEST_FAUCET_ADDRESS,
        account_file=tmp_path / "smartAccount.json",
        artifacts_dir=artifact_paths.root,
        finality_timeout=5.0,
        poll_interval=0,
        settle_delay=0,
    )


@pytest.fixture()
def account(config, client, artifacts) -> SmartAccount:
    """Funded and deployed smart account."""
    return provision_smart_account(config, client, artifacts.smart_account)
