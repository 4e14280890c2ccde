"""Provision a funded and deployed smart account for the deployment run.

The account comes from, in order of preference:

1. ``PRIVATE_KEY`` and ``SMART_ACCOUNT_ADDRESS`` in the environment
2. A previously persisted account file, by default ``smartAccount.json``
3. A freshly generated key, persisted to the account file

The account file also keeps the salt of a generated account, so a run
that failed before the self deploy can be resumed with the same account.

The account file is plain JSON with no encryption. Protect it yourself
if the account holds anything of value.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from eth_typing import ChecksumAddress

from nil_proxy.abi import ArtifactError, ContractArtifact
from nil_proxy.address import random_salt
from nil_proxy.client import PublicClient
from nil_proxy.config import DeployConfig
from nil_proxy.faucet import FaucetClient
from nil_proxy.smart_account import SmartAccount, generate_random_private_key
from nil_proxy.utils import wait_other_writers

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class AccountCredentials:
    """Key and address of an existing smart account."""

    private_key: str
    address: ChecksumAddress

    #: Salt the account address was derived with, lets a later run finish the self deploy
    salt: int | None = None

    def as_json(self) -> dict:
        # Same keys as the environment variables, so the file can be copied into .env
        data = {
            "PRIVATE_KEY": self.private_key,
            "SMART_ACCOUNT_ADDRESS": self.address,
        }
        if self.salt is not None:
            data["SALT"] = self.salt
        return data


def read_account_file(path: Path) -> AccountCredentials | None:
    """Read persisted credentials.

    :return:
        ``None`` if the file does not exist
    """
    if not path.exists():
        return None

    data = json.loads(path.read_text(encoding="utf-8"))
    assert "PRIVATE_KEY" in data and "SMART_ACCOUNT_ADDRESS" in data, f"Account file {path} lacks PRIVATE_KEY or SMART_ACCOUNT_ADDRESS"
    return AccountCredentials(private_key=data["PRIVATE_KEY"], address=data["SMART_ACCOUNT_ADDRESS"], salt=data.get("SALT"))


def write_account_file(path: Path, credentials: AccountCredentials):
    """Persist credentials.

    The caller must hold :py:func:`wait_other_writers` for ``path``.
    """
    assert not path.exists(), f"Refusing to overwrite account file {path}"
    path.write_text(json.dumps(credentials.as_json()), encoding="utf-8")
    logger.info("Smart account credentials written to %s", path.absolute())


def load_or_create_smart_account(
    config: DeployConfig,
    client: PublicClient,
    smart_account_artifact: ContractArtifact | None,
) -> tuple[SmartAccount, bool]:
    """Get the signing account for the run.

    Does not touch the chain.

    :return:
        Tuple (account, was newly generated)
    """
    if config.has_credentials:
        logger.info("Using existing smart account from environment")
        account = SmartAccount(
            client,
            config.private_key,
            address=config.smart_account_address,
            code=smart_account_artifact,
        )
        logger.info("Loaded smart account %s", account.address)
        return account, False

    account_file = Path(config.account_file)

    # Generation happens under the lock, so two concurrent runs
    # cannot both create an account for the same file
    with wait_other_writers(account_file):
        credentials = read_account_file(account_file)
        if credentials:
            logger.info("Using smart account persisted in %s", account_file)
            account = SmartAccount(
                client,
                credentials.private_key,
                address=credentials.address,
                salt=credentials.salt,
                code=smart_account_artifact,
            )
            return account, False

        if smart_account_artifact is None:
            raise ArtifactError(f"No account in {account_file} and no compiled smart account contract to generate one")

        logger.info("Generating new smart account")
        account = SmartAccount(
            client,
            generate_random_private_key(),
            salt=random_salt(),
            shard_id=config.shard_id,
            code=smart_account_artifact,
        )
        write_account_file(account_file, AccountCredentials(private_key=account.private_key, address=account.address, salt=account.salt))
        return account, True


def provision_smart_account(
    config: DeployConfig,
    client: PublicClient,
    smart_account_artifact: ContractArtifact | None,
    faucet: FaucetClient | None = None,
) -> SmartAccount:
    """Get a funded, deployed smart account.

    - Always tops up the account from the faucet and waits for the top up
    - Deploys the account contract if there is no code at its address

    Any RPC failure propagates and aborts the run.

    :param config:
        Run configuration

    :param client:
        Node client

    :param smart_account_artifact:
        Compiled smart account contract.

        Only needed to generate a new account or to finish the self deploy
        of a persisted one.

    :param faucet:
        Faucet client, created from ``client`` if not given
    """
    if faucet is None:
        faucet = FaucetClient(client)

    account, generated = load_or_create_smart_account(config, client, smart_account_artifact)

    top_up_hash = faucet.top_up(account.address, config.faucet_amount, config.faucet_address)
    client.wait_till_completed(top_up_hash, timeout=config.finality_timeout, poll_interval=config.poll_interval)

    if not account.check_deployment_status():
        account.self_deploy(
            wait=True,
            fee_credit=config.fee_credit,
            timeout=config.finality_timeout,
            poll_interval=config.poll_interval,
        )
        logger.info("New smart account deployed: %s", account.address)

    logger.info("Smart account %s funded with %d wei (generated: %s)", account.address, config.faucet_amount, generated)
    return account
