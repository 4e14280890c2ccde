"""Deployment configuration from environment variables.

Environment variables
---------------------

``NIL_RPC_ENDPOINT``
    =nil; RPC URL. Required.

``NIL``
    Faucet contract address used to fund the deployer account. Required.

``PRIVATE_KEY``, ``SMART_ACCOUNT_ADDRESS``
    Existing smart account credentials. Used only when both are set,
    otherwise we reuse ``ACCOUNT_FILE`` or generate a new account.

``ADMIN_MODE``
    ``contract`` (default) deploys a ``ProxyAdmin`` contract owned by the
    deployer account. ``account`` makes the deployer account itself
    the proxy admin.

``ACCOUNT_FILE``
    Where newly generated credentials are stored. Default ``smartAccount.json``.

``ARTIFACTS_DIR``
    Hardhat artifacts folder. Default ``artifacts``.

``SHARD_ID``
    Shard for the account and the contracts. Default ``1``.

``FINALITY_TIMEOUT``, ``POLL_INTERVAL``
    Seconds to wait for a transaction to complete, and between receipt polls.

``SETTLE_DELAY``
    Seconds to wait after a completed transaction before reading state. Default ``5``.

``INITIAL_VALUE``, ``UPGRADE_VALUE``, ``UPGRADE_MESSAGE``
    Initializer arguments for the first and the upgraded logic contract.

``POST_UPGRADE_MESSAGE``
    If set, call ``setMessage()`` through the proxy after the upgrade
    and read it back.

``STRICT_VERIFICATION``
    Exit with a non-zero code if any post deployment check fails.
"""

import enum
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from eth_typing import ChecksumAddress
from eth_utils import is_address, to_checksum_address
from web3 import Web3

from nil_proxy.address import DEFAULT_SHARD_ID

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Environment is missing a required option or has a malformed one."""


class AdminMode(enum.Enum):
    """Who holds the upgrade rights of the proxy."""

    #: A dedicated ``ProxyAdmin`` contract owned by the deployer account
    contract = "contract"

    #: The deployer account itself
    account = "account"


#: Values accepted as true for boolean flags
TRUTHY = {"1", "true", "yes", "on"}


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in TRUTHY


def _parse_address(name: str, value: str) -> ChecksumAddress:
    if not is_address(value):
        raise ConfigurationError(f"{name} is not a valid address: {value}")
    return to_checksum_address(value)


@dataclass(slots=True)
class DeployConfig:
    """Everything one deploy and upgrade run needs to know."""

    #: RPC URL of the node
    rpc_endpoint: str

    #: Faucet contract
    faucet_address: ChecksumAddress

    #: Existing account key
    private_key: str | None = None

    #: Existing account address
    smart_account_address: ChecksumAddress | None = None

    #: Who controls upgrades
    admin_mode: AdminMode = AdminMode.contract

    #: Persisted credentials of a generated account
    account_file: Path = field(default_factory=lambda: Path("smartAccount.json"))

    #: Hardhat artifacts folder
    artifacts_dir: Path = field(default_factory=lambda: Path("artifacts"))

    shard_id: int = DEFAULT_SHARD_ID

    #: Seconds to wait for a transaction receipt tree
    finality_timeout: float = 120.0

    #: Seconds between receipt polls
    poll_interval: float = 1.0

    #: Seconds to wait after completion before read calls
    settle_delay: float = 5.0

    #: HTTP timeout for a single RPC request
    http_timeout: float = 30.0

    #: ``initialize(uint256)`` argument of the first logic contract
    initial_value: int = 42

    #: ``initializeV2(uint256, string)`` arguments of the upgraded logic contract
    upgrade_value: int = 77
    upgrade_message: str = "hello world"

    #: Message written through the proxy after the upgrade, if any
    post_upgrade_message: str | None = None

    #: Treat failed checks as a failed run
    strict_verification: bool = False

    #: Faucet top up on every run, in wei
    faucet_amount: int = Web3.to_wei("0.01", "ether")

    #: Execution budget of deploys and calls, in wei
    fee_credit: int = Web3.to_wei("0.001", "ether")

    #: Execution budget of the upgraded logic contract deploy, in wei
    logic_v2_fee_credit: int = 10**15

    #: Native tokens attached to the upgrade call, in wei
    upgrade_transfer_value: int = Web3.to_wei("0.0001", "ether")

    @property
    def has_credentials(self) -> bool:
        """Both halves of existing account credentials are given."""
        return bool(self.private_key and self.smart_account_address)

    @classmethod
    def from_environment(cls, environ: Mapping[str, str] | None = None) -> "DeployConfig":
        """Read configuration from environment variables.

        :param environ:
            Defaults to :py:data:`os.environ`

        :raise ConfigurationError:
            Required variable missing or a value does not parse
        """
        if environ is None:
            environ = os.environ

        def get(name: str) -> str | None:
            value = environ.get(name)
            if value is None or value.strip() == "":
                return None
            return value.strip()

        rpc_endpoint = get("NIL_RPC_ENDPOINT")
        if not rpc_endpoint:
            raise ConfigurationError("NIL_RPC_ENDPOINT environment variable required")

        faucet = get("NIL")
        if not faucet:
            raise ConfigurationError("NIL environment variable (faucet address) required")

        kwargs = {
            "rpc_endpoint": rpc_endpoint,
            "faucet_address": _parse_address("NIL", faucet),
        }

        kwargs["private_key"] = get("PRIVATE_KEY")
        smart_account_address = get("SMART_ACCOUNT_ADDRESS")
        if smart_account_address:
            kwargs["smart_account_address"] = _parse_address("SMART_ACCOUNT_ADDRESS", smart_account_address)

        admin_mode = get("ADMIN_MODE")
        if admin_mode:
            try:
                kwargs["admin_mode"] = AdminMode(admin_mode.lower())
            except ValueError as e:
                raise ConfigurationError(f"ADMIN_MODE must be 'contract' or 'account', got '{admin_mode}'") from e

        account_file = get("ACCOUNT_FILE")
        if account_file:
            kwargs["account_file"] = Path(account_file)

        artifacts_dir = get("ARTIFACTS_DIR")
        if artifacts_dir:
            kwargs["artifacts_dir"] = Path(artifacts_dir)

        numeric = {
            "SHARD_ID": ("shard_id", int),
            "FINALITY_TIMEOUT": ("finality_timeout", float),
            "POLL_INTERVAL": ("poll_interval", float),
            "SETTLE_DELAY": ("settle_delay", float),
            "INITIAL_VALUE": ("initial_value", int),
            "UPGRADE_VALUE": ("upgrade_value", int),
        }
        for env_name, (attr, converter) in numeric.items():
            raw = get(env_name)
            if raw is None:
                continue
            try:
                kwargs[attr] = converter(raw)
            except ValueError as e:
                raise ConfigurationError(f"{env_name} must be a number, got '{raw}'") from e

        upgrade_message = environ.get("UPGRADE_MESSAGE")
        if upgrade_message is not None:
            kwargs["upgrade_message"] = upgrade_message

        kwargs["post_upgrade_message"] = get("POST_UPGRADE_MESSAGE")

        strict = get("STRICT_VERIFICATION")
        if strict:
            kwargs["strict_verification"] = _parse_bool(strict)

        config = cls(**kwargs)

        if config.settle_delay < 0 or config.poll_interval < 0 or config.finality_timeout <= 0:
            raise ConfigurationError("Timeouts and delays must be positive")

        if bool(config.private_key) != bool(config.smart_account_address):
            logger.warning("Only one of PRIVATE_KEY and SMART_ACCOUNT_ADDRESS set, ignoring both")

        return config
