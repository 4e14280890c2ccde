"""Deploy a transparent upgradeable proxy and upgrade it.

The run is a linear sequence:

1. Deploy the first logic contract
2. Deploy a ``ProxyAdmin`` owned by the account, or use the account itself as the admin
3. Deploy the proxy, initialising the logic with ``initialize(initial_value)``
4. Read back the admin, the implementation and the value
5. Deploy the second logic contract
6. Upgrade the proxy with ``initializeV2(upgrade_value, upgrade_message)``
7. Optionally write a message through the upgraded proxy
8. Read back the owner, implementation, admin, value and message

Steps 1-3, 5-7 are hard failures: the exception propagates and the run stops.
Steps 4 and 8 are soft failures collected into :py:class:`DeploymentReport`.

Example:

.. code-block:: python

    account = provision_smart_account(config, client, artifacts.smart_account)
    report = deploy_transparent_proxy(config, account, artifacts)
    if not report.verified:
        for check in report.verification_failures:
            print(check)
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from eth_typing import ChecksumAddress, HexStr

from nil_proxy.abi import ContractArtifact, ProxyArtifacts, encode_function_call
from nil_proxy.address import random_salt
from nil_proxy.config import AdminMode, DeployConfig
from nil_proxy.smart_account import DeploymentResult, SmartAccount
from nil_proxy.verification import (
    VerificationCheck,
    fetch_message,
    run_check,
    verify_post_upgrade,
    verify_pre_upgrade,
)

logger = logging.getLogger(__name__)

__all__ = [
    "AdminMode",
    "DeploymentResult",
    "DeploymentReport",
    "deploy_logic",
    "deploy_proxy_admin",
    "deploy_proxy",
    "deploy_logic_v2",
    "send_upgrade",
    "set_message",
    "deploy_transparent_proxy",
]

#: Admin entry point of a transparent proxy.
#:
#: Not part of the compiled proxy ABI, the proxy intercepts it in its fallback.
TRANSPARENT_PROXY_ADMIN_ABI = [
    {
        "type": "function",
        "name": "upgradeToAndCall",
        "inputs": [
            {"name": "newImplementation", "type": "address"},
            {"name": "data", "type": "bytes"},
        ],
        "outputs": [],
        "stateMutability": "payable",
    }
]


@dataclass(slots=True)
class DeploymentReport:
    """What a run deployed and what the read backs found."""

    admin_mode: AdminMode

    #: Deployer smart account
    account: ChecksumAddress

    logic: DeploymentResult | None = None

    #: Only with :py:attr:`AdminMode.contract`
    proxy_admin: DeploymentResult | None = None

    proxy: DeploymentResult | None = None

    logic_v2: DeploymentResult | None = None

    upgrade_tx_hash: HexStr | None = None

    #: Only when a post upgrade message was written
    set_message_tx_hash: HexStr | None = None

    pre_upgrade_checks: list[VerificationCheck] = field(default_factory=list)

    post_upgrade_checks: list[VerificationCheck] = field(default_factory=list)

    #: Phase that raised, if the run did not complete
    failed_phase: str | None = None

    #: Exception raised in :py:attr:`failed_phase`
    error: Exception | None = None

    @property
    def admin(self) -> ChecksumAddress | None:
        """Address stored as the proxy admin."""
        if self.admin_mode == AdminMode.account:
            return self.account
        return self.proxy_admin.address if self.proxy_admin else None

    @property
    def completed(self) -> bool:
        return self.failed_phase is None and self.upgrade_tx_hash is not None

    @property
    def verification_failures(self) -> list[VerificationCheck]:
        return [c for c in self.pre_upgrade_checks + self.post_upgrade_checks if not c.passed]

    @property
    def verified(self) -> bool:
        """Run completed and every check passed."""
        return self.completed and len(self.verification_failures) == 0


def _deploy_and_wait(
    account: SmartAccount,
    artifact: ContractArtifact,
    args: list,
    fee_credit: int,
    config: DeployConfig,
) -> DeploymentResult:
    result = account.deploy_contract(
        artifact,
        args=args,
        salt=random_salt(),
        fee_credit=fee_credit,
        shard_id=config.shard_id,
    )
    account.client.wait_till_completed(result.tx_hash, timeout=config.finality_timeout, poll_interval=config.poll_interval)
    logger.info("%s deployed at %s, tx %s", artifact.name, result.address, result.tx_hash)
    return result


def deploy_logic(account: SmartAccount, artifact: ContractArtifact, config: DeployConfig) -> DeploymentResult:
    """Deploy the first logic contract. No constructor arguments."""
    return _deploy_and_wait(account, artifact, [], config.fee_credit, config)


def deploy_proxy_admin(account: SmartAccount, artifact: ContractArtifact, config: DeployConfig) -> DeploymentResult:
    """Deploy a ``ProxyAdmin`` owned by the account."""
    return _deploy_and_wait(account, artifact, [account.address], config.fee_credit, config)


def deploy_proxy(
    account: SmartAccount,
    artifact: ContractArtifact,
    logic: ChecksumAddress,
    admin: ChecksumAddress,
    init_data: bytes,
    config: DeployConfig,
) -> DeploymentResult:
    """Deploy the transparent proxy.

    :param logic:
        Initial implementation

    :param admin:
        ``ProxyAdmin`` contract or the account itself

    :param init_data:
        Call data the proxy constructor delegates to ``logic``
    """
    logger.info("Deploying proxy, logic: %s, admin: %s, init data: %s", logic, admin, init_data.hex())
    return _deploy_and_wait(account, artifact, [logic, admin, init_data], config.fee_credit, config)


def deploy_logic_v2(account: SmartAccount, artifact: ContractArtifact, config: DeployConfig) -> DeploymentResult:
    """Deploy the upgraded logic contract."""
    return _deploy_and_wait(account, artifact, [], config.logic_v2_fee_credit, config)


def send_upgrade(
    account: SmartAccount,
    admin_mode: AdminMode,
    admin: ChecksumAddress,
    proxy: ChecksumAddress,
    new_implementation: ChecksumAddress,
    init_data: bytes,
    proxy_admin_artifact: ContractArtifact,
    config: DeployConfig,
) -> HexStr:
    """Point the proxy to a new implementation and initialise it in the same transaction.

    - With a ``ProxyAdmin`` we call ``ProxyAdmin.upgradeAndCall(proxy, impl, data)``
    - With the account as admin we call ``upgradeToAndCall(impl, data)`` on the proxy

    Blocks until the upgrade completes.

    :return:
        Upgrade transaction hash
    """
    if admin_mode == AdminMode.contract:
        to = admin
        data = encode_function_call(proxy_admin_artifact.abi, "upgradeAndCall", [proxy, new_implementation, init_data])
    else:
        assert admin == account.address, f"Account {account.address} is not the proxy admin {admin}"
        to = proxy
        data = encode_function_call(TRANSPARENT_PROXY_ADMIN_ABI, "upgradeToAndCall", [new_implementation, init_data])

    tx_hash = account.send_transaction(
        to,
        data,
        value=config.upgrade_transfer_value,
        fee_credit=config.fee_credit,
    )
    account.client.wait_till_completed(tx_hash, timeout=config.finality_timeout, poll_interval=config.poll_interval)
    logger.info("Upgrade and initialisation transaction sent: %s", tx_hash)
    return tx_hash


def set_message(
    account: SmartAccount,
    proxy: ChecksumAddress,
    logic_v2_artifact: ContractArtifact,
    message: str,
    config: DeployConfig,
) -> HexStr:
    """Call ``setMessage(message)`` through the proxy and wait for it."""
    data = encode_function_call(logic_v2_artifact.abi, "setMessage", [message])
    tx_hash = account.send_transaction(proxy, data, fee_credit=config.logic_v2_fee_credit)
    account.client.wait_till_completed(tx_hash, timeout=config.finality_timeout, poll_interval=config.poll_interval)
    logger.info("Message updated to '%s', tx %s", message, tx_hash)
    return tx_hash


def deploy_transparent_proxy(
    config: DeployConfig,
    account: SmartAccount,
    artifacts: ProxyArtifacts,
    report: DeploymentReport | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> DeploymentReport:
    """Run the whole deploy, upgrade and verify sequence.

    :param config:
        Run configuration

    :param account:
        Funded and deployed account. Pays for and signs everything.

    :param artifacts:
        Compiled contracts

    :param report:
        Report to fill in. Pass your own to inspect what was deployed
        before a hard failure, as the exception is re-raised.

    :param sleep:
        Used to wait :py:attr:`DeployConfig.settle_delay` before read backs

    :return:
        Filled report. Check :py:attr:`DeploymentReport.verified`.
    """
    if report is None:
        report = DeploymentReport(admin_mode=config.admin_mode, account=account.address)

    client = account.client

    # The admin of a transparent proxy cannot reach the logic contract through it
    if config.admin_mode == AdminMode.contract:
        read_sender = account.address
    else:
        read_sender = None

    phase = "logic"
    try:
        report.logic = deploy_logic(account, artifacts.logic, config)

        if config.admin_mode == AdminMode.contract:
            phase = "proxy admin"
            report.proxy_admin = deploy_proxy_admin(account, artifacts.proxy_admin, config)
        else:
            logger.info("Using smart account %s as the proxy admin", account.address)

        admin = report.admin

        phase = "proxy"
        init_data = encode_function_call(artifacts.logic.abi, "initialize", [config.initial_value])
        report.proxy = deploy_proxy(account, artifacts.proxy, report.logic.address, admin, init_data, config)
        proxy = report.proxy.address

        logger.info("Waiting %s seconds before reading proxy state", config.settle_delay)
        sleep(config.settle_delay)

        report.pre_upgrade_checks = verify_pre_upgrade(
            client,
            proxy,
            admin=admin,
            logic=report.logic.address,
            initial_value=config.initial_value,
            proxy_artifact=artifacts.proxy,
            logic_artifact=artifacts.logic,
            sender=read_sender,
        )

        phase = "logic v2"
        report.logic_v2 = deploy_logic_v2(account, artifacts.logic_v2, config)

        phase = "upgrade"
        init_data_v2 = encode_function_call(artifacts.logic_v2.abi, "initializeV2", [config.upgrade_value, config.upgrade_message])
        report.upgrade_tx_hash = send_upgrade(
            account,
            config.admin_mode,
            admin,
            proxy,
            report.logic_v2.address,
            init_data_v2,
            artifacts.proxy_admin,
            config,
        )

        logger.info("Waiting %s seconds before reading upgraded state", config.settle_delay)
        sleep(config.settle_delay)

        post_checks = verify_post_upgrade(
            client,
            proxy,
            admin=admin,
            logic_v2=report.logic_v2.address,
            upgrade_value=config.upgrade_value,
            upgrade_message=config.upgrade_message,
            proxy_artifact=artifacts.proxy,
            logic_v2_artifact=artifacts.logic_v2,
            proxy_admin_artifact=artifacts.proxy_admin if config.admin_mode == AdminMode.contract else None,
            owner=account.address,
            sender=read_sender,
        )

        if config.post_upgrade_message is not None:
            if config.admin_mode == AdminMode.account:
                logger.warning("Skipping post upgrade message: the proxy admin %s cannot call the logic contract", admin)
            else:
                phase = "post upgrade message"
                report.set_message_tx_hash = set_message(account, proxy, artifacts.logic_v2, config.post_upgrade_message, config)
                sleep(config.settle_delay)
                post_checks.append(
                    run_check(
                        "post upgrade message",
                        config.post_upgrade_message,
                        lambda: fetch_message(client, proxy, artifacts.logic_v2.abi, read_sender),
                    )
                )

        report.post_upgrade_checks = post_checks

    except Exception as e:
        report.failed_phase = phase
        report.error = e
        logger.error("Deployment failed in phase %s: %s", phase, e)
        raise

    if report.verified:
        logger.info("Proxy %s deployed, upgraded and verified", report.proxy.address)
    else:
        logger.warning("Proxy %s deployed and upgraded, but %d checks failed", report.proxy.address, len(report.verification_failures))

    return report
