"""deploy-transparent-proxy task.

Deploys a transparent upgradeable proxy on =nil;, upgrades it to a second
logic contract and reads back the result. All configuration comes from
environment variables or a local ``.env`` file, see :py:mod:`nil_proxy.config`.

Exit codes:

- ``0`` the run completed, verification failures are only logged
- ``1`` a deploy, funding or finality wait failed, the exception is printed
- ``2`` the run completed but verification failed and ``STRICT_VERIFICATION`` is set

Example:

.. code-block:: shell

    NIL_RPC_ENDPOINT=https://api.devnet.nil.foundation/api/... \\
    NIL=0x0001111111111111111111111111111111111111 \\
    ADMIN_MODE=contract \\
    LOG_LEVEL=info \\
        deploy-transparent-proxy
"""

import logging
import os
import sys

from dotenv import find_dotenv, load_dotenv
from tabulate import tabulate

from nil_proxy.abi import ArtifactPaths
from nil_proxy.account_store import provision_smart_account
from nil_proxy.client import PublicClient
from nil_proxy.config import DeployConfig
from nil_proxy.deployment import DeploymentReport, deploy_transparent_proxy
from nil_proxy.faucet import FaucetClient
from nil_proxy.provider import create_nil_web3
from nil_proxy.utils import get_url_domain, setup_console_logging

logger = logging.getLogger(__name__)

#: Exit code when checks fail and ``STRICT_VERIFICATION`` is set
VERIFICATION_FAILED_EXIT_CODE = 2


def format_report(report: DeploymentReport) -> str:
    """Human readable summary tables of a run."""
    rows = [
        ["Admin mode", report.admin_mode.value],
        ["Smart account", report.account],
        ["Logic", report.logic.address if report.logic else "-"],
        ["Proxy admin", report.admin or "-"],
        ["Proxy", report.proxy.address if report.proxy else "-"],
        ["Logic V2", report.logic_v2.address if report.logic_v2 else "-"],
        ["Upgrade tx", report.upgrade_tx_hash or "-"],
    ]

    if report.set_message_tx_hash:
        rows.append(["Set message tx", report.set_message_tx_hash])

    if report.failed_phase:
        rows.append(["Failed phase", report.failed_phase])
        rows.append(["Error", str(report.error)])

    checks = [[c.name, "ok" if c.passed else "FAILED", c.expected, c.error or c.actual] for c in report.pre_upgrade_checks + report.post_upgrade_checks]

    output = tabulate(rows, tablefmt="simple")
    if checks:
        output += "\n\n" + tabulate(checks, headers=["Check", "Status", "Expected", "Actual"], tablefmt="simple")
    return output


def main():
    load_dotenv(find_dotenv(usecwd=True))

    setup_console_logging(default_log_level=os.environ.get("LOG_LEVEL", "info"))

    config = DeployConfig.from_environment()

    web3 = create_nil_web3(config.rpc_endpoint, timeout=config.http_timeout)
    client = PublicClient(web3)
    faucet = FaucetClient(client)

    logger.info("Connected to %s, chain %d", get_url_domain(config.rpc_endpoint), client.get_chain_id())

    # An account from the environment is already deployed, so its contract code is not needed
    artifacts = ArtifactPaths(config.artifacts_dir).load(smart_account=not config.has_credentials)

    account = provision_smart_account(config, client, artifacts.smart_account, faucet=faucet)

    report = DeploymentReport(admin_mode=config.admin_mode, account=account.address)
    try:
        deploy_transparent_proxy(config, account, artifacts, report=report)
    finally:
        print(format_report(report))

    if not report.verified:
        logger.warning("%d verification checks failed", len(report.verification_failures))
        if config.strict_verification:
            sys.exit(VERIFICATION_FAILED_EXIT_CODE)
    else:
        print("All ok")


if __name__ == "__main__":
    main()
