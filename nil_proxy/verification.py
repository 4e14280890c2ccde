"""Read back proxy state and compare it against what we deployed.

Checks never raise. A failing read is captured in
:py:attr:`VerificationCheck.error` and logged, so one broken call
does not hide the results of the others.

A transparent proxy does not route calls from its admin to the
implementation. When the deployer account is the admin
(:py:attr:`~nil_proxy.config.AdminMode.account`), reads that should go
to the logic contract must be made without a sender.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable

from eth_typing import ChecksumAddress

from nil_proxy.abi import ContractArtifact, decode_function_result, encode_function_call
from nil_proxy.client import PublicClient

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class VerificationCheck:
    """One expected vs. actual comparison."""

    #: Human readable check name
    name: str

    #: What we deployed
    expected: Any

    #: What the chain returned, ``None`` if the read failed
    actual: Any = None

    #: Why the read failed
    error: Exception | None = None

    @property
    def passed(self) -> bool:
        if self.error is not None:
            return False
        if isinstance(self.expected, str) and isinstance(self.actual, str) and self.expected.startswith("0x"):
            return self.expected.lower() == self.actual.lower()
        return self.expected == self.actual

    def __str__(self) -> str:
        status = "ok" if self.passed else "FAILED"
        if self.error is not None:
            return f"{self.name}: {status} ({self.error})"
        return f"{self.name}: {status} (expected {self.expected}, got {self.actual})"


def _read(
    client: PublicClient,
    to: ChecksumAddress,
    abi: list[dict],
    function_name: str,
    sender: ChecksumAddress | None,
) -> Any:
    data = encode_function_call(abi, function_name)
    result = client.call(to, data, sender=sender)
    return decode_function_result(abi, function_name, result)


def fetch_admin(client: PublicClient, proxy: ChecksumAddress, proxy_abi: list[dict], sender: ChecksumAddress | None = None) -> ChecksumAddress:
    """Admin stored in the proxy."""
    return _read(client, proxy, proxy_abi, "fetchAdmin", sender)


def fetch_implementation(client: PublicClient, proxy: ChecksumAddress, proxy_abi: list[dict], sender: ChecksumAddress | None = None) -> ChecksumAddress:
    """Logic contract the proxy currently delegates to."""
    return _read(client, proxy, proxy_abi, "fetchImplementation", sender)


def fetch_value(client: PublicClient, proxy: ChecksumAddress, logic_abi: list[dict], sender: ChecksumAddress | None = None) -> int:
    """``value()`` of the logic contract, routed through the proxy."""
    return _read(client, proxy, logic_abi, "value", sender)


def fetch_message(client: PublicClient, proxy: ChecksumAddress, logic_abi: list[dict], sender: ChecksumAddress | None = None) -> str:
    """``getMessage()`` of the upgraded logic contract, routed through the proxy."""
    return _read(client, proxy, logic_abi, "getMessage", sender)


def fetch_owner(client: PublicClient, proxy_admin: ChecksumAddress, proxy_admin_abi: list[dict], sender: ChecksumAddress | None = None) -> ChecksumAddress:
    """Owner of a ``ProxyAdmin`` contract."""
    return _read(client, proxy_admin, proxy_admin_abi, "owner", sender)


def run_check(name: str, expected: Any, reader: Callable[[], Any]) -> VerificationCheck:
    """Perform one read and compare.

    Any exception from ``reader`` is stored in the check.
    """
    check = VerificationCheck(name=name, expected=expected)
    try:
        check.actual = reader()
    except Exception as e:
        check.error = e
        logger.warning("Verification read %s failed", name, exc_info=e)
        return check

    if check.passed:
        logger.info("Check %s passed: %s", name, check.actual)
    else:
        logger.warning("Check %s failed: expected %s, got %s", name, check.expected, check.actual)
    return check


def verify_pre_upgrade(
    client: PublicClient,
    proxy: ChecksumAddress,
    admin: ChecksumAddress,
    logic: ChecksumAddress,
    initial_value: int,
    proxy_artifact: ContractArtifact,
    logic_artifact: ContractArtifact,
    sender: ChecksumAddress | None = None,
) -> list[VerificationCheck]:
    """Check the proxy right after it was deployed.

    :param admin:
        Admin we passed to the proxy constructor

    :param logic:
        Logic contract we passed to the proxy constructor

    :param initial_value:
        Argument of the ``initialize()`` call in the proxy constructor

    :param sender:
        ``from`` of the read calls
    """
    return [
        run_check("proxy admin", admin, lambda: fetch_admin(client, proxy, proxy_artifact.abi, sender)),
        run_check("proxy implementation", logic, lambda: fetch_implementation(client, proxy, proxy_artifact.abi, sender)),
        run_check("initial value", initial_value, lambda: fetch_value(client, proxy, logic_artifact.abi, sender)),
    ]


def verify_post_upgrade(
    client: PublicClient,
    proxy: ChecksumAddress,
    admin: ChecksumAddress,
    logic_v2: ChecksumAddress,
    upgrade_value: int,
    upgrade_message: str,
    proxy_artifact: ContractArtifact,
    logic_v2_artifact: ContractArtifact,
    proxy_admin_artifact: ContractArtifact | None = None,
    owner: ChecksumAddress | None = None,
    sender: ChecksumAddress | None = None,
) -> list[VerificationCheck]:
    """Check the proxy after ``upgradeAndCall``.

    :param proxy_admin_artifact:
        Give with ``owner`` to check ``ProxyAdmin.owner()``.
        Leave out when the account is the admin.

    :param owner:
        Expected ``ProxyAdmin`` owner
    """
    checks = []

    if proxy_admin_artifact is not None:
        assert owner, "ProxyAdmin owner check needs the expected owner"
        checks.append(run_check("proxy admin owner", owner, lambda: fetch_owner(client, admin, proxy_admin_artifact.abi, sender)))

    checks.append(run_check("upgraded implementation", logic_v2, lambda: fetch_implementation(client, proxy, proxy_artifact.abi, sender)))
    checks.append(run_check("proxy admin unchanged", admin, lambda: fetch_admin(client, proxy, proxy_artifact.abi, sender)))
    checks.append(run_check("upgraded value", upgrade_value, lambda: fetch_value(client, proxy, logic_v2_artifact.abi, sender)))

    if logic_v2_artifact.has_function("getMessage"):
        checks.append(run_check("upgraded message", upgrade_message, lambda: fetch_message(client, proxy, logic_v2_artifact.abi, sender)))

    return checks
