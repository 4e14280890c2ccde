"""Sharded address derivation.

On =nil; the first two bytes of an address carry the shard id.
The rest is the tail of the keccak hash of the creation code and salt,
so a contract address is known before the deployment is sent.
"""

import random

from eth_typing import ChecksumAddress
from eth_utils import keccak, to_bytes, to_checksum_address

#: Shard where the deployer account and all contracts live
DEFAULT_SHARD_ID = 1

#: Salts are drawn from this range, as in the Hardhat tasks
MAX_RANDOM_SALT = 10_000

#: Number of shard id bytes at the start of an address
SHARD_ID_BYTES = 2


def salt_to_bytes(salt: int | bytes) -> bytes:
    """Salt as 32 big-endian bytes."""
    if isinstance(salt, int):
        assert salt >= 0, f"Negative salt: {salt}"
        return salt.to_bytes(32, "big")
    assert len(salt) == 32, f"Salt must be 32 bytes, got {len(salt)}"
    return bytes(salt)


def calculate_address(shard_id: int, code: bytes, salt: int | bytes) -> ChecksumAddress:
    """Compute the address a contract will get when deployed.

    Example:

    .. code-block:: python

        code = encode_deploy_data(artifact, args)
        address = calculate_address(1, code, 1234)
        assert get_shard_id(address) == 1

    :param shard_id:
        Target shard

    :param code:
        Creation code including constructor arguments

    :param salt:
        Deployment salt, integer or 32 bytes

    :return:
        Checksummed 20 byte address
    """
    assert 0 <= shard_id < 2**16, f"Bad shard id {shard_id}"
    digest = keccak(bytes(code) + salt_to_bytes(salt))
    raw = shard_id.to_bytes(SHARD_ID_BYTES, "big") + digest[-(20 - SHARD_ID_BYTES) :]
    return to_checksum_address(raw)


def get_shard_id(address: str) -> int:
    """Read the shard id from an address."""
    raw = to_bytes(hexstr=address)
    assert len(raw) == 20, f"Not an address: {address}"
    return int.from_bytes(raw[0:SHARD_ID_BYTES], "big")


def random_salt() -> int:
    return random.randrange(0, MAX_RANDOM_SALT)
