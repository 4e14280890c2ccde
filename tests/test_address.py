"""Sharded address derivation."""

import pytest
from eth_utils import is_checksum_address

from nil_proxy.address import calculate_address, get_shard_id, random_salt, salt_to_bytes, MAX_RANDOM_SALT


def test_calculate_address_shard_prefix():
    """The first two bytes of the address are the shard id."""
    address = calculate_address(1, b"\x60\x80", 1234)
    assert is_checksum_address(address)
    assert address.lower().startswith("0x0001")
    assert get_shard_id(address) == 1

    address = calculate_address(3, b"\x60\x80", 1234)
    assert get_shard_id(address) == 3


def test_calculate_address_deterministic():
    """Same code and salt give the same address, anything else a different one."""
    a = calculate_address(1, b"\x60\x80", 1)
    assert a == calculate_address(1, b"\x60\x80", 1)
    assert a != calculate_address(1, b"\x60\x80", 2)
    assert a != calculate_address(1, b"\x60\x81", 1)


def test_salt_int_and_bytes_equivalent():
    assert calculate_address(1, b"\x01", 5) == calculate_address(1, b"\x01", salt_to_bytes(5))


def test_bad_salt():
    with pytest.raises(AssertionError):
        salt_to_bytes(-1)

    with pytest.raises(AssertionError):
        salt_to_bytes(b"\x01")


def test_random_salt_range():
    for _ in range(100):
        assert 0 <= random_salt() < MAX_RANDOM_SALT
