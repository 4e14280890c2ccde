"""Artifact loading and ABI helpers."""

import json

import pytest
from eth_abi import encode
from eth_utils import keccak, to_checksum_address

from nil_proxy.abi import (
    ArtifactError,
    decode_function_args,
    decode_function_result,
    encode_deploy_data,
    encode_function_call,
    encode_function_result,
    load_artifact,
)
from nil_proxy.testing import LOGIC_ABI, LOGIC_V2_ABI, PROXY_ABI, make_test_bytecode


def test_load_artifacts(artifact_paths):
    """All five Hardhat artifacts load."""
    artifacts = artifact_paths.load()
    assert artifacts.logic.name == "MyLogic"
    assert artifacts.proxy.name == "MyTransparentUpgradeableProxy"
    assert artifacts.proxy_admin.name == "ProxyAdmin"
    assert artifacts.logic_v2.has_function("initializeV2")
    assert not artifacts.logic.has_function("initializeV2")
    assert artifacts.logic.bytecode == make_test_bytecode("MyLogic")


def test_load_artifact_missing(tmp_path):
    with pytest.raises(ArtifactError, match="not found"):
        load_artifact(tmp_path / "nope.json")


def test_load_artifact_malformed(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json")
    with pytest.raises(ArtifactError, match="Could not parse"):
        load_artifact(path)

    path.write_text(json.dumps({"abi": []}))
    with pytest.raises(ArtifactError, match="lacks"):
        load_artifact(path)


def test_load_artifact_interface(tmp_path):
    """Interfaces have no bytecode and cannot be deployed."""
    path = tmp_path / "IFoo.json"
    path.write_text(json.dumps({"abi": [], "bytecode": "0x"}))
    with pytest.raises(ArtifactError, match="empty bytecode"):
        load_artifact(path)


def test_load_foundry_artifact(tmp_path):
    """Foundry nests the bytecode."""
    path = tmp_path / "Foo.json"
    path.write_text(json.dumps({"abi": LOGIC_ABI, "bytecode": {"object": "0x6080"}}))
    artifact = load_artifact(path)
    assert artifact.name == "Foo"
    assert artifact.bytecode == b"\x60\x80"


def test_encode_function_call():
    """Call data is the selector followed by the encoded arguments."""
    data = encode_function_call(LOGIC_ABI, "initialize", [42])
    assert data[0:4] == keccak(text="initialize(uint256)")[0:4]
    assert data[4:] == encode(["uint256"], [42])
    assert decode_function_args(LOGIC_ABI, "initialize", data) == (42,)


def test_encode_function_call_wrong_args():
    with pytest.raises(ValueError):
        encode_function_call(LOGIC_ABI, "initialize", [])

    with pytest.raises(ValueError, match="not found"):
        encode_function_call(LOGIC_ABI, "initializeV2", [1, "a"])


def test_decode_function_args_wrong_selector():
    data = encode_function_call(LOGIC_V2_ABI, "setMessage", ["gm"])
    with pytest.raises(ValueError, match="selector"):
        decode_function_args(LOGIC_V2_ABI, "getMessage", data)


def test_decode_function_result_checksums_addresses():
    address = "0x000187c2e5ae0e5e9e1e0aa0e0e0e0e0e0e0e0e0"
    raw = encode_function_result(PROXY_ABI, "fetchAdmin", [address])
    assert decode_function_result(PROXY_ABI, "fetchAdmin", raw) == to_checksum_address(address)


def test_encode_deploy_data(artifacts):
    """Constructor arguments are appended to the bytecode."""
    assert encode_deploy_data(artifacts.logic) == bytes(artifacts.logic.bytecode)

    owner = "0x0001000000000000000000000000000000000001"
    code = encode_deploy_data(artifacts.proxy_admin, [owner])
    assert code == bytes(artifacts.proxy_admin.bytecode) + encode(["address"], [owner])

    with pytest.raises(ValueError, match="constructor takes 1 arguments"):
        encode_deploy_data(artifacts.proxy_admin, [])
