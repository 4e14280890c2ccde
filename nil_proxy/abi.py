"""Compiled contract artifacts and ABI encoding helpers.

Contracts are compiled by Hardhat outside this package. We only read
the JSON artifacts it leaves behind and use `eth_abi` to build call data
and decode call results.

Example:

.. code-block:: python

    from nil_proxy.abi import ArtifactPaths, encode_function_call, decode_function_result

    artifacts = ArtifactPaths(Path("artifacts")).load()
    call_data = encode_function_call(artifacts.logic.abi, "initialize", [42])
    value = decode_function_result(artifacts.logic.abi, "value", result_bytes)
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

from eth_abi import decode, encode
from eth_utils import function_abi_to_4byte_selector, to_checksum_address
from eth_utils.abi import collapse_if_tuple
from hexbytes import HexBytes

logger = logging.getLogger(__name__)


class ArtifactError(Exception):
    """Compiled contract artifact is missing or malformed."""


#: Hardhat output paths of the contracts we deploy, relative to the artifacts folder
LOGIC_ARTIFACT = Path("contracts/MyLogic.sol/MyLogic.json")
PROXY_ARTIFACT = Path("contracts/TransparentUpgradeableProxy.sol/MyTransparentUpgradeableProxy.json")
PROXY_ADMIN_ARTIFACT = Path("@openzeppelin/contracts/proxy/transparent/ProxyAdmin.sol/ProxyAdmin.json")
LOGIC_V2_ARTIFACT = Path("contracts/MyLogicV2.sol/MyLogicV2.json")
SMART_ACCOUNT_ARTIFACT = Path("@nilfoundation/smart-contracts/contracts/SmartAccount.sol/SmartAccount.json")


@dataclass(slots=True, frozen=True)
class ContractArtifact:
    """Bytecode and ABI of a single compiled contract."""

    #: Contract name, from the artifact or the file name
    name: str

    #: ABI description as a list of JSON entries
    abi: list[dict]

    #: Creation bytecode without constructor arguments
    bytecode: HexBytes

    def has_function(self, name: str) -> bool:
        return any(entry.get("type") == "function" and entry.get("name") == name for entry in self.abi)


def load_artifact(path: Path | str) -> ContractArtifact:
    """Load Hardhat or Foundry JSON artifact.

    :param path:
        Path to the artifact JSON file

    :raise ArtifactError:
        File does not exist or does not look like a compiled contract
    """
    path = Path(path)

    if not path.exists():
        raise ArtifactError(f"Contract artifact not found: {path}\nDid you compile the contracts?")

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ArtifactError(f"Could not parse artifact {path}: {e}") from e

    if "abi" not in data or "bytecode" not in data:
        raise ArtifactError(f"Artifact {path} lacks abi or bytecode keys, got {list(data.keys())}")

    bytecode = data["bytecode"]
    # Foundry stores {"object": "0x..."}
    if isinstance(bytecode, dict):
        bytecode = bytecode.get("object", "")

    if not bytecode or bytecode == "0x":
        raise ArtifactError(f"Artifact {path} has empty bytecode, is it an interface or abstract contract?")

    name = data.get("contractName") or path.stem
    return ContractArtifact(name=name, abi=data["abi"], bytecode=HexBytes(bytecode))


@dataclass(slots=True)
class ProxyArtifacts:
    """All contracts needed for one deploy and upgrade run."""

    logic: ContractArtifact
    proxy: ContractArtifact
    proxy_admin: ContractArtifact
    logic_v2: ContractArtifact

    #: Only loaded when we may need to deploy a smart account
    smart_account: ContractArtifact | None = None


@dataclass(slots=True)
class ArtifactPaths:
    """Where the compiled artifacts live.

    Defaults follow the Hardhat project layout.
    """

    #: Hardhat ``artifacts`` folder
    root: Path

    logic: Path = LOGIC_ARTIFACT
    proxy: Path = PROXY_ARTIFACT
    proxy_admin: Path = PROXY_ADMIN_ARTIFACT
    logic_v2: Path = LOGIC_V2_ARTIFACT
    smart_account: Path = SMART_ACCOUNT_ARTIFACT

    def resolve(self, relative: Path) -> Path:
        return Path(self.root) / relative

    def load(self, smart_account: bool = True) -> ProxyArtifacts:
        """Read the artifacts.

        :param smart_account:
            Also read the smart account contract.

            Not needed when the run uses an existing, deployed account.

        :raise ArtifactError:
            If any of the files is missing
        """
        logger.info("Loading contract artifacts from %s", self.root)
        return ProxyArtifacts(
            logic=load_artifact(self.resolve(self.logic)),
            proxy=load_artifact(self.resolve(self.proxy)),
            proxy_admin=load_artifact(self.resolve(self.proxy_admin)),
            logic_v2=load_artifact(self.resolve(self.logic_v2)),
            smart_account=load_artifact(self.resolve(self.smart_account)) if smart_account else None,
        )


def _get_function_abi(abi: list[dict], name: str, arg_count: int | None = None) -> dict:
    candidates = [e for e in abi if e.get("type") == "function" and e.get("name") == name]
    if not candidates:
        raise ValueError(f"Function {name} not found in ABI")

    if arg_count is not None:
        candidates = [e for e in candidates if len(e.get("inputs", [])) == arg_count]
        if not candidates:
            raise ValueError(f"Function {name} does not take {arg_count} arguments")

    return candidates[0]


def _get_types(params: list[dict]) -> list[str]:
    return [collapse_if_tuple(p) for p in params]


def _normalise_output(abi_type: str, value: Any) -> Any:
    if abi_type == "address":
        return to_checksum_address(value)
    return value


def get_function_selector(abi: list[dict], name: str) -> bytes:
    """4-byte selector of a function in the ABI."""
    return function_abi_to_4byte_selector(_get_function_abi(abi, name))


def encode_function_args(abi: list[dict], name: str, args: Sequence[Any]) -> bytes:
    """ABI encode function arguments without the selector."""
    fn_abi = _get_function_abi(abi, name, len(args))
    return encode(_get_types(fn_abi.get("inputs", [])), list(args))


def encode_function_call(abi: list[dict], name: str, args: Sequence[Any] = ()) -> bytes:
    """Encode call data for a function: selector followed by the arguments.

    :param abi:
        Contract ABI

    :param name:
        Function name.

        For overloaded functions we pick the one matching the argument count.

    :param args:
        Function arguments as Python values

    :return:
        Call data bytes
    """
    fn_abi = _get_function_abi(abi, name, len(args))
    selector = function_abi_to_4byte_selector(fn_abi)
    return selector + encode(_get_types(fn_abi.get("inputs", [])), list(args))


def decode_function_args(abi: list[dict], name: str, data: bytes) -> tuple:
    """Decode call data produced by :py:func:`encode_function_call`.

    :raise ValueError:
        Selector does not match the function
    """
    fn_abi = _get_function_abi(abi, name)
    selector = function_abi_to_4byte_selector(fn_abi)
    data = bytes(data)
    if data[0:4] != selector:
        raise ValueError(f"Call data does not start with {name} selector {selector.hex()}")
    types = _get_types(fn_abi.get("inputs", []))
    values = decode(types, data[4:])
    return tuple(_normalise_output(t, v) for t, v in zip(types, values))


def decode_function_result(abi: list[dict], name: str, data: bytes) -> Any:
    """Decode the return data of a read call.

    :return:
        A single value when the function has one output,
        a tuple otherwise.
    """
    fn_abi = _get_function_abi(abi, name)
    types = _get_types(fn_abi.get("outputs", []))
    values = decode(types, bytes(data))
    values = tuple(_normalise_output(t, v) for t, v in zip(types, values))
    if len(values) == 1:
        return values[0]
    return values


def encode_function_result(abi: list[dict], name: str, values: Sequence[Any]) -> bytes:
    """ABI encode the return values of a function."""
    fn_abi = _get_function_abi(abi, name)
    return encode(_get_types(fn_abi.get("outputs", [])), list(values))


def get_constructor_inputs(abi: list[dict]) -> list[dict]:
    for entry in abi:
        if entry.get("type") == "constructor":
            return entry.get("inputs", [])
    return []


def encode_deploy_data(artifact: ContractArtifact, args: Sequence[Any] = ()) -> bytes:
    """Creation code with ABI-encoded constructor arguments appended.

    :raise ValueError:
        Wrong number of constructor arguments
    """
    inputs = get_constructor_inputs(artifact.abi)
    if len(inputs) != len(args):
        raise ValueError(f"{artifact.name} constructor takes {len(inputs)} arguments, got {len(args)}")

    if not inputs:
        return bytes(artifact.bytecode)

    return bytes(artifact.bytecode) + encode(_get_types(inputs), list(args))
