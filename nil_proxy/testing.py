"""In-process =nil; node for tests and local dry runs.

:py:class:`NilTestProvider` is a web3 provider that answers the JSON-RPC
methods :py:class:`~nil_proxy.client.PublicClient` uses. Instead of
executing EVM bytecode it recognises the creation code written by
:py:func:`write_test_artifacts` and runs Python models of the contracts:

- Smart account, checks signatures and sequence numbers of external messages
- ``MyLogic`` and ``MyLogicV2``
- ``MyTransparentUpgradeableProxy``, delegates to the logic contract with its own storage
- ``ProxyAdmin``, only its owner can upgrade

Example:

.. code-block:: python

    provider = NilTestProvider()
    web3 = Web3(provider)
    artifact_paths = write_test_artifacts(tmp_path)
    client = PublicClient(web3)
"""

import itertools
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_keys.exceptions import BadSignature
from eth_typing import ChecksumAddress
from eth_utils import keccak, to_checksum_address, to_hex
from hexbytes import HexBytes
from web3.providers.base import BaseProvider
from web3.types import RPCEndpoint, RPCResponse

from nil_proxy.abi import (
    ArtifactPaths,
    decode_function_args,
    encode_function_call,
    encode_function_result,
    get_constructor_inputs,
    get_function_selector,
)
from nil_proxy.address import calculate_address, get_shard_id
from nil_proxy.deployment import TRANSPARENT_PROXY_ADMIN_ABI
from nil_proxy.message import ExternalMessage
from nil_proxy.smart_account import SMART_ACCOUNT_INTERFACE_ABI

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

#: Chain id reported by the test node
TEST_CHAIN_ID = 0

#: Faucet address the test node accepts top ups from
TEST_FAUCET_ADDRESS = to_checksum_address("0x0001111111111111111111111111111111111111")

#: Gas price the test node quotes for every shard
TEST_GAS_PRICE = 10_000_000


LOGIC_ABI = [
    {"type": "function", "name": "initialize", "inputs": [{"name": "_value", "type": "uint256"}], "outputs": [], "stateMutability": "nonpayable"},
    {"type": "function", "name": "value", "inputs": [], "outputs": [{"name": "", "type": "uint256"}], "stateMutability": "view"},
]

LOGIC_V2_ABI = [
    {
        "type": "function",
        "name": "initializeV2",
        "inputs": [{"name": "_value", "type": "uint256"}, {"name": "_message", "type": "string"}],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    {"type": "function", "name": "value", "inputs": [], "outputs": [{"name": "", "type": "uint256"}], "stateMutability": "view"},
    {"type": "function", "name": "getMessage", "inputs": [], "outputs": [{"name": "", "type": "string"}], "stateMutability": "view"},
    {"type": "function", "name": "setMessage", "inputs": [{"name": "_message", "type": "string"}], "outputs": [], "stateMutability": "nonpayable"},
]

PROXY_ABI = [
    {
        "type": "constructor",
        "inputs": [
            {"name": "_logic", "type": "address"},
            {"name": "initialOwner", "type": "address"},
            {"name": "_data", "type": "bytes"},
        ],
        "stateMutability": "payable",
    },
    {"type": "function", "name": "fetchAdmin", "inputs": [], "outputs": [{"name": "", "type": "address"}], "stateMutability": "view"},
    {"type": "function", "name": "fetchImplementation", "inputs": [], "outputs": [{"name": "", "type": "address"}], "stateMutability": "view"},
]

PROXY_ADMIN_ABI = [
    {"type": "constructor", "inputs": [{"name": "initialOwner", "type": "address"}], "stateMutability": "nonpayable"},
    {"type": "function", "name": "owner", "inputs": [], "outputs": [{"name": "", "type": "address"}], "stateMutability": "view"},
    {
        "type": "function",
        "name": "upgradeAndCall",
        "inputs": [
            {"name": "proxy", "type": "address"},
            {"name": "implementation", "type": "address"},
            {"name": "data", "type": "bytes"},
        ],
        "outputs": [],
        "stateMutability": "payable",
    },
]

SMART_ACCOUNT_ABI = [{"type": "constructor", "inputs": [{"name": "_pubkey", "type": "bytes"}], "stateMutability": "payable"}] + SMART_ACCOUNT_INTERFACE_ABI


def make_test_bytecode(name: str) -> HexBytes:
    """Fake creation code, unique per contract name."""
    return HexBytes(bytes.fromhex("6080604052") + keccak(text=name))


class Revert(Exception):
    """Simulated contract execution reverted."""


@dataclass(slots=True)
class CallContext:
    #: ``msg.sender``
    sender: ChecksumAddress

    #: ``msg.value``
    value: int = 0


class SimulatedContract:
    """Python model of a deployed contract.

    Functions are methods named after the Solidity function,
    taking ``(ctx, storage, *args)``.
    """

    name: str = ""
    abi: list[dict] = []

    def __init__(self, node: "NilTestProvider", address: ChecksumAddress, ctx: CallContext, args: tuple):
        self.node = node
        self.address = address
        self.storage: dict[str, Any] = {}

    @classmethod
    def get_bytecode(cls) -> HexBytes:
        return make_test_bytecode(cls.name)

    def handle(self, ctx: CallContext, data: bytes) -> bytes:
        return self.dispatch(ctx, data, self.storage)

    def dispatch(self, ctx: CallContext, data: bytes, storage: dict) -> bytes:
        """Run a function against ``storage``, which is a proxy's storage for delegate calls."""
        fn_abi = None
        for entry in self.abi:
            if entry.get("type") == "function" and get_function_selector(self.abi, entry["name"]) == data[0:4]:
                fn_abi = entry
                break

        if fn_abi is None:
            raise Revert(f"{self.name}: function selector {data[0:4].hex()} was not recognized")

        try:
            args = decode_function_args(self.abi, fn_abi["name"], data)
        except DecodingError as e:
            raise Revert(f"{self.name}: bad arguments for {fn_abi['name']}") from e

        result = getattr(self, fn_abi["name"])(ctx, storage, *args)
        if not fn_abi.get("outputs"):
            return b""
        return encode_function_result(self.abi, fn_abi["name"], [result])


class SimulatedSmartAccount(SimulatedContract):
    name = "SmartAccount"
    abi = SMART_ACCOUNT_ABI

    def __init__(self, node, address, ctx, args):
        super().__init__(node, address, ctx, args)
        self.pubkey = bytes(args[0])

    def getPubkey(self, ctx, storage):
        return self.pubkey


class SimulatedLogic(SimulatedContract):
    name = "MyLogic"
    abi = LOGIC_ABI

    def initialize(self, ctx, storage, value):
        if storage.get("initialized", 0) >= 1:
            raise Revert("InvalidInitialization")
        storage["initialized"] = 1
        storage["value"] = value

    def value(self, ctx, storage):
        return storage.get("value", 0)


class SimulatedLogicV2(SimulatedContract):
    name = "MyLogicV2"
    abi = LOGIC_V2_ABI

    def initializeV2(self, ctx, storage, value, message):
        if storage.get("initialized", 0) >= 2:
            raise Revert("InvalidInitialization")
        storage["initialized"] = 2
        storage["value"] = value
        storage["message"] = message

    def value(self, ctx, storage):
        return storage.get("value", 0)

    def getMessage(self, ctx, storage):
        return storage.get("message", "")

    def setMessage(self, ctx, storage, message):
        storage["message"] = message


class SimulatedProxy(SimulatedContract):
    """Transparent proxy.

    The admin may only call ``upgradeToAndCall``, everybody else
    is delegated to the implementation.
    """

    name = "MyTransparentUpgradeableProxy"
    abi = PROXY_ABI

    def __init__(self, node, address, ctx, args):
        super().__init__(node, address, ctx, args)
        logic, admin, data = args
        self.storage["_admin"] = to_checksum_address(admin)
        self._upgrade_to_and_call(ctx, logic, data)

    def _upgrade_to_and_call(self, ctx: CallContext, implementation: str, data: bytes):
        implementation = to_checksum_address(implementation)
        if self.node.get_contract(implementation) is None:
            raise Revert(f"ERC1967InvalidImplementation({implementation})")
        self.storage["_implementation"] = implementation
        if data:
            self.node.get_contract(implementation).dispatch(ctx, data, self.storage)

    def handle(self, ctx, data):
        selector = bytes(data[0:4])
        if selector in (get_function_selector(self.abi, "fetchAdmin"), get_function_selector(self.abi, "fetchImplementation")):
            return self.dispatch(ctx, data, self.storage)

        if ctx.sender == self.storage["_admin"]:
            if selector != get_function_selector(TRANSPARENT_PROXY_ADMIN_ABI, "upgradeToAndCall"):
                raise Revert("ProxyDeniedAdminAccess")
            implementation, init_data = decode_function_args(TRANSPARENT_PROXY_ADMIN_ABI, "upgradeToAndCall", data)
            self._upgrade_to_and_call(ctx, implementation, init_data)
            return b""

        implementation = self.node.get_contract(self.storage["_implementation"])
        return implementation.dispatch(ctx, data, self.storage)

    def fetchAdmin(self, ctx, storage):
        return storage["_admin"]

    def fetchImplementation(self, ctx, storage):
        return storage["_implementation"]


class SimulatedProxyAdmin(SimulatedContract):
    name = "ProxyAdmin"
    abi = PROXY_ADMIN_ABI

    def __init__(self, node, address, ctx, args):
        super().__init__(node, address, ctx, args)
        self.storage["owner"] = to_checksum_address(args[0])

    def owner(self, ctx, storage):
        return storage["owner"]

    def upgradeAndCall(self, ctx, storage, proxy, implementation, data):
        if ctx.sender != storage["owner"]:
            raise Revert(f"OwnableUnauthorizedAccount({ctx.sender})")
        call_data = encode_function_call(TRANSPARENT_PROXY_ADMIN_ABI, "upgradeToAndCall", [implementation, data])
        self.node.internal_call(self.address, proxy, ctx.value, call_data)


#: Contract models by artifact name
CONTRACT_MODELS: dict[str, type[SimulatedContract]] = {
    model.name: model
    for model in (
        SimulatedSmartAccount,
        SimulatedLogic,
        SimulatedLogicV2,
        SimulatedProxy,
        SimulatedProxyAdmin,
    )
}


def write_test_artifacts(root: Path) -> ArtifactPaths:
    """Write Hardhat style artifacts the test node can execute.

    :return:
        Paths pointing to the written files
    """
    paths = ArtifactPaths(root=Path(root))
    files = {
        paths.logic: SimulatedLogic,
        paths.logic_v2: SimulatedLogicV2,
        paths.proxy: SimulatedProxy,
        paths.proxy_admin: SimulatedProxyAdmin,
        paths.smart_account: SimulatedSmartAccount,
    }
    for relative, model in files.items():
        path = paths.resolve(relative)
        path.parent.mkdir(parents=True, exist_ok=True)
        artifact = {
            "_format": "hh-sol-artifact-1",
            "contractName": model.name,
            "abi": model.abi,
            "bytecode": to_hex(model.get_bytecode()),
        }
        path.write_text(json.dumps(artifact, indent=2), encoding="utf-8")
    return paths


class NilTestProvider(BaseProvider):
    """Simulated =nil; node.

    :param receipt_delay_polls:
        How many receipt polls show a transaction as still in progress

    :param hold_receipts:
        Never return receipts, for testing timeouts
    """

    def __init__(self, chain_id: int = TEST_CHAIN_ID, faucet_address: str = TEST_FAUCET_ADDRESS, receipt_delay_polls: int = 0, hold_receipts: bool = False):
        super().__init__()
        self.chain_id = chain_id
        self.faucet_address = to_checksum_address(faucet_address)
        self.receipt_delay_polls = receipt_delay_polls
        self.hold_receipts = hold_receipts

        self.balances: dict[ChecksumAddress, int] = {}
        self.code: dict[ChecksumAddress, bytes] = {}
        self.contracts: dict[ChecksumAddress, SimulatedContract] = {}
        self.seqnos: dict[ChecksumAddress, int] = {}
        self.receipts: dict[str, dict] = {}

        #: All external messages received, decoded
        self.messages: list[ExternalMessage] = []

        self._pending_polls: dict[str, int] = {}
        self._method_errors: dict[str, dict] = {}
        self._broken_selectors: set[bytes] = set()
        self._request_counter = itertools.count()
        self._bytecodes = {bytes(model.get_bytecode()): model for model in CONTRACT_MODELS.values()}

    def is_connected(self, show_traceback: bool = False) -> bool:
        return True

    def fail_method(self, method: str, message: str, code: int = -32000):
        """Make all further requests to an RPC method return an error."""
        self._method_errors[method] = {"code": code, "message": message}

    def restore_method(self, method: str):
        """Undo :py:meth:`fail_method`."""
        self._method_errors.pop(method, None)

    def break_read(self, abi: list[dict], function_name: str):
        """Make ``eth_call`` of a function return an error."""
        self._broken_selectors.add(get_function_selector(abi, function_name))

    def get_contract(self, address: str) -> SimulatedContract | None:
        return self.contracts.get(to_checksum_address(address))

    def make_request(self, method: RPCEndpoint, params: Any) -> RPCResponse:
        request_id = next(self._request_counter)
        logger.debug("Test node request %s %s", method, params)

        if method in self._method_errors:
            return {"jsonrpc": "2.0", "id": request_id, "error": self._method_errors[method]}

        handler = getattr(self, "_rpc_" + method, None)
        if handler is None:
            return {"jsonrpc": "2.0", "id": request_id, "error": {"code": -32601, "message": f"Method {method} not found"}}

        try:
            result = handler(*params)
        except Revert as e:
            return {"jsonrpc": "2.0", "id": request_id, "error": {"code": 3, "message": f"execution reverted: {e}"}}

        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    #
    # Execution
    #

    def _snapshot(self) -> tuple:
        return (
            dict(self.balances),
            dict(self.code),
            dict(self.contracts),
            {address: dict(contract.storage) for address, contract in self.contracts.items()},
        )

    def _restore(self, snapshot: tuple):
        balances, code, contracts, storages = snapshot
        self.balances = balances
        self.code = code
        self.contracts = contracts
        for address, storage in storages.items():
            self.contracts[address].storage = storage

    def _transfer(self, sender: ChecksumAddress, to: ChecksumAddress, value: int):
        if value == 0:
            return
        if self.balances.get(sender, 0) < value:
            raise Revert(f"Insufficient balance of {sender} to send {value}")
        self.balances[sender] -= value
        self.balances[to] = self.balances.get(to, 0) + value

    def create_contract(self, sender: ChecksumAddress, address: ChecksumAddress, code: bytes, value: int = 0) -> SimulatedContract:
        if address in self.contracts:
            raise Revert(f"Contract already exists at {address}")

        for bytecode, model in self._bytecodes.items():
            if code.startswith(bytecode):
                break
        else:
            raise Revert("Unknown creation code")

        inputs = get_constructor_inputs(model.abi)
        args = decode([i["type"] for i in inputs], code[len(bytecode):]) if inputs else ()
        self._transfer(sender, address, value)
        ctx = CallContext(sender=sender, value=value)
        contract = model(self, address, ctx, args)
        self.contracts[address] = contract
        self.code[address] = code
        return contract

    def internal_call(self, sender: ChecksumAddress, to: ChecksumAddress, value: int, data: bytes) -> bytes:
        to = to_checksum_address(to)
        self._transfer(sender, to, value)
        contract = self.contracts.get(to)
        if contract is None:
            if data:
                raise Revert(f"No contract at {to}")
            return b""
        return contract.handle(CallContext(sender=sender, value=value), bytes(data))

    def _new_receipt(self, message_hash: str, success: bool, error: str = "") -> dict:
        return {
            "messageHash": message_hash,
            "success": success,
            "status": "Success" if success else "ExecutionReverted",
            "errorMessage": error,
            "outReceipts": [],
        }

    def _run_internal(self, message_hash: str, fn) -> dict:
        snapshot = self._snapshot()
        try:
            fn()
        except Revert as e:
            self._restore(snapshot)
            logger.debug("Internal message %s reverted: %s", message_hash, e)
            return self._new_receipt(message_hash, False, str(e))
        return self._new_receipt(message_hash, True)

    def _store_receipt(self, tx_hash: str, receipt: dict):
        self.receipts[tx_hash] = receipt
        self._pending_polls[tx_hash] = self.receipt_delay_polls

    def _execute_deploy(self, tx_hash: str, message: ExternalMessage) -> dict:
        code, salt = message.data[:-32], int.from_bytes(message.data[-32:], "big")
        expected = calculate_address(get_shard_id(message.to), code, salt)
        if expected != message.to:
            return self._new_receipt(tx_hash, False, f"Deploy address mismatch, expected {expected}")
        if self.balances.get(message.to, 0) == 0:
            return self._new_receipt(tx_hash, False, "Insufficient balance")
        return self._run_internal(tx_hash, lambda: self.create_contract(message.to, message.to, code))

    def _execute_external(self, tx_hash: str, message: ExternalMessage) -> dict:
        account = self.contracts.get(message.to)
        if not isinstance(account, SimulatedSmartAccount):
            return self._new_receipt(tx_hash, False, f"No smart account at {message.to}")

        if message.chain_id != self.chain_id:
            return self._new_receipt(tx_hash, False, f"Wrong chain id {message.chain_id}")

        if message.seqno != self.seqnos.get(message.to, 0):
            return self._new_receipt(tx_hash, False, f"Seqno gap, got {message.seqno}")

        try:
            public_key = message.recover_public_key()
        except (BadSignature, AssertionError, ValueError):
            return self._new_receipt(tx_hash, False, "Invalid signature")

        if public_key.to_compressed_bytes() != account.pubkey:
            return self._new_receipt(tx_hash, False, "Invalid signature")

        self.seqnos[message.to] = message.seqno + 1
        receipt = self._new_receipt(tx_hash, True)
        out_hash = to_hex(keccak(HexBytes(tx_hash) + b"\x00"))
        selector = message.data[0:4]

        if selector == get_function_selector(SMART_ACCOUNT_INTERFACE_ABI, "asyncDeploy"):
            shard_id, value, code, salt = decode_function_args(SMART_ACCOUNT_INTERFACE_ABI, "asyncDeploy", message.data)
            address = calculate_address(shard_id, code, salt)
            receipt["outReceipts"].append(self._run_internal(out_hash, lambda: self.create_contract(message.to, address, code, value)))
        elif selector == get_function_selector(SMART_ACCOUNT_INTERFACE_ABI, "asyncCall"):
            dst, refund_to, bounce_to, value, call_data = decode_function_args(SMART_ACCOUNT_INTERFACE_ABI, "asyncCall", message.data)
            receipt["outReceipts"].append(self._run_internal(out_hash, lambda: self.internal_call(message.to, dst, value, call_data)))
        else:
            receipt["success"] = False
            receipt["status"] = "ExecutionReverted"
            receipt["errorMessage"] = "Unknown smart account function"

        return receipt

    #
    # RPC methods
    #

    def _rpc_eth_chainId(self):
        return hex(self.chain_id)

    def _rpc_eth_gasPrice(self, shard_id):
        return hex(TEST_GAS_PRICE)

    def _rpc_eth_getCode(self, address, block="latest"):
        return to_hex(self.code.get(to_checksum_address(address), b""))

    def _rpc_eth_getBalance(self, address, block="latest"):
        return hex(self.balances.get(to_checksum_address(address), 0))

    def _rpc_eth_getTransactionCount(self, address, block="latest"):
        return hex(self.seqnos.get(to_checksum_address(address), 0))

    def _rpc_eth_call(self, call: dict, block="latest"):
        data = HexBytes(call.get("data", "0x"))
        if bytes(data[0:4]) in self._broken_selectors:
            raise Revert(f"Read {data[0:4].hex()} broken by test")

        sender = to_checksum_address(call.get("from") or ZERO_ADDRESS)
        contract = self.get_contract(call["to"])
        if contract is None:
            return "0x"

        snapshot = self._snapshot()
        try:
            return to_hex(contract.handle(CallContext(sender=sender), bytes(data)))
        finally:
            self._restore(snapshot)

    def _rpc_eth_sendRawTransaction(self, raw: str):
        raw = HexBytes(raw)
        tx_hash = to_hex(keccak(raw))
        message = ExternalMessage.decode(raw)
        self.messages.append(message)

        if message.max_fee_per_gas < TEST_GAS_PRICE:
            receipt = self._new_receipt(tx_hash, False, f"Max fee per gas {message.max_fee_per_gas} is below the gas price")
        elif message.is_deploy:
            receipt = self._execute_deploy(tx_hash, message)
        else:
            receipt = self._execute_external(tx_hash, message)

        self._store_receipt(tx_hash, receipt)
        return tx_hash

    def _rpc_eth_getInTransactionReceipt(self, tx_hash: str):
        if self.hold_receipts:
            return None

        receipt = self.receipts.get(tx_hash)
        if receipt is None:
            return None

        if self._pending_polls.get(tx_hash, 0) > 0:
            self._pending_polls[tx_hash] -= 1
            if not receipt["outReceipts"]:
                return None
            # External message processed, outgoing messages still in flight
            return dict(receipt, outReceipts=[None] * len(receipt["outReceipts"]))

        return receipt

    def _rpc_faucet_topUpViaFaucet(self, faucet_address: str, address: str, amount: str):
        if to_checksum_address(faucet_address) != self.faucet_address:
            raise Revert(f"Unknown faucet {faucet_address}")
        address = to_checksum_address(address)
        tx_hash = to_hex(keccak(text=f"faucet:{address}:{amount}:{len(self.receipts)}"))
        self.balances[address] = self.balances.get(address, 0) + int(amount, 16)
        receipt = self._new_receipt(tx_hash, True)
        receipt["outReceipts"].append(self._new_receipt(to_hex(keccak(text=tx_hash)), True))
        self._store_receipt(tx_hash, receipt)
        return tx_hash
