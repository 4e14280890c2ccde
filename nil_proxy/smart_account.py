"""Smart account: the on-chain wallet that deploys contracts and sends transactions.

On =nil; there are no externally owned accounts. A key holder controls
a smart account contract, and every action is an external message to it
signed with the key. The account then spawns internal messages
(``asyncDeploy``, ``asyncCall``) on our behalf.

Example:

.. code-block:: python

    account = SmartAccount(client, private_key, address=existing_address)

    result = account.deploy_contract(
        artifact,
        args=[],
        salt=random_salt(),
        fee_credit=DEFAULT_FEE_CREDIT,
    )
    client.wait_till_completed(result.tx_hash)
"""

import logging
from dataclasses import dataclass
from typing import Any, Sequence

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_keys import keys
from eth_typing import ChecksumAddress, HexStr
from eth_utils import to_checksum_address, to_hex
from web3 import Web3

from nil_proxy.abi import ContractArtifact, encode_deploy_data, encode_function_call
from nil_proxy.address import DEFAULT_SHARD_ID, calculate_address, get_shard_id, salt_to_bytes
from nil_proxy.client import DEFAULT_FINALITY_TIMEOUT, DEFAULT_POLL_INTERVAL, PublicClient
from nil_proxy.message import ExternalMessage

logger = logging.getLogger(__name__)

#: Default execution budget for a single message
DEFAULT_FEE_CREDIT = Web3.to_wei("0.001", "ether")

#: The subset of the smart account interface we call
SMART_ACCOUNT_INTERFACE_ABI = [
    {
        "type": "function",
        "name": "asyncDeploy",
        "inputs": [
            {"name": "shardId", "type": "uint256"},
            {"name": "value", "type": "uint256"},
            {"name": "code", "type": "bytes"},
            {"name": "salt", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "payable",
    },
    {
        "type": "function",
        "name": "asyncCall",
        "inputs": [
            {"name": "dst", "type": "address"},
            {"name": "refundTo", "type": "address"},
            {"name": "bounceTo", "type": "address"},
            {"name": "value", "type": "uint256"},
            {"name": "callData", "type": "bytes"},
        ],
        "outputs": [],
        "stateMutability": "payable",
    },
    {
        "type": "function",
        "name": "getPubkey",
        "inputs": [],
        "outputs": [{"name": "", "type": "bytes"}],
        "stateMutability": "view",
    },
]


@dataclass(slots=True, frozen=True)
class DeploymentResult:
    """Where a contract went and which message put it there."""

    #: Deterministic contract address
    address: ChecksumAddress

    #: Hash of the deploying external message
    tx_hash: HexStr


def generate_random_private_key() -> HexStr:
    """New secp256k1 private key as ``0x`` prefixed hex."""
    account = Account.create()
    return to_hex(account.key)


class SmartAccount:
    """Signing handle for a smart account.

    Either bound to an already known ``address``, or a new account
    whose address is derived from the smart account creation code,
    the public key and ``salt``.
    """

    def __init__(
        self,
        client: PublicClient,
        private_key: HexStr | str | bytes,
        address: ChecksumAddress | str | None = None,
        salt: int | None = None,
        shard_id: int = DEFAULT_SHARD_ID,
        code: ContractArtifact | None = None,
    ):
        """
        :param client:
            RPC client used for all chain access

        :param private_key:
            Key controlling the account

        :param address:
            Address of an existing account

        :param salt:
            Salt of the account, needed for the self deploy

        :param shard_id:
            Shard of a new account

        :param code:
            Compiled smart account contract, needed for new accounts
        """
        self.client = client
        self.signer: LocalAccount = Account.from_key(private_key)
        self._private_key = keys.PrivateKey(bytes(self.signer.key))
        self.salt = salt
        self.deploy_code: bytes | None = None
        self._chain_id: int | None = None

        if code is not None:
            self.deploy_code = encode_deploy_data(code, [self.public_key])

        if address:
            self.address = to_checksum_address(address)
            if salt is not None and self.deploy_code is not None:
                derived = calculate_address(get_shard_id(self.address), self.deploy_code, salt)
                if derived != self.address:
                    raise ValueError(f"Salt {salt} and key do not give account address {self.address}, got {derived}")
        else:
            assert salt is not None, "New smart account needs a salt"
            assert self.deploy_code is not None, "New smart account needs the smart account contract code"
            self.address = calculate_address(shard_id, self.deploy_code, salt)

        self.shard_id = get_shard_id(self.address)

    def __repr__(self) -> str:
        return f"<SmartAccount {self.address} shard:{self.shard_id}>"

    @property
    def public_key(self) -> bytes:
        """Compressed 33 byte public key."""
        return self._private_key.public_key.to_compressed_bytes()

    @property
    def private_key(self) -> HexStr:
        return to_hex(self.signer.key)

    def get_chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = self.client.get_chain_id()
        return self._chain_id

    def get_max_fee_per_gas(self) -> int:
        """Gas price cap for our messages: the current price of our shard."""
        return self.client.get_gas_price(self.shard_id)

    def check_deployment_status(self) -> bool:
        """Is there code at the account address."""
        return len(self.client.get_code(self.address)) > 0

    def self_deploy(
        self,
        wait: bool = True,
        fee_credit: int = DEFAULT_FEE_CREDIT,
        timeout: float = DEFAULT_FINALITY_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> HexStr:
        """Deploy the account contract to its own address.

        The account must have been funded first, because
        it pays for its own deployment.

        :raise ValueError:
            We do not know the creation code and salt of this account
        """
        if self.deploy_code is None or self.salt is None:
            raise ValueError(f"Cannot self deploy {self.address}: creation code or salt unknown. Delete the persisted account file to generate a new account.")

        payload = self.deploy_code + salt_to_bytes(self.salt)
        message = ExternalMessage(
            is_deploy=True,
            to=self.address,
            chain_id=self.get_chain_id(),
            seqno=0,
            fee_credit=fee_credit,
            data=payload,
            max_fee_per_gas=self.get_max_fee_per_gas(),
        )
        tx_hash = self.client.send_raw_message(message.encode())
        logger.info("Smart account %s self deploy sent: %s", self.address, tx_hash)
        if wait:
            self.client.wait_till_completed(tx_hash, timeout=timeout, poll_interval=poll_interval)
        return tx_hash

    def send_external(self, data: bytes, fee_credit: int = DEFAULT_FEE_CREDIT) -> HexStr:
        """Sign and send call data to our own account contract."""
        message = ExternalMessage(
            is_deploy=False,
            to=self.address,
            chain_id=self.get_chain_id(),
            seqno=self.client.get_seqno(self.address),
            fee_credit=fee_credit,
            data=data,
            max_fee_per_gas=self.get_max_fee_per_gas(),
        ).sign(self._private_key)
        return self.client.send_raw_message(message.encode())

    def deploy_contract(
        self,
        artifact: ContractArtifact,
        args: Sequence[Any],
        salt: int,
        fee_credit: int = DEFAULT_FEE_CREDIT,
        shard_id: int | None = None,
        value: int = 0,
    ) -> DeploymentResult:
        """Deploy a contract through the account.

        Does not wait for the deployment to complete.

        :param artifact:
            Compiled contract

        :param args:
            Constructor arguments

        :param salt:
            Deployment salt, makes the address unique

        :param fee_credit:
            Execution budget in wei

        :param shard_id:
            Target shard, defaults to the shard of the account

        :param value:
            Native tokens sent to the constructor, in wei
        """
        if shard_id is None:
            shard_id = self.shard_id

        code = encode_deploy_data(artifact, args)
        address = calculate_address(shard_id, code, salt)
        data = encode_function_call(SMART_ACCOUNT_INTERFACE_ABI, "asyncDeploy", [shard_id, value, code, salt])
        tx_hash = self.send_external(data, fee_credit=fee_credit)
        logger.debug("Deploying %s to %s, salt %d, tx %s", artifact.name, address, salt, tx_hash)
        return DeploymentResult(address=address, tx_hash=tx_hash)

    def send_transaction(
        self,
        to: ChecksumAddress | str,
        data: bytes,
        value: int = 0,
        fee_credit: int = DEFAULT_FEE_CREDIT,
    ) -> HexStr:
        """Call a contract through the account.

        Refunds and bounces go back to the account.

        :return:
            Message hash
        """
        call_data = encode_function_call(
            SMART_ACCOUNT_INTERFACE_ABI,
            "asyncCall",
            [to_checksum_address(to), self.address, self.address, value, bytes(data)],
        )
        return self.send_external(call_data, fee_credit=fee_credit)
