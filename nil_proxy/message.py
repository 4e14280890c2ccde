"""External transaction serialisation and signing.

An external transaction is how an off-chain key holder talks to its smart account:
the account contract checks the signature in ``authData`` and then executes
``data`` against itself. Deploy transactions carry creation code instead and are
not signed.

The node decodes external transactions as an SSZ container::

    kind                  uint8       0 = execution, 1 = deploy
    feeCredit             uint256
    maxPriorityFeePerGas  uint256
    maxFeePerGas          uint256
    to                    Bytes20
    chainId               uint64
    seqno                 uint64
    data                  ByteList
    authData              ByteList

The signed hash is the keccak of the SSZ encoding of the same container
without ``authData``.
"""

from dataclasses import dataclass, replace

import ssz
from eth_keys import keys
from eth_typing import ChecksumAddress
from eth_utils import keccak, to_canonical_address, to_checksum_address
from ssz.sedes import ByteList, ByteVector, uint8, uint64, uint256

#: Transaction kinds understood by the node
EXECUTION_KIND = 0
DEPLOY_KIND = 1

#: Upper bound of the call data list
MAX_DATA_SIZE = 2**24

#: Upper bound of the signature list
MAX_AUTH_DATA_SIZE = 256

_UNSIGNED_FIELDS = (
    ("kind", uint8),
    ("fee_credit", uint256),
    ("max_priority_fee_per_gas", uint256),
    ("max_fee_per_gas", uint256),
    ("to", ByteVector(20)),
    ("chain_id", uint64),
    ("seqno", uint64),
    ("data", ByteList(MAX_DATA_SIZE)),
)


class UnsignedExternalTransaction(ssz.Serializable):
    """SSZ container that is hashed for signing."""

    fields = _UNSIGNED_FIELDS


class SignedExternalTransaction(ssz.Serializable):
    """SSZ container sent to ``eth_sendRawTransaction``."""

    fields = _UNSIGNED_FIELDS + (("auth_data", ByteList(MAX_AUTH_DATA_SIZE)),)


@dataclass(slots=True, frozen=True)
class ExternalMessage:
    """A message sent from outside the chain to an account."""

    #: Deploy the code in ``data`` to ``to``
    is_deploy: bool

    #: Receiving smart account
    to: ChecksumAddress

    #: Chain id, to prevent replays across networks
    chain_id: int

    #: Account sequence number, to prevent replays on the same chain
    seqno: int

    #: How much the account pays for execution, in wei
    fee_credit: int

    #: Call data or deploy payload
    data: bytes

    #: Signature over :py:meth:`signing_hash`
    auth_data: bytes = b""

    #: Gas price cap in wei, zero lets the node pick
    max_fee_per_gas: int = 0

    #: Priority tip in wei
    max_priority_fee_per_gas: int = 0

    def _field_values(self) -> dict:
        return dict(
            kind=DEPLOY_KIND if self.is_deploy else EXECUTION_KIND,
            fee_credit=self.fee_credit,
            max_priority_fee_per_gas=self.max_priority_fee_per_gas,
            max_fee_per_gas=self.max_fee_per_gas,
            to=to_canonical_address(self.to),
            chain_id=self.chain_id,
            seqno=self.seqno,
            data=bytes(self.data),
        )

    def signing_hash(self) -> bytes:
        unsigned = UnsignedExternalTransaction(**self._field_values())
        return keccak(ssz.encode(unsigned))

    def encode(self) -> bytes:
        signed = SignedExternalTransaction(auth_data=bytes(self.auth_data), **self._field_values())
        return ssz.encode(signed)

    @classmethod
    def decode(cls, raw: bytes) -> "ExternalMessage":
        """Parse a serialised signed transaction.

        :raise ssz.exceptions.DeserializationError:
            Not an external transaction
        """
        tx = ssz.decode(bytes(raw), SignedExternalTransaction)
        if tx.kind not in (EXECUTION_KIND, DEPLOY_KIND):
            raise ValueError(f"Unsupported external transaction kind {tx.kind}")
        return cls(
            is_deploy=tx.kind == DEPLOY_KIND,
            to=to_checksum_address(tx.to),
            chain_id=tx.chain_id,
            seqno=tx.seqno,
            fee_credit=tx.fee_credit,
            data=bytes(tx.data),
            auth_data=bytes(tx.auth_data),
            max_fee_per_gas=tx.max_fee_per_gas,
            max_priority_fee_per_gas=tx.max_priority_fee_per_gas,
        )

    def sign(self, private_key: keys.PrivateKey) -> "ExternalMessage":
        """Return a copy with ``auth_data`` set to a 65 byte ``r || s || v`` signature."""
        signature = private_key.sign_msg_hash(self.signing_hash())
        return replace(self, auth_data=signature.to_bytes())

    def recover_public_key(self) -> keys.PublicKey:
        """Recover the signer of a signed message.

        :raise eth_keys.exceptions.BadSignature:
            Signature is malformed
        """
        assert len(self.auth_data) == 65, f"Message is not signed, auth data is {len(self.auth_data)} bytes"
        signature = keys.Signature(signature_bytes=self.auth_data)
        return signature.recover_public_key_from_msg_hash(self.signing_hash())
