"""Read-only and broadcast access to a =nil; node.

:py:class:`PublicClient` is a thin typed layer over the JSON-RPC methods
the deployment needs. It does not sign anything; see
:py:mod:`nil_proxy.smart_account` for that.

Transactions on =nil; are asynchronous: the receipt of an external message
spawns outgoing internal messages, each with its own receipt that appears
later, possibly on another shard. A transaction is *completed* only when
the whole receipt tree has landed. :py:meth:`PublicClient.wait_till_completed`
polls for that.
"""

import logging
import time
from typing import Any

from eth_typing import ChecksumAddress, HexStr
from eth_utils import to_hex
from hexbytes import HexBytes
from web3 import Web3

logger = logging.getLogger(__name__)

#: Crash unless a transaction completes in 2 minutes
DEFAULT_FINALITY_TIMEOUT = 120.0

#: How often we poll for receipts
DEFAULT_POLL_INTERVAL = 1.0


class RPCError(Exception):
    """Node returned a JSON-RPC error object."""

    def __init__(self, method: str, code: int | None, message: str, data: Any = None):
        self.method = method
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"RPC call {method} failed with code {code}: {message}")


class TransactionFailed(Exception):
    """A transaction or one of its outgoing messages failed."""

    def __init__(self, tx_hash: str, receipts: list[dict]):
        self.tx_hash = tx_hash
        self.receipts = receipts
        failed = [r for r in receipts if not r.get("success")]
        reasons = ", ".join(str(r.get("errorMessage") or r.get("status") or "unknown") for r in failed)
        super().__init__(f"Transaction {tx_hash} failed: {reasons}")


def flatten_receipts(receipt: dict) -> list[dict]:
    """Walk the receipt tree depth first.

    Receipts of outgoing messages not yet processed are ``None``.
    """
    result = [receipt]
    for out in receipt.get("outReceipts") or []:
        if out is None:
            result.append(None)
        else:
            result.extend(flatten_receipts(out))
    return result


def is_receipt_tree_complete(receipt: dict | None) -> bool:
    if receipt is None:
        return False
    return all(r is not None for r in flatten_receipts(receipt))


class PublicClient:
    """JSON-RPC client for a single =nil; node.

    Example:

    .. code-block:: python

        web3 = create_nil_web3(rpc_url)
        client = PublicClient(web3)
        code = client.get_code(address)
    """

    def __init__(self, web3: Web3):
        assert isinstance(web3, Web3), f"Got {type(web3)}"
        self.web3 = web3

    def __repr__(self) -> str:
        return f"<PublicClient {self.web3.provider}>"

    def make_request(self, method: str, params: list) -> Any:
        """Perform a raw JSON-RPC request.

        :raise RPCError:
            Node responded with an error object
        """
        response = self.web3.provider.make_request(method, params)
        if "error" in response and response["error"]:
            error = response["error"]
            if isinstance(error, dict):
                raise RPCError(method, error.get("code"), error.get("message", ""), error.get("data"))
            raise RPCError(method, None, str(error))
        return response.get("result")

    def call(
        self,
        to: ChecksumAddress | str,
        data: bytes,
        sender: ChecksumAddress | str | None = None,
        block: str = "latest",
    ) -> HexBytes:
        """Execute a read-only call.

        :return:
            Raw return data of the call
        """
        call_args = {"to": to, "data": to_hex(data)}
        if sender:
            call_args["from"] = sender
        result = self.make_request("eth_call", [call_args, block])
        # Nodes return either the bare data or a call result object
        if isinstance(result, dict):
            if result.get("error"):
                raise RPCError("eth_call", None, result["error"])
            result = result.get("data")
        return HexBytes(result or b"")

    def get_code(self, address: ChecksumAddress | str, block: str = "latest") -> HexBytes:
        result = self.make_request("eth_getCode", [address, block])
        return HexBytes(result or b"")

    def get_seqno(self, address: ChecksumAddress | str, block: str = "latest") -> int:
        """Next external message sequence number of an account."""
        result = self.make_request("eth_getTransactionCount", [address, block])
        return int(result, 16) if isinstance(result, str) else int(result)

    def get_balance(self, address: ChecksumAddress | str, block: str = "latest") -> int:
        result = self.make_request("eth_getBalance", [address, block])
        return int(result, 16) if isinstance(result, str) else int(result)

    def get_chain_id(self) -> int:
        result = self.make_request("eth_chainId", [])
        return int(result, 16) if isinstance(result, str) else int(result)

    def get_gas_price(self, shard_id: int) -> int:
        """Current gas price of a shard, in wei."""
        result = self.make_request("eth_gasPrice", [shard_id])
        return int(result, 16) if isinstance(result, str) else int(result)

    def send_raw_message(self, raw: bytes) -> HexStr:
        """Broadcast a serialised external message.

        :return:
            Message hash
        """
        return self.make_request("eth_sendRawTransaction", [to_hex(raw)])

    def get_receipt(self, tx_hash: HexStr | str) -> dict | None:
        return self.make_request("eth_getInTransactionReceipt", [tx_hash])

    def wait_till_completed(
        self,
        tx_hash: HexStr | str,
        timeout: float = DEFAULT_FINALITY_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> list[dict]:
        """Poll until the transaction and all its outgoing messages have receipts.

        :param tx_hash:
            Hash returned when the message was sent

        :param timeout:
            Maximum seconds to wait

        :param poll_interval:
            Seconds between polls

        :return:
            All receipts in the tree, the external message receipt first

        :raise TimeoutError:
            Receipt tree was not complete within the timeout

        :raise TransactionFailed:
            Any of the receipts reports failure
        """
        assert tx_hash, "No transaction hash given"
        start_time = time.time()
        attempt = 0

        while True:
            elapsed = time.time() - start_time
            if elapsed >= timeout:
                raise TimeoutError(f"Transaction {tx_hash} not completed after {timeout}s")

            attempt += 1
            log_level = logging.INFO if attempt == 1 else logging.DEBUG
            logger.log(log_level, "Waiting for %s to complete, attempt=%d, elapsed=%.1fs", tx_hash, attempt, elapsed)

            receipt = self.get_receipt(tx_hash)
            if is_receipt_tree_complete(receipt):
                receipts = flatten_receipts(receipt)
                if not all(r.get("success") for r in receipts):
                    raise TransactionFailed(tx_hash, receipts)
                logger.debug("Transaction %s completed with %d receipts after %.1fs", tx_hash, len(receipts), elapsed)
                return receipts

            time.sleep(poll_interval)
