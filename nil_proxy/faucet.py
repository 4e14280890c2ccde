"""Testnet faucet top-ups."""

import logging

from eth_typing import ChecksumAddress, HexStr

from nil_proxy.client import PublicClient

logger = logging.getLogger(__name__)


class FaucetClient:
    """Request native tokens from a faucet contract through the node RPC."""

    def __init__(self, client: PublicClient):
        self.client = client

    def top_up(
        self,
        smart_account_address: ChecksumAddress | str,
        amount: int,
        faucet_address: ChecksumAddress | str,
    ) -> HexStr:
        """Ask the faucet to send ``amount`` wei to an account.

        The account does not need to be deployed yet.

        :return:
            Hash of the faucet transaction, pass it to
            :py:meth:`PublicClient.wait_till_completed`
        """
        assert amount > 0, f"Bad top up amount {amount}"
        logger.info("Requesting %d wei from faucet %s to %s", amount, faucet_address, smart_account_address)
        return self.client.make_request("faucet_topUpViaFaucet", [faucet_address, smart_account_address, hex(amount)])
