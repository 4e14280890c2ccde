"""Deploy and upgrade a transparent proxy on =nil;.

Same as the ``deploy-transparent-proxy`` command installed with the package.

Environment variables
---------------------

``NIL_RPC_ENDPOINT``
    =nil; RPC URL. Required.

``NIL``
    Faucet contract address. Required.

``PRIVATE_KEY``, ``SMART_ACCOUNT_ADDRESS``
    Existing smart account. If not given, an account is loaded from
    or generated into ``smartAccount.json``.

``ADMIN_MODE``
    ``contract`` to deploy a ``ProxyAdmin``, ``account`` to use the smart account as the admin.

See :py:mod:`nil_proxy.config` for the rest.

Compile the contracts first, so that Hardhat ``artifacts/`` exists.

.. code-block:: shell

    npx hardhat compile
    LOG_LEVEL=info python scripts/deploy-transparent-proxy.py
"""

from nil_proxy.task import main

if __name__ == "__main__":
    main()
