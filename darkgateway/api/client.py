from typing import Any, Optional, Self, Sequence

from ..io import GatewayConnection, PendingRequest, Response
from ..io.connection import check_handler
from ..io.correlation import Handler
from ..config import GatewayConfig
from ..exceptions import GatewayResponseError, GatewayTimeoutError

"""
===================================================================================
This module implements the gateway commands using the io layer.
===================================================================================
"""

class GatewayClient(GatewayConnection):

    # Command names as sent on the wire
    CMD: dict[str, str] = {
        # Blockchain
        "FETCH_LAST_HEIGHT": "fetch_last_height",                           # Height of the chain tip
        "FETCH_BLOCK_HEADER": "fetch_block_header",                         # Header of a block by height or hash
        "FETCH_BLOCK_TRANSACTION_HASHES": "fetch_block_transaction_hashes", # Transaction hashes in a block
        # Transactions
        "FETCH_TRANSACTION": "fetch_transaction",                           # Transaction by hash
        "FETCH_SPEND": "fetch_spend",                                       # Input spending an outpoint
        # Addresses
        "FETCH_HISTORY": "fetch_history",                                   # History of an address
        "SUBSCRIBE_ADDRESS": "subscribe_address",                           # Start update pushes for an address
        "RENEW_ADDRESS": "renew_address",                                   # Keep an address subscription alive
    }

    @classmethod
    async def from_config(cls, config: GatewayConfig, handle_connect: Optional[Handler] = None, **kwargs) -> Self:
        """Create a client from a GatewayConfig and connect it"""
        options = config.client_options()
        options.update(kwargs)
        return await cls.create(config.uri, handle_connect, **options)

    # ============================
    # REQUEST HELPERS
    # ============================

    def _fetch(self, command: str, params: Sequence[Any], handle_fetch: Handler,
               timeout: Optional[float] = None) -> PendingRequest:
        """Dispatch a command whose handler takes (error, result[0])"""
        check_handler(handle_fetch, "handle_fetch")

        def unpack(response: Response):
            return handle_fetch(response.error, response.value)

        return self.dispatch(command, params, unpack, timeout=timeout)

    async def call(self, command: str, *params: Any, timeout: Optional[float] = None) -> Any:
        """
        Send a command and return result[0].

        Raises GatewayResponseError if the gateway reports an error, and
        GatewayTimeoutError if the deadline passes first.
        """
        response = await self.request(command, params, timeout=timeout)
        if response.error is not None:
            raise GatewayResponseError(command, response.error)
        return response.value

    # ============================
    # BLOCKCHAIN
    # ============================

    def fetch_last_height(self, handle_fetch: Handler, timeout: Optional[float] = None) -> PendingRequest:
        return self._fetch(self.CMD["FETCH_LAST_HEIGHT"], [], handle_fetch, timeout)

    def fetch_block_header(self, index: int | str, handle_fetch: Handler,
                           timeout: Optional[float] = None) -> PendingRequest:
        """Fetch a block header by height or by block hash"""
        return self._fetch(self.CMD["FETCH_BLOCK_HEADER"], [index], handle_fetch, timeout)

    def fetch_block_transaction_hashes(self, index: int | str, handle_fetch: Handler,
                                       timeout: Optional[float] = None) -> PendingRequest:
        return self._fetch(self.CMD["FETCH_BLOCK_TRANSACTION_HASHES"], [index], handle_fetch, timeout)

    # ============================
    # TRANSACTIONS
    # ============================

    def fetch_transaction(self, tx_hash: str, handle_fetch: Handler,
                          timeout: Optional[float] = None) -> PendingRequest:
        return self._fetch(self.CMD["FETCH_TRANSACTION"], [tx_hash], handle_fetch, timeout)

    def fetch_spend(self, outpoint: Any, handle_fetch: Handler,
                    timeout: Optional[float] = None) -> PendingRequest:
        return self._fetch(self.CMD["FETCH_SPEND"], [outpoint], handle_fetch, timeout)

    # ============================
    # ADDRESSES
    # ============================

    def fetch_history(self, address: str, handle_fetch: Handler,
                      timeout: Optional[float] = None) -> PendingRequest:
        return self._fetch(self.CMD["FETCH_HISTORY"], [address], handle_fetch, timeout)

    def subscribe(self, address: str, handle_fetch: Handler, handle_update: Optional[Handler] = None,
                  timeout: Optional[float] = None) -> PendingRequest:
        """
        Subscribe to updates for an address.

        handle_fetch receives (error, result[0]) for the subscribe request.
        handle_update, if given, receives every update object for the address,
        but only from the moment the subscribe request has been answered.
        """
        return self._subscribe(self.CMD["SUBSCRIBE_ADDRESS"], address, handle_fetch, handle_update, timeout)

    def renew(self, address: str, handle_fetch: Handler, handle_update: Optional[Handler] = None,
              timeout: Optional[float] = None) -> PendingRequest:
        """
        Renew an address subscription.

        A new handle_update replaces the previous one. Without handle_update the
        previous update handler is kept.
        """
        return self._subscribe(self.CMD["RENEW_ADDRESS"], address, handle_fetch, handle_update, timeout)

    def _subscribe(self, command: str, address: str, handle_fetch: Handler,
                   handle_update: Optional[Handler], timeout: Optional[float]) -> PendingRequest:
        check_handler(handle_fetch, "handle_fetch")
        if handle_update is not None:
            check_handler(handle_update, "handle_update")

        def acknowledged(response: Response):
            # Registered before the next frame is routed, even if handle_fetch is async
            try:
                return handle_fetch(response.error, response.value)
            finally:
                if handle_update is not None and not isinstance(response.error, GatewayTimeoutError):
                    self.register_topic(address, lambda update: handle_update(update.payload))

        return self.dispatch(command, [address], acknowledged, timeout=timeout)
