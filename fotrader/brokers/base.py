from abc import ABC, abstractmethod
from typing import AsyncIterator, List
from fotrader.schemas.broker import OrderRequest, OrderResponse, OrderHistoryEntry, Quote, Tick


class BaseBroker(ABC):
    """
    Abstract Base Class for the brokerage capability.
    Everything the signal pipeline and execution engine need from a broker.
    """

    name: str = "base"

    @abstractmethod
    async def authenticate(self) -> bool:
        """Authenticate with the broker API."""
        pass

    async def refresh_session(self) -> bool:
        """Refresh the daily broker session. Defaults to re-authenticating."""
        return await self.authenticate()

    @abstractmethod
    async def get_quote(self, exchange: str, symbol: str) -> Quote:
        """Get real-time quote. Raises BrokerError if unavailable."""
        pass

    @abstractmethod
    async def place_order(self, order: OrderRequest) -> OrderResponse:
        """Place a new order. Failures come back as REJECTED with an empty order_id."""
        pass

    @abstractmethod
    async def get_order_history(self, order_id: str) -> List[OrderHistoryEntry]:
        """Status transitions for an order, oldest first."""
        pass

    @abstractmethod
    async def cancel_order(self, order_id: str, variety: str = "regular") -> OrderResponse:
        """Cancel a pending order."""
        pass

    @abstractmethod
    def stream_ticks(self, instrument_tokens: List[int]) -> AsyncIterator[Tick]:
        """
        Infinite tick stream for the given instruments.

        Reconnects on disconnect with bounded backoff; raises TickStreamError
        once reconnect attempts are exhausted.
        """
        pass

    async def close(self) -> None:
        """Release connections."""
        pass
