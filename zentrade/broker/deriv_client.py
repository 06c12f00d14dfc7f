"""Deriv streaming API client.

Typed request helpers on top of ``SessionManager``: tick and balance streams,
proposals, purchases, contract status lookups and portfolio scans.
"""

import logging
from typing import Any, Callable, Optional

from zentrade.broker.messages import (
    BalanceMessage,
    BuyMessage,
    ContractMessage,
    HistoryMessage,
    Message,
    PortfolioMessage,
    ProposalMessage,
)
from zentrade.broker.models import (
    Balance,
    BuyReceipt,
    ContractUpdate,
    Proposal,
    Subscription,
    SubscriptionType,
    Tick,
)
from zentrade.broker.session import ConnectionState, SessionManager
from zentrade.errors import ApiError

logger = logging.getLogger("zentrade.client")


def _expect(reply: Message, kind: type) -> Any:
    if not isinstance(reply, kind):
        raise ApiError(
            "UnexpectedResponse",
            f"Expected {kind.__name__}, got {type(reply).__name__}",
        )
    return reply


class DerivClient:
    """Async client for one Deriv API session."""

    def __init__(self, session: SessionManager) -> None:
        self._session = session

    # ── Session passthrough ──────────────────────────────────────────────

    @property
    def session(self) -> SessionManager:
        return self._session

    @property
    def authorized(self) -> bool:
        return self._session.authorized

    @property
    def state(self) -> ConnectionState:
        return self._session.state

    @property
    def has_credentials(self) -> bool:
        return self._session.has_credentials

    @property
    def last_auth_error(self) -> Optional[str]:
        return self._session.last_auth_error

    @property
    def currency(self) -> Optional[str]:
        account = self._session.account
        return account.currency if account else None

    async def connect(self) -> None:
        await self._session.connect()

    async def close(self) -> None:
        await self._session.close()

    def add_listener(self, message_type: type, callback: Callable[[Any], None]) -> None:
        self._session.add_listener(message_type, callback)

    def on_state_change(self, callback: Callable[[ConnectionState], None]) -> None:
        self._session.on_state_change(callback)

    def on_error(self, callback: Callable[[str], None]) -> None:
        self._session.on_error(callback)

    # ── Streams ──────────────────────────────────────────────────────────

    async def subscribe_ticks(self, symbol: str) -> Subscription:
        """Start the tick stream for *symbol*; samples reach ``TickMessage`` listeners."""
        sub = await self._session.subscribe(SubscriptionType.TICKS, {"ticks": symbol})
        logger.info("Subscribed to %s ticks (%s)", symbol, sub.subscription_id)
        return sub

    async def subscribe_balance(self) -> Subscription:
        return await self._session.subscribe(SubscriptionType.BALANCE, {"balance": 1})

    async def subscribe_contract(self, contract_id: str) -> Subscription:
        return await self._session.subscribe(
            SubscriptionType.CONTRACT,
            {"proposal_open_contract": 1, "contract_id": int(contract_id)},
        )

    async def forget_contract(self, contract_id: str) -> None:
        """Stop the contract stream for *contract_id*, if one is registered."""
        sub = self._session.find_subscription(
            SubscriptionType.CONTRACT, contract_id=int(contract_id)
        )
        if sub is not None:
            await self._session.forget(sub)

    async def forget(self, subscription: Subscription) -> None:
        await self._session.forget(subscription)

    # ── Queries ──────────────────────────────────────────────────────────

    async def get_balance(self) -> Balance:
        reply = await self._session.send_and_await({"balance": 1})
        return _expect(reply, BalanceMessage).balance

    async def get_latest_tick(self, symbol: str) -> Optional[Tick]:
        """Poll the most recent tick through ``ticks_history``."""
        reply = await self._session.send_and_await(
            {"ticks_history": symbol, "count": 1, "end": "latest", "style": "ticks"}
        )
        history = _expect(reply, HistoryMessage)
        if not history.prices:
            return None
        epoch = history.times[-1] if history.times else 0
        return Tick(quote=history.prices[-1], epoch=epoch, symbol=symbol)

    async def get_contract_status(
        self, contract_id: str, as_string: bool = False
    ) -> Optional[ContractUpdate]:
        """Query ``proposal_open_contract`` once.

        Args:
            contract_id: Exchange contract id.
            as_string: Send the id as a string instead of an integer; some
                API gateways only match one of the two shapes.
        """
        cid: Any = str(contract_id) if as_string else int(contract_id)
        reply = await self._session.send_and_await(
            {"proposal_open_contract": 1, "contract_id": cid}
        )
        return _expect(reply, ContractMessage).update

    async def get_portfolio(self) -> tuple[ContractUpdate, ...]:
        reply = await self._session.send_and_await({"portfolio": 1})
        return _expect(reply, PortfolioMessage).contracts

    # ── Trading ──────────────────────────────────────────────────────────

    async def get_proposal(
        self,
        contract_type: str,
        symbol: str,
        amount: float,
        duration: int,
        currency: str = "USD",
        barrier: Optional[int] = None,
    ) -> Proposal:
        """Request a priced proposal.

        Raises:
            ApiError: The API rejected the proposal.
        """
        request = {
            "proposal": 1,
            "amount": round(amount, 2),
            "basis": "stake",
            "contract_type": contract_type,
            "currency": currency,
            "duration": duration,
            "duration_unit": "t",
            "symbol": symbol,
        }
        if barrier is not None:
            request["barrier"] = str(barrier)
        reply = await self._session.send_and_await(request)
        return _expect(reply, ProposalMessage).proposal

    async def buy(self, proposal_id: str, price: float) -> BuyReceipt:
        reply = await self._session.send_and_await({"buy": proposal_id, "price": price})
        return _expect(reply, BuyMessage).receipt
