"""Inbound message decoding.

Raw JSON frames are turned into one closed set of message dataclasses at the
transport boundary.  Components only ever see these types, never dicts
shaped by ``msg_type`` string checks.
"""

from dataclasses import dataclass
from typing import Any, Optional, Union

from zentrade.broker.models import Balance, BuyReceipt, ContractUpdate, Proposal, Tick


@dataclass(frozen=True)
class TickMessage:
    tick: Tick
    req_id: Optional[int] = None
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class HistoryMessage:
    symbol: str
    prices: tuple[float, ...]
    times: tuple[int, ...]
    req_id: Optional[int] = None
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class ProposalMessage:
    proposal: Proposal
    req_id: Optional[int] = None
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class BuyMessage:
    receipt: BuyReceipt
    req_id: Optional[int] = None
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class ContractMessage:
    update: Optional[ContractUpdate]
    req_id: Optional[int] = None
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class PortfolioMessage:
    contracts: tuple[ContractUpdate, ...]
    req_id: Optional[int] = None
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class BalanceMessage:
    balance: Balance
    req_id: Optional[int] = None
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class AuthorizeMessage:
    loginid: Optional[str]
    currency: Optional[str]
    balance: Optional[float]
    req_id: Optional[int] = None
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class ForgetMessage:
    forgotten: bool
    req_id: Optional[int] = None
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class PingMessage:
    """Either a server-initiated ping or the ``pong`` reply to our heartbeat."""

    value: Any
    req_id: Optional[int] = None
    subscription_id: Optional[str] = None

    @property
    def is_reply(self) -> bool:
        return self.value == "pong"


@dataclass(frozen=True)
class ErrorMessage:
    code: str
    message: str
    msg_type: Optional[str] = None
    req_id: Optional[int] = None
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class UnknownMessage:
    msg_type: Optional[str]
    data: dict
    req_id: Optional[int] = None
    subscription_id: Optional[str] = None


Message = Union[
    TickMessage,
    HistoryMessage,
    ProposalMessage,
    BuyMessage,
    ContractMessage,
    PortfolioMessage,
    BalanceMessage,
    AuthorizeMessage,
    ForgetMessage,
    PingMessage,
    ErrorMessage,
    UnknownMessage,
]


# ── Decoders ─────────────────────────────────────────────────────────────


def _envelope(data: dict) -> dict:
    req_id = data.get("req_id")
    subscription = data.get("subscription") or {}
    return {
        "req_id": int(req_id) if req_id is not None else None,
        "subscription_id": subscription.get("id"),
    }


def _decode_tick(data: dict, env: dict) -> Message:
    tick = data.get("tick")
    if not tick:
        # Subscribe acknowledgement without a sample.
        return UnknownMessage(msg_type="tick", data=data, **env)
    return TickMessage(
        tick=Tick(
            quote=float(tick["quote"]),
            epoch=int(tick["epoch"]),
            symbol=str(tick.get("symbol", "")),
        ),
        **env,
    )


def _decode_history(data: dict, env: dict) -> Message:
    history = data.get("history") or {}
    return HistoryMessage(
        symbol=str(data.get("echo_req", {}).get("ticks_history", "")),
        prices=tuple(float(p) for p in history.get("prices", [])),
        times=tuple(int(t) for t in history.get("times", [])),
        **env,
    )


def _decode_proposal(data: dict, env: dict) -> Message:
    p = data["proposal"]
    spot = p.get("spot")
    return ProposalMessage(
        proposal=Proposal(
            id=str(p["id"]),
            ask_price=float(p["ask_price"]),
            payout=float(p.get("payout", 0.0)),
            spot=float(spot) if spot is not None else None,
        ),
        **env,
    )


def _decode_buy(data: dict, env: dict) -> Message:
    b = data["buy"]
    transaction_id = b.get("transaction_id")
    return BuyMessage(
        receipt=BuyReceipt(
            contract_id=str(b["contract_id"]),
            buy_price=float(b["buy_price"]),
            payout=float(b.get("payout", 0.0)),
            transaction_id=str(transaction_id) if transaction_id is not None else None,
        ),
        **env,
    )


def _decode_contract(data: dict, env: dict) -> Message:
    poc = data.get("proposal_open_contract") or {}
    update = ContractUpdate.from_payload(poc) if poc.get("contract_id") is not None else None
    return ContractMessage(update=update, **env)


def _decode_portfolio(data: dict, env: dict) -> Message:
    contracts = (data.get("portfolio") or {}).get("contracts", [])
    return PortfolioMessage(
        contracts=tuple(
            ContractUpdate.from_payload(c) for c in contracts if c.get("contract_id") is not None
        ),
        **env,
    )


def _decode_balance(data: dict, env: dict) -> Message:
    b = data["balance"]
    return BalanceMessage(
        balance=Balance(
            balance=float(b["balance"]),
            currency=str(b.get("currency", "USD")),
            loginid=b.get("loginid"),
        ),
        **env,
    )


def _decode_authorize(data: dict, env: dict) -> Message:
    a = data.get("authorize") or {}
    balance = a.get("balance")
    return AuthorizeMessage(
        loginid=a.get("loginid"),
        currency=a.get("currency"),
        balance=float(balance) if balance is not None else None,
        **env,
    )


def _decode_forget(data: dict, env: dict) -> Message:
    return ForgetMessage(forgotten=bool(data.get("forget")), **env)


def _decode_ping(data: dict, env: dict) -> Message:
    return PingMessage(value=data.get("ping"), **env)


_DECODERS = {
    "tick": _decode_tick,
    "history": _decode_history,
    "proposal": _decode_proposal,
    "buy": _decode_buy,
    "proposal_open_contract": _decode_contract,
    "portfolio": _decode_portfolio,
    "balance": _decode_balance,
    "authorize": _decode_authorize,
    "forget": _decode_forget,
    "ping": _decode_ping,
}


def decode_message(data: dict) -> Message:
    """Turn a parsed JSON frame into a typed message.

    The error envelope takes precedence over ``msg_type``.  Unknown types and
    malformed payloads come back as ``UnknownMessage`` rather than raising.

    Args:
        data: The JSON object received from the socket.

    Returns:
        One of the ``Message`` dataclasses.
    """
    env = _envelope(data)
    error = data.get("error")
    if error:
        return ErrorMessage(
            code=str(error.get("code", "UnknownError")),
            message=str(error.get("message", "Unknown error")),
            msg_type=data.get("msg_type"),
            **env,
        )

    msg_type = data.get("msg_type")
    decoder = _DECODERS.get(msg_type)
    if decoder is None:
        return UnknownMessage(msg_type=msg_type, data=data, **env)
    try:
        return decoder(data, env)
    except (KeyError, TypeError, ValueError):
        return UnknownMessage(msg_type=msg_type, data=data, **env)
