from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar
from collections import deque
from contextlib import contextmanager
import copy
import functools
import hashlib
import logging

from .errors import InvalidAmount, NotFound, TransferFailed

logger = logging.getLogger(__name__)

ONE = 10 ** 18
MAX_UINT256 = 2 ** 256 - 1
ZERO_ADDRESS = "0x" + "00" * 20


# -----------------------------
# Fixed point
# -----------------------------
def mul_fraction(amount: int, fraction: int) -> int:
    return _div_toward_zero(amount * fraction, ONE)


def to_fraction(numerator: int, denominator: int) -> int:
    return _div_toward_zero(numerator * ONE, denominator)


def mul_div(a: int, b: int, denominator: int) -> int:
    return _div_toward_zero(a * b, denominator)


def div_round_up(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


def _div_toward_zero(numerator: int, denominator: int) -> int:
    q = abs(numerator) // abs(denominator)
    return q if (numerator >= 0) == (denominator > 0) else -q


def format_balances(balances: Dict[str, int], decimals: int = 18) -> str:
    if not balances:
        return "(empty)"
    scale = 10 ** decimals
    items = sorted(balances.items(), key=lambda kv: kv[0])
    return ", ".join(f"{account[:10]}:{amount / scale:.4f}" for account, amount in items)


# -----------------------------
# Events
# -----------------------------
@dataclass
class Event:
    tick: int
    event_type: str
    emitter: Optional[str] = None
    args: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        row = {"tick": self.tick, "event_type": self.event_type, "emitter": self.emitter}
        row.update(self.args)
        return row


class EventLog:
    def __init__(self, maxlen: Optional[int] = None) -> None:
        self.events = deque(maxlen=maxlen)
        self.appended: int = 0

    def add(self, e: Event) -> None:
        self.events.append(e)
        self.appended += 1

    def tail(self, n: int = 200) -> List[Event]:
        if n <= 0:
            return []
        if n >= len(self.events):
            return list(self.events)
        return list(self.events)[-n:]

    def filter(self, event_type: Optional[str] = None, emitter: Optional[str] = None) -> List[Event]:
        return [
            e for e in self.events
            if (event_type is None or e.event_type == event_type)
            and (emitter is None or e.emitter == emitter)
        ]

    def since(self, mark: int) -> List[Event]:
        n = min(self.appended - mark, len(self.events))
        return list(self.events)[-n:] if n > 0 else []

    def mark(self) -> int:
        return self.appended

    def rollback(self, mark: int) -> None:
        # events evicted by maxlen during the failed call cannot be restored
        drop = min(self.appended - mark, len(self.events))
        for _ in range(drop):
            self.events.pop()
        self.appended = mark


# -----------------------------
# Call context
# -----------------------------
@dataclass(frozen=True)
class CallContext:
    """Who is calling: ``sender`` is the immediate caller, ``origin`` the account that started the call."""
    sender: str
    origin: str

    @classmethod
    def external(cls, account: str) -> "CallContext":
        return cls(sender=account, origin=account)

    @property
    def is_external(self) -> bool:
        return self.sender == self.origin

    def forward(self, sender: str) -> "CallContext":
        return CallContext(sender=sender, origin=self.origin)


# -----------------------------
# Ledger
# -----------------------------
@dataclass
class _Snapshot:
    states: List[Tuple[Any, dict]]
    n_objects: int
    contracts: Dict[str, Any]
    nonce: int
    log_mark: int


class Ledger:
    """
    Single-writer host for every stateful component. Components register
    themselves on construction; ``atomic()`` snapshots all of them and
    restores the snapshot if the wrapped call raises.
    """
    def __init__(self, event_log_maxlen: Optional[int] = None) -> None:
        self.tick: int = 0
        self.log = EventLog(maxlen=event_log_maxlen)
        self._objects: List[Any] = []
        self._contracts: Dict[str, Any] = {}
        self._nonce: int = 0
        self._depth: int = 0

    def new_address(self, label: str = "account") -> str:
        self._nonce += 1
        digest = hashlib.sha256(f"{label}:{self._nonce}".encode()).hexdigest()
        return "0x" + digest[:40]

    def register(self, obj: Any) -> None:
        self._objects.append(obj)
        address = getattr(obj, "address", None)
        if address is not None:
            self._contracts[address] = obj

    def resolve(self, address: str) -> Any:
        obj = self._contracts.get(address)
        if obj is None:
            raise NotFound(f"no contract at {address}")
        return obj

    def is_contract(self, address: str) -> bool:
        return address in self._contracts

    def emit(self, emitter: str, event_type: str, **args: Any) -> None:
        self.log.add(Event(self.tick, event_type, emitter=emitter, args=args))

    @property
    def depth(self) -> int:
        return self._depth

    @contextmanager
    def atomic(self):
        saved = self._snapshot()
        self._depth += 1
        try:
            yield
        except Exception as exc:
            self._restore(saved)
            logger.debug("rolled back call at depth=%d reason=%s", self._depth, getattr(exc, "reason", type(exc).__name__))
            raise
        finally:
            self._depth -= 1

    def _snapshot(self) -> _Snapshot:
        memo: Dict[int, Any] = {id(obj): obj for obj in self._objects}
        memo[id(self)] = self
        states = [(obj, copy.deepcopy(obj.__dict__, memo)) for obj in self._objects]
        return _Snapshot(
            states=states,
            n_objects=len(self._objects),
            contracts=dict(self._contracts),
            nonce=self._nonce,
            log_mark=self.log.mark(),
        )

    def _restore(self, saved: _Snapshot) -> None:
        for obj, state in saved.states:
            obj.__dict__.clear()
            obj.__dict__.update(state)
        del self._objects[saved.n_objects:]
        self._contracts = saved.contracts
        self._nonce = saved.nonce
        self.log.rollback(saved.log_mark)


F = TypeVar("F", bound=Callable[..., Any])


def transactional(fn: F) -> F:
    """Run a component method inside ``self.ledger.atomic()``."""
    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        with self.ledger.atomic():
            return fn(self, *args, **kwargs)
    return wrapper  # type: ignore[return-value]


# -----------------------------
# Fungible token
# -----------------------------
class Token:
    def __init__(self, ledger: Ledger, name: str, symbol: str, decimals: int = 18,
                 address: Optional[str] = None) -> None:
        self.ledger = ledger
        self.address = address or ledger.new_address(symbol)
        self.name = name
        self.symbol = symbol
        self.decimals = decimals
        self.total_supply: int = 0
        self.balances: Dict[str, int] = {}
        self.allowances: Dict[Tuple[str, str], int] = {}
        self.debug_balances: bool = False
        ledger.register(self)

    def balance_of(self, account: str) -> int:
        return self.balances.get(account, 0)

    def allowance(self, owner: str, spender: str) -> int:
        return self.allowances.get((owner, spender), 0)

    def approve(self, ctx: CallContext, spender: str, amount: int) -> bool:
        self.allowances[(ctx.sender, spender)] = int(amount)
        self.ledger.emit(self.address, "Approval", owner=ctx.sender, spender=spender, amount=int(amount))
        return True

    def transfer(self, ctx: CallContext, to: str, amount: int) -> bool:
        self._transfer(ctx.sender, to, amount)
        return True

    def transfer_from(self, ctx: CallContext, owner: str, to: str, amount: int) -> bool:
        spender = ctx.sender
        if spender != owner:
            allowed = self.allowance(owner, spender)
            if allowed < amount:
                raise TransferFailed(f"{self.symbol}: allowance {allowed} < {amount}")
            if allowed != MAX_UINT256:
                self.allowances[(owner, spender)] = allowed - amount
        self._transfer(owner, to, amount)
        return True

    def _mint(self, to: str, amount: int) -> None:
        if amount < 0:
            raise InvalidAmount(f"{self.symbol}: negative mint")
        self._debug_balance_change("mint", to, amount)
        self.balances[to] = self.balance_of(to) + amount
        self.total_supply += amount
        self.ledger.emit(self.address, "Transfer", src=ZERO_ADDRESS, dst=to, amount=amount)

    def _burn(self, owner: str, amount: int) -> None:
        balance = self.balance_of(owner)
        if balance < amount:
            raise TransferFailed(f"{self.symbol}: burn amount exceeds balance")
        self._debug_balance_change("burn", owner, -amount)
        self.balances[owner] = balance - amount
        self.total_supply -= amount
        self.ledger.emit(self.address, "Transfer", src=owner, dst=ZERO_ADDRESS, amount=amount)

    def _transfer(self, src: str, dst: str, amount: int) -> None:
        if amount < 0:
            raise InvalidAmount(f"{self.symbol}: negative transfer")
        balance = self.balance_of(src)
        if balance < amount:
            raise TransferFailed(f"{self.symbol}: transfer amount exceeds balance")
        self._debug_balance_change("transfer_out", src, -amount)
        self.balances[src] = balance - amount
        self.balances[dst] = self.balance_of(dst) + amount
        self.ledger.emit(self.address, "Transfer", src=src, dst=dst, amount=amount)

    def _debug_balance_change(self, action: str, account: str, delta: int) -> None:
        if not self.debug_balances or not logger.isEnabledFor(logging.DEBUG):
            return
        logger.debug(
            "[BAL] token=%s action=%s account=%s delta=%d holders={ %s }",
            self.symbol,
            action,
            account,
            delta,
            format_balances(self.balances, self.decimals),
        )


class MintableToken(Token):
    """Token with an open faucet, used for simulated underlying assets."""

    def mint(self, to: str, amount: int) -> None:
        self._mint(to, amount)

    def burn(self, owner: str, amount: int) -> None:
        self._burn(owner, amount)
