from __future__ import annotations
from typing import Any, Optional, Sequence
import logging

from .calls import REBALANCE_SIGNATURES, SELECTOR_SIZE, function_selector
from .config import ProtocolConfig
from .core import CallContext, Ledger, transactional
from .errors import (
    FunctionNotAllowed,
    LengthMismatch,
    LimitExceeded,
    NotExternalActor,
    SilentRevert,
    UnknownVault,
)

logger = logging.getLogger(__name__)

ALLOWED_SELECTORS = frozenset(function_selector(sig) for sig in REBALANCE_SIGNATURES)


class BatchRebalancer:
    """
    Gateway that runs a batch of rebalance calls against known vaults.
    The batch is all-or-nothing; the vaults see the gateway as the caller.
    """
    def __init__(self, ledger: Ledger, registry: Any, config: Optional[ProtocolConfig] = None) -> None:
        self.ledger = ledger
        self.registry = registry
        self.config = config or ProtocolConfig()
        self.address = ledger.new_address("batch_rebalancer")
        ledger.register(self)

    @transactional
    def batch_execute_rebalance(self, ctx: CallContext, vaults: Sequence[str], calls: Sequence[bytes]) -> int:
        if not ctx.is_external or self.ledger.is_contract(ctx.sender):
            raise NotExternalActor(f"{ctx.sender} is not an external account")
        if len(vaults) != len(calls):
            raise LengthMismatch(f"{len(vaults)} vaults, {len(calls)} calls")
        if len(vaults) > self.config.max_batch_size:
            raise LimitExceeded(f"batch of {len(vaults)} above {self.config.max_batch_size}")

        forwarded = ctx.forward(self.address)
        for i, (vault, data) in enumerate(zip(vaults, calls)):
            if not self.registry.is_known_vault(vault):
                raise UnknownVault(f"call {i}: {vault} is not a known vault")
            if bytes(data[:SELECTOR_SIZE]) not in ALLOWED_SELECTORS:
                raise FunctionNotAllowed(f"call {i}: selector {bytes(data[:SELECTOR_SIZE]).hex()} not allowed")
            target = self.ledger.resolve(vault)
            try:
                target.execute(forwarded, data)
            except Exception as exc:
                if str(exc):
                    raise
                raise SilentRevert(f"call {i} to {vault} failed without a reason") from exc
            logger.debug("batch call=%d vault=%s ok", i, vault)
        return len(vaults)
