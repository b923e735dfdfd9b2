from __future__ import annotations
from typing import Any, Dict, List, Optional, Tuple
import logging

from .adapters import YieldAdapter
from .arrays import OrderedSet, find_index, remove_at, sort_by_descending_score
from .config import ProtocolConfig
from .core import ZERO_ADDRESS, CallContext, Ledger, transactional
from .errors import (
    AlreadyExists,
    InterfaceError,
    LimitExceeded,
    NotApproved,
    NotFound,
    Null,
    Unauthorized,
)

logger = logging.getLogger(__name__)

OWNER_PROTOCOL_ID = 0


def _adapter_interface(adapter: Any) -> Tuple[str, str, str]:
    try:
        return adapter.address, adapter.underlying_asset, adapter.receipt_token
    except AttributeError as exc:
        raise InterfaceError(f"{adapter!r} does not expose address/underlying_asset/receipt_token") from exc


def _address_of(item: Any) -> str:
    return item if isinstance(item, str) else item.address


class AdapterRegistry:
    """
    Directory of protocols, their adapters, the assets they support and the
    vaults deployed for those assets.
    """
    def __init__(self, ledger: Ledger, owner: str, config: Optional[ProtocolConfig] = None) -> None:
        self.ledger = ledger
        self.owner = owner
        self.config = config or ProtocolConfig()
        self.address = ledger.new_address("registry")

        # protocols
        self.protocols_count: int = 0
        self._protocol_ids: Dict[str, int] = {}
        self._protocol_addresses: Dict[int, str] = {}

        # adapters
        self._token_adapters: Dict[str, List[YieldAdapter]] = {}
        self._adapter_for_wrapper: Dict[str, YieldAdapter] = {}
        self._adapter_protocol_ids: Dict[str, int] = {}
        self._supported = OrderedSet()

        # vaults
        self._vault_factories = OrderedSet()
        self._vaults = OrderedSet()
        self._vault_for_asset: Dict[str, str] = {}
        ledger.register(self)

    def _only_owner(self, ctx: CallContext) -> None:
        if ctx.sender != self.owner:
            raise Unauthorized(f"{ctx.sender} is not the registry owner")

    # -----------------------------
    # Protocols
    # -----------------------------
    @transactional
    def add_protocol(self, ctx: CallContext, protocol: str) -> int:
        self._only_owner(ctx)
        if not protocol or protocol == ZERO_ADDRESS:
            raise Null("protocol address is null")
        if protocol in self._protocol_ids:
            raise AlreadyExists(f"protocol {protocol} already registered")
        self.protocols_count += 1
        protocol_id = self.protocols_count
        self._protocol_ids[protocol] = protocol_id
        self._protocol_addresses[protocol_id] = protocol
        self.ledger.emit(self.address, "ProtocolAdded", id=protocol_id, protocol=protocol)
        logger.debug("registry add_protocol id=%d protocol=%s", protocol_id, protocol)
        return protocol_id

    @transactional
    def remove_protocol(self, ctx: CallContext, protocol: str) -> None:
        self._only_owner(ctx)
        protocol_id = self._protocol_ids.pop(protocol, None)
        if protocol_id is None:
            raise NotFound(f"protocol {protocol} not registered")
        del self._protocol_addresses[protocol_id]
        self.ledger.emit(self.address, "ProtocolRemoved", id=protocol_id)

    def get_protocol_id(self, protocol: str) -> int:
        return self._protocol_ids.get(protocol, 0)

    def get_protocol_address(self, protocol_id: int) -> Optional[str]:
        return self._protocol_addresses.get(protocol_id)

    def get_protocol_metadata(self, protocol_id: int) -> Tuple[str, str]:
        address = self._protocol_addresses.get(protocol_id)
        if address is None:
            raise NotFound(f"invalid protocol id {protocol_id}")
        protocol = self.ledger.resolve(address) if self.ledger.is_contract(address) else None
        return address, getattr(protocol, "name", "")

    def get_protocol_for_adapter(self, adapter: Any) -> Optional[str]:
        address = _address_of(adapter)
        if address not in self._adapter_protocol_ids:
            raise NotApproved(f"adapter {address} not registered")
        return self._protocol_addresses.get(self._adapter_protocol_ids[address])

    # -----------------------------
    # Adapters
    # -----------------------------
    @transactional
    def add_adapter(self, ctx: CallContext, adapter: YieldAdapter) -> None:
        protocol_id = self._protocol_ids.get(ctx.sender)
        if protocol_id is None:
            if ctx.sender != self.owner:
                raise NotFound(f"{ctx.sender} is not a registered protocol")
            protocol_id = OWNER_PROTOCOL_ID
        address, underlying, wrapper = _adapter_interface(adapter)
        if wrapper in self._adapter_for_wrapper:
            raise AlreadyExists(f"wrapper {wrapper} already has an adapter")
        adapters = self._token_adapters.setdefault(underlying, [])
        if len(adapters) >= self.config.max_adapters_per_asset:
            raise LimitExceeded(f"asset {underlying} already has {len(adapters)} adapters")
        self._adapter_for_wrapper[wrapper] = adapter
        self._adapter_protocol_ids[address] = protocol_id
        adapters.append(adapter)
        self.ledger.emit(
            self.address, "AdapterAdded",
            adapter=address, protocol_id=protocol_id, underlying=underlying, token=wrapper,
        )
        if self._supported.add(underlying):
            self.ledger.emit(self.address, "SupportAdded", underlying=underlying)
        logger.debug("registry add_adapter adapter=%s underlying=%s protocol_id=%d", address, underlying, protocol_id)

    @transactional
    def add_adapters(self, ctx: CallContext, adapters: List[YieldAdapter]) -> None:
        for adapter in adapters:
            self.add_adapter(ctx, adapter)

    @transactional
    def remove_adapter(self, ctx: CallContext, adapter: YieldAdapter) -> None:
        address, underlying, wrapper = _adapter_interface(adapter)
        protocol_id = self._adapter_protocol_ids.get(address)
        if ctx.sender != self.owner:
            sender_id = self._protocol_ids.get(ctx.sender)
            if sender_id is None or sender_id != protocol_id:
                raise Unauthorized(f"{ctx.sender} may not remove adapter {address}")
        registered = self._adapter_for_wrapper.get(wrapper)
        if registered is None or registered.address != address:
            raise NotFound(f"adapter {address} not registered")
        del self._adapter_for_wrapper[wrapper]
        self._adapter_protocol_ids.pop(address, None)
        adapters = self._token_adapters.get(underlying, [])
        i = find_index([a.address for a in adapters], address)
        if i >= 0:
            remove_at(adapters, i)
        self.ledger.emit(
            self.address, "AdapterRemoved",
            adapter=address, protocol_id=protocol_id, underlying=underlying, token=wrapper,
        )
        if not adapters:
            self._token_adapters.pop(underlying, None)
            self._supported.remove(underlying)
            self.ledger.emit(self.address, "SupportRemoved", underlying=underlying)

    def get_adapters_list(self, asset: str) -> List[YieldAdapter]:
        return list(self._token_adapters.get(asset, []))

    def get_adapters_count(self, asset: str) -> int:
        return len(self._token_adapters.get(asset, []))

    def get_supported_tokens(self) -> List[str]:
        return self._supported.to_list()

    def is_supported(self, asset: str) -> bool:
        return asset in self._supported

    def get_adapter_for_wrapper_token(self, wrapper: str) -> Optional[YieldAdapter]:
        return self._adapter_for_wrapper.get(wrapper)

    def is_approved_adapter(self, adapter: Any) -> bool:
        if isinstance(adapter, str):
            if not self.ledger.is_contract(adapter):
                return False
            adapter = self.ledger.resolve(adapter)
        wrapper = getattr(adapter, "receipt_token", None)
        registered = self._adapter_for_wrapper.get(wrapper) if wrapper is not None else None
        return registered is not None and registered.address == adapter.address

    # -----------------------------
    # Yield ranking
    # -----------------------------
    def best_adapter(self, asset: str) -> Tuple[Optional[YieldAdapter], int]:
        best: Optional[YieldAdapter] = None
        best_yield = 0
        for adapter in self._token_adapters.get(asset, []):
            y = adapter.current_yield()
            if best is None or y > best_yield:
                best, best_yield = adapter, y
        return best, best_yield

    def best_adapter_for_deposit(self, asset: str, amount: int,
                                 exclude: Optional[Any] = None) -> Tuple[Optional[YieldAdapter], int]:
        excluded = _address_of(exclude) if exclude is not None else None
        best: Optional[YieldAdapter] = None
        best_yield = 0
        for adapter in self._token_adapters.get(asset, []):
            if adapter.address == excluded:
                continue
            y = adapter.hypothetical_yield(amount)
            if best is None or y > best_yield:
                best, best_yield = adapter, y
        return best, best_yield

    def get_adapters_sorted_by_yield(self, asset: str) -> Tuple[List[YieldAdapter], List[int]]:
        adapters = self.get_adapters_list(asset)
        return sort_by_descending_score(adapters, [_safe_yield(a, None) for a in adapters])

    def get_adapters_sorted_by_yield_with_deposit(self, asset: str, amount: int,
                                                  exclude: Optional[Any] = None) -> Tuple[List[YieldAdapter], List[int]]:
        excluded = _address_of(exclude) if exclude is not None else None
        adapters = self.get_adapters_list(asset)
        scores = [_safe_yield(a, None if a.address == excluded else amount) for a in adapters]
        return sort_by_descending_score(adapters, scores)

    # -----------------------------
    # Vault directory
    # -----------------------------
    @transactional
    def add_vault_factory(self, ctx: CallContext, factory: str) -> None:
        self._only_owner(ctx)
        if not factory or factory == ZERO_ADDRESS:
            raise Null("factory address is null")
        if not self._vault_factories.add(factory):
            raise AlreadyExists(f"factory {factory} already approved")
        self.ledger.emit(self.address, "VaultFactoryAdded", factory=factory)

    @transactional
    def remove_vault_factory(self, ctx: CallContext, factory: str) -> None:
        self._only_owner(ctx)
        if not self._vault_factories.remove(factory):
            raise NotFound(f"factory {factory} not approved")
        self.ledger.emit(self.address, "VaultFactoryRemoved", factory=factory)

    def get_vault_factories(self) -> List[str]:
        return self._vault_factories.to_list()

    @transactional
    def add_vault(self, ctx: CallContext, vault: Any) -> None:
        if ctx.sender not in self._vault_factories:
            raise Unauthorized(f"{ctx.sender} is not an approved vault factory")
        underlying = vault.underlying_asset
        if underlying in self._vault_for_asset:
            raise AlreadyExists(f"vault already deployed for {underlying}")
        self._vault_for_asset[underlying] = vault.address
        self._vaults.add(vault.address)
        self.ledger.emit(self.address, "VaultAdded", underlying=underlying, vault=vault.address)

    @transactional
    def remove_vault(self, ctx: CallContext, vault: Any) -> None:
        self._only_owner(ctx)
        address = _address_of(vault)
        if not self._vaults.remove(address):
            raise NotFound(f"vault {address} not registered")
        underlying = next(u for u, v in self._vault_for_asset.items() if v == address)
        del self._vault_for_asset[underlying]
        self.ledger.emit(self.address, "VaultRemoved", underlying=underlying, vault=address)

    def get_vaults_list(self) -> List[str]:
        return self._vaults.to_list()

    def have_vault_for(self, asset: str) -> bool:
        return asset in self._vault_for_asset

    def vault_for(self, asset: str) -> Optional[str]:
        return self._vault_for_asset.get(asset)

    def is_known_vault(self, vault: Any) -> bool:
        return _address_of(vault) in self._vaults


def _safe_yield(adapter: YieldAdapter, delta: Optional[int]) -> int:
    # a venue whose yield query fails ranks last instead of blocking the listing
    try:
        return adapter.current_yield() if delta is None else adapter.hypothetical_yield(delta)
    except Exception as exc:
        logger.warning("yield query failed adapter=%s error=%r", getattr(adapter, "address", adapter), exc)
        return 0
