"""Pack an (adapter address, weight) pair into a single 256-bit word.

The address occupies the upper 160 bits and the weight the lower 96, so a
vault's allocation list is stored as one integer per adapter.
"""
from __future__ import annotations
from typing import List, Sequence, Tuple

from .errors import InvalidWeights, LengthMismatch

ADDRESS_BITS = 160
WEIGHT_BITS = 96
WEIGHT_MASK = (1 << WEIGHT_BITS) - 1
ADDRESS_MASK = (1 << ADDRESS_BITS) - 1


def _address_to_int(address: str) -> int:
    if not isinstance(address, str) or not address.startswith("0x") or len(address) != 42:
        raise ValueError(f"malformed address: {address!r}")
    return int(address, 16)


def _int_to_address(value: int) -> str:
    return "0x" + format(value & ADDRESS_MASK, "040x")


def pack_adapter_and_weight(adapter: str, weight: int) -> int:
    if weight < 0 or weight > WEIGHT_MASK:
        raise InvalidWeights(f"weight {weight} does not fit in {WEIGHT_BITS} bits")
    return (_address_to_int(adapter) << WEIGHT_BITS) | weight


def unpack_adapter_and_weight(word: int) -> Tuple[str, int]:
    return _int_to_address(word >> WEIGHT_BITS), word & WEIGHT_MASK


def pack_adapters_and_weights(adapters: Sequence[str], weights: Sequence[int]) -> List[int]:
    if len(adapters) != len(weights):
        raise LengthMismatch(f"{len(adapters)} adapters, {len(weights)} weights")
    return [pack_adapter_and_weight(a, w) for a, w in zip(adapters, weights)]


def unpack_adapters_and_weights(words: Sequence[int]) -> Tuple[List[str], List[int]]:
    adapters: List[str] = []
    weights: List[int] = []
    for word in words:
        adapter, weight = unpack_adapter_and_weight(word)
        adapters.append(adapter)
        weights.append(weight)
    return adapters, weights
