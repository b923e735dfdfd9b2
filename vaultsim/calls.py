"""Encoded calls: a 4-byte keccak selector followed by ABI-encoded arguments."""
from __future__ import annotations
from typing import Any, List

from eth_abi.abi import decode, encode
from eth_abi.exceptions import DecodingError, EncodingError
from eth_utils import function_signature_to_4byte_selector

from .errors import InterfaceError

SELECTOR_SIZE = 4

REBALANCE = "rebalance()"
REBALANCE_WITH_NEW_ADAPTERS = "rebalance_with_new_adapters(address[],uint256[])"
REBALANCE_WITH_NEW_WEIGHTS = "rebalance_with_new_weights(uint256[])"
REBALANCE_SIGNATURES = (REBALANCE, REBALANCE_WITH_NEW_ADAPTERS, REBALANCE_WITH_NEW_WEIGHTS)


def function_selector(signature: str) -> bytes:
    return function_signature_to_4byte_selector(signature)


def method_name(signature: str) -> str:
    return signature.split("(", 1)[0]


def argument_types(signature: str) -> List[str]:
    inner = signature[signature.index("(") + 1:signature.rindex(")")]
    return [t.strip() for t in inner.split(",")] if inner.strip() else []


def encode_call(signature: str, *args: Any) -> bytes:
    types = argument_types(signature)
    if len(types) != len(args):
        raise InterfaceError(f"{signature} takes {len(types)} arguments, got {len(args)}")
    try:
        payload = encode(types, list(args)) if types else b""
    except EncodingError as exc:
        raise InterfaceError(f"can not encode arguments for {signature}") from exc
    return function_selector(signature) + payload


def decode_call(signature: str, data: bytes) -> List[Any]:
    """Arguments of ``data`` as plain lists; addresses come back lowercase like ledger addresses."""
    data = bytes(data)
    if data[:SELECTOR_SIZE] != function_selector(signature):
        raise InterfaceError(f"calldata is not a call to {signature}")
    types = argument_types(signature)
    if not types:
        return []
    try:
        values = decode(types, data[SELECTOR_SIZE:])
    except DecodingError as exc:
        raise InterfaceError(f"malformed arguments for {signature}") from exc
    return [_normalize(t, v) for t, v in zip(types, values)]


def _normalize(abi_type: str, value: Any) -> Any:
    if abi_type.endswith("[]"):
        return [_normalize(abi_type[:-2], v) for v in value]
    if abi_type == "address":
        return value.lower()
    return value
