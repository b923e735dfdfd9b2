"""Failure taxonomy shared by the registry, the vaults and the batch gateway.

Every error carries a short snake_case ``reason`` (the same strings the
simulation records in its event log) and, optionally, a longer message.
"""
from __future__ import annotations
from typing import Optional


class VaultSimError(Exception):
    reason: str = "error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.reason)


# -----------------------------
# Configuration errors
# -----------------------------
class ConfigurationError(VaultSimError):
    reason = "bad_configuration"


class Null(ConfigurationError):
    reason = "null_address"


class AlreadyExists(ConfigurationError):
    reason = "already_exists"


class NotFound(ConfigurationError):
    reason = "not_found"


class LengthMismatch(ConfigurationError):
    reason = "bad_lengths"


class InvalidWeights(ConfigurationError):
    reason = "invalid_weights"


class InvalidConfig(ConfigurationError):
    reason = "invalid_config"


class InvalidAmount(ConfigurationError):
    reason = "invalid_amount"


class LimitExceeded(ConfigurationError):
    reason = "limit_exceeded"


class InterfaceError(ConfigurationError):
    reason = "missing_interface"


class DuplicateAdapter(ConfigurationError):
    reason = "duplicate_adapter"


class WrongUnderlying(ConfigurationError):
    reason = "bad_adapter"


class MaximumExceeded(ConfigurationError):
    reason = "maximum_underlying"


class TokenLocked(ConfigurationError):
    reason = "token_locked"


class NotUnused(ConfigurationError):
    reason = "adapter_in_use"


# -----------------------------
# Authorization errors
# -----------------------------
class AuthorizationError(VaultSimError):
    reason = "unauthorized"


class Unauthorized(AuthorizationError):
    reason = "unauthorized"


class NotApproved(AuthorizationError):
    reason = "not_approved"


class NotExternalActor(AuthorizationError):
    reason = "not_external_actor"


# -----------------------------
# Liquidity errors
# -----------------------------
class LiquidityError(VaultSimError):
    reason = "liquidity"


class InsufficientLiquidity(LiquidityError):
    reason = "insufficient_liquidity"


class TransferFailed(LiquidityError):
    reason = "transfer_failed"


# -----------------------------
# Allocation improvement
# -----------------------------
class ImprovementError(VaultSimError):
    reason = "no_improvement"


class NotImproved(ImprovementError):
    reason = "yield_not_increased"


class InsufficientImprovement(ImprovementError):
    reason = "insufficient_improvement"


# -----------------------------
# Batch gateway
# -----------------------------
class GatewayError(VaultSimError):
    reason = "gateway"


class UnknownVault(GatewayError):
    reason = "unknown_vault"


class FunctionNotAllowed(GatewayError):
    reason = "function_not_allowed"


class SilentRevert(GatewayError):
    reason = "silent_revert"
