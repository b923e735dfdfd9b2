from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional
import pandas as pd

from .core import ONE, Event


def _scale(vault: Any) -> float:
    return float(10 ** vault.decimals)


@dataclass
class MetricsStore:
    """Per-tick vault and adapter rows, kept in human units (tokens and fractions of one)."""
    vault_rows: List[Dict[str, Any]] = field(default_factory=list)
    adapter_rows: List[Dict[str, Any]] = field(default_factory=list)

    def record_vault(self, tick: int, asset: str, vault: Any,
                     counters: Optional[Mapping[str, int]] = None) -> Dict[str, Any]:
        scale = _scale(vault)
        sheet = vault.balance_sheet()
        row = {
            "tick": tick,
            "asset": asset,
            "total_balance": sheet.total_balance / scale,
            "reserve_balance": sheet.reserve_balance / scale,
            "total_supply": vault.total_supply / scale,
            "price_per_share": vault.get_price_per_full_share() / ONE,
            "net_yield": vault.get_net_yield() / ONE,
            "fee_shares": vault.balance_of(vault.fee_recipient) / scale,
            "adapters": len(sheet.balances),
        }
        row.update(counters or {})
        self.vault_rows.append(row)
        return row

    def record_adapters(self, tick: int, asset: str, vault: Any) -> List[Dict[str, Any]]:
        scale = _scale(vault)
        adapters, weights = vault.get_adapters_and_weights()
        rows = [
            {
                "tick": tick,
                "asset": asset,
                "adapter": adapter.name,
                "weight": weight / ONE,
                "balance": balance / scale,
                "yield": adapter.current_yield() / ONE,
                "available_liquidity": adapter.available_liquidity() / scale,
            }
            for adapter, weight, balance in zip(adapters, weights, vault.get_balances())
        ]
        self.adapter_rows.extend(rows)
        return rows

    def vault_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.vault_rows)

    def adapter_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.adapter_rows)

    @staticmethod
    def events_df(events: Iterable[Event]) -> pd.DataFrame:
        return pd.DataFrame([e.to_dict() for e in events])
