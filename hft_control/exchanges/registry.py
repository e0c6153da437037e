# hft_control/exchanges/registry.py

from typing import Dict, List, Type

from hft_control.core.errors import StateError
from hft_control.exchanges.base import ExchangeAdapter
from hft_control.exchanges.binance import BinanceAdapter
from hft_control.exchanges.bybit import BybitAdapter
from hft_control.exchanges.okx import OKXAdapter


EXCHANGES: Dict[str, Type[ExchangeAdapter]] = {
    "binance": BinanceAdapter,
    "okx": OKXAdapter,
    "bybit": BybitAdapter,
}


def exchange_names() -> List[str]:
    return list(EXCHANGES)


def get_exchange(name: str, **kwargs) -> ExchangeAdapter:
    adapter_cls = EXCHANGES.get(name.lower())
    if adapter_cls is None:
        raise StateError("unknown_exchange", f"Unknown exchange: {name}")
    return adapter_cls(**kwargs)
