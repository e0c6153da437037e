# hft_control/providers/registry.py

from typing import Dict, List, Type

from hft_control.core.errors import StateError
from hft_control.providers.alibaba import AlibabaAdapter
from hft_control.providers.aws import AWSAdapter
from hft_control.providers.azure import AzureAdapter
from hft_control.providers.base import ProviderAdapter, ProviderCatalog
from hft_control.providers.contabo import ContaboAdapter
from hft_control.providers.digitalocean import DigitalOceanAdapter
from hft_control.providers.gcp import GCPAdapter
from hft_control.providers.oracle import OracleAdapter
from hft_control.providers.vultr import VultrAdapter


ADAPTERS: Dict[str, Type[ProviderAdapter]] = {
    "aws": AWSAdapter,
    "digitalocean": DigitalOceanAdapter,
    "vultr": VultrAdapter,
    "contabo": ContaboAdapter,
    "oracle": OracleAdapter,
    "gcp": GCPAdapter,
    "alibaba": AlibabaAdapter,
    "azure": AzureAdapter,
}


def provider_names() -> List[str]:
    return list(ADAPTERS)


def get_adapter(provider: str, **kwargs) -> ProviderAdapter:
    adapter_cls = ADAPTERS.get(provider)
    if adapter_cls is None:
        raise StateError("unknown_provider", f"Unknown provider: {provider}")
    return adapter_cls(**kwargs)


def get_catalog(provider: str) -> ProviderCatalog:
    adapter_cls = ADAPTERS.get(provider)
    if adapter_cls is None:
        raise StateError("unknown_provider", f"Unknown provider: {provider}")
    return adapter_cls.catalog
