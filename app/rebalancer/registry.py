"""
Chain / protocol registry.

Built once at startup from the YAML chain table. Adapters that cannot be
queried (no adapter address yet, engine contracts missing on the chain, or no
RPC endpoint configured) are kept as UndeployedAdapter entries so they are
visible in logs but never reach the collector or the comparison logic.
"""

from typing import Any, Dict, List, Optional, Tuple, Union

from web3 import Web3

from app.rebalancer.config_loader import EngineConfig
from app.rebalancer.exceptions import ConfigError
from app.rebalancer.logging_config import setup_logger
from app.rebalancer.models import ChainDescriptor, ProtocolAdapter, ProtocolKind, SnapshotKey, UndeployedAdapter

logger = setup_logger()

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

AdapterEntry = Union[ProtocolAdapter, UndeployedAdapter]


def _checksum_or_none(value: Optional[str], what: str) -> Optional[str]:
    if not value:
        return None
    if not Web3.is_address(value):
        raise ConfigError(f"Invalid address for {what}: {value}")
    if int(value, 16) == 0:
        return None
    return Web3.to_checksum_address(value)


class ChainRegistry:
    """Immutable, validated view of the supported chains and their adapters."""

    def __init__(self, chains: List[ChainDescriptor], adapters: List[AdapterEntry]):
        if not chains:
            raise ConfigError("No chains configured")

        self._chains: Dict[int, ChainDescriptor] = {}
        for chain in chains:
            if chain.chain_id in self._chains:
                raise ConfigError(f"Duplicate chain id {chain.chain_id}")
            self._chains[chain.chain_id] = chain

        self._adapters: Dict[SnapshotKey, AdapterEntry] = {}
        for adapter in adapters:
            if adapter.chain_id not in self._chains:
                raise ConfigError(f"Adapter {adapter.name} references unknown chain {adapter.chain_id}")
            if adapter.key in self._adapters:
                raise ConfigError(f"Duplicate protocol id {adapter.protocol_id} on chain {adapter.chain_id}")
            self._adapters[adapter.key] = adapter

    @classmethod
    def from_config(cls, config: EngineConfig) -> "ChainRegistry":
        chains: List[ChainDescriptor] = []
        adapters: List[AdapterEntry] = []

        for chain_id in config.chain_ids:
            settings = config.chain_settings(chain_id)
            contracts = settings.get("contracts") or {}
            chain = ChainDescriptor(
                chain_id=chain_id,
                name=settings.get("name", str(chain_id)),
                rpc_url=config.chain_rpc_url(chain_id),
                vault_address=_checksum_or_none(contracts.get("VAULT"), f"vault on chain {chain_id}"),
                automation_address=_checksum_or_none(contracts.get("AUTOMATION"), f"automation on chain {chain_id}"),
                native_price_usd=float(settings.get("native_price_usd", 0.0)),
            )
            chains.append(chain)

            for protocol in settings.get("protocols") or []:
                adapters.append(cls._build_adapter(chain, protocol))

        registry = cls(chains, adapters)
        logger.info(
            "ChainRegistry: Loaded %s chains, %s deployed adapters, %s undeployed",
            len(chains), len(registry.deployed_adapters()), len(registry.undeployed_adapters()),
        )
        for adapter in registry.undeployed_adapters():
            logger.info(
                "ChainRegistry: Skipping %s on chain %s - %s", adapter.name, adapter.chain_id, adapter.reason
            )
        return registry

    @staticmethod
    def _build_adapter(chain: ChainDescriptor, protocol: Dict[str, Any]) -> AdapterEntry:
        try:
            protocol_id = int(protocol["id"])
            name = protocol["name"]
            kind = ProtocolKind(protocol["kind"])
        except KeyError as ex:
            raise ConfigError(f"Protocol entry on chain {chain.chain_id} is missing {ex}") from ex
        except ValueError as ex:
            raise ConfigError(f"Protocol entry on chain {chain.chain_id} is invalid: {ex}") from ex

        adapter_address = _checksum_or_none(protocol.get("adapter"), f"{name} adapter on chain {chain.chain_id}")
        asset_address = _checksum_or_none(protocol.get("asset"), f"{name} asset on chain {chain.chain_id}")

        if not chain.reachable:
            return UndeployedAdapter(chain.chain_id, protocol_id, name, "chain has no RPC endpoint configured")
        if not chain.deployed:
            return UndeployedAdapter(chain.chain_id, protocol_id, name, "vault or automation not deployed on chain")
        if adapter_address is None:
            return UndeployedAdapter(chain.chain_id, protocol_id, name, "adapter not deployed yet")
        if asset_address is None:
            raise ConfigError(f"{name} on chain {chain.chain_id} has no asset address")

        return ProtocolAdapter(
            chain_id=chain.chain_id,
            protocol_id=protocol_id,
            name=name,
            kind=kind,
            adapter_address=adapter_address,
            asset_address=asset_address,
            asset_decimals=int(protocol.get("asset_decimals", 6)),
            morpho_vault=_checksum_or_none(protocol.get("morpho_vault"), f"{name} morpho vault"),
        )

    def chains(self) -> List[ChainDescriptor]:
        return list(self._chains.values())

    def get_chain(self, chain_id: int) -> ChainDescriptor:
        try:
            return self._chains[chain_id]
        except KeyError:
            raise KeyError(f"Unknown chain id {chain_id}") from None

    def deployed_chains(self) -> List[ChainDescriptor]:
        return [chain for chain in self._chains.values() if chain.deployed]

    def deployed_adapters(self, chain_id: Optional[int] = None) -> List[ProtocolAdapter]:
        return [
            adapter
            for adapter in self._adapters.values()
            if isinstance(adapter, ProtocolAdapter) and (chain_id is None or adapter.chain_id == chain_id)
        ]

    def undeployed_adapters(self) -> List[UndeployedAdapter]:
        return [adapter for adapter in self._adapters.values() if isinstance(adapter, UndeployedAdapter)]

    def get_adapter(self, chain_id: int, protocol_id: int) -> ProtocolAdapter:
        adapter = self._adapters.get((chain_id, protocol_id))
        if adapter is None:
            raise KeyError(f"Unknown protocol {protocol_id} on chain {chain_id}")
        if isinstance(adapter, UndeployedAdapter):
            raise KeyError(f"Protocol {protocol_id} on chain {chain_id} is not deployed: {adapter.reason}")
        return adapter

    def keys(self) -> List[Tuple[int, int]]:
        return list(self._adapters.keys())
