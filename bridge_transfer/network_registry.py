"""
Network Registry

Supported networks for USDC bridging with their RPC endpoints, explorers and
bridge-engine chain keys.

Sources (later wins):
1. Built-in defaults
2. `networks` section of the YAML config
3. BRIDGE_RPC_<NETWORK_ID> environment variables (e.g. BRIDGE_RPC_BASE_SEPOLIA)
"""

import os
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional
from loguru import logger


class UnknownNetworkError(KeyError):
    """Raised when a network id is not in the registry"""


@dataclass
class Network:
    """Supported network"""
    id: str
    label: str
    chain_id: int
    bridge_chain: str  # chain key understood by the bridging engine
    rpc_urls: List[str] = field(default_factory=list)
    explorer_url: str = ""
    explorer_tx_pattern: str = ""
    usdc_address: str = ""
    circle_domain: int = 0

    def __post_init__(self):
        if not self.explorer_tx_pattern and self.explorer_url:
            self.explorer_tx_pattern = f"{self.explorer_url.rstrip('/')}/tx/{{hash}}"

    def explorer_tx_url(self, tx_hash: str) -> Optional[str]:
        if not self.explorer_tx_pattern:
            return None
        return self.explorer_tx_pattern.replace('{hash}', tx_hash)

    def __repr__(self):
        return f"Network({self.id}: chain {self.chain_id})"


DEFAULT_NETWORKS = {
    'ethereum-sepolia': {
        'label': 'Ethereum Sepolia',
        'chain_id': 11155111,
        'bridge_chain': 'Ethereum_Sepolia',
        'rpc_urls': ['https://sepolia.drpc.org'],
        'explorer_url': 'https://sepolia.etherscan.io',
        'usdc_address': '0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238',
        'circle_domain': 0,
    },
    'avalanche-fuji': {
        'label': 'Avalanche Fuji',
        'chain_id': 43113,
        'bridge_chain': 'Avalanche_Fuji',
        'rpc_urls': ['https://api.avax-test.network/ext/bc/C/rpc'],
        'explorer_url': 'https://testnet.snowtrace.io',
        'usdc_address': '0x5425890298aed601595a70AB815c96711a31Bc65',
        'circle_domain': 1,
    },
    'base-sepolia': {
        'label': 'Base Sepolia',
        'chain_id': 84532,
        'bridge_chain': 'Base_Sepolia',
        'rpc_urls': ['https://sepolia.base.org'],
        'explorer_url': 'https://sepolia.basescan.org',
        'usdc_address': '0x036CbD53842c5426634e7929541eC2318f3dCF7e',
        'circle_domain': 6,
    },
    'arc-testnet': {
        'label': 'Arc Testnet',
        'chain_id': 5042002,
        'bridge_chain': 'Arc_Testnet',
        'rpc_urls': ['https://rpc.testnet.arc.network'],
        'explorer_url': 'https://testnet.arcscan.app',
        'usdc_address': '0x3600000000000000000000000000000000000000',
        'circle_domain': 26,
    },
}

DEFAULT_FROM_NETWORK_ID = 'ethereum-sepolia'
DEFAULT_TO_NETWORK_ID = 'arc-testnet'


def rpc_env_var(network_id: str) -> str:
    return "BRIDGE_RPC_" + network_id.upper().replace('-', '_')


class NetworkRegistry:
    """
    Lookup of supported networks by id and by chain id
    """

    def __init__(self, networks: List[Network]):
        self._by_id: Dict[str, Network] = {}
        self._by_chain_id: Dict[int, Network] = {}

        for network in networks:
            if network.chain_id in self._by_chain_id:
                raise ValueError(f"Duplicate chain id {network.chain_id} ({network.id})")
            self._by_id[network.id] = network
            self._by_chain_id[network.chain_id] = network

        logger.debug(f"Network registry loaded with {len(self._by_id)} networks")

    @classmethod
    def from_config(cls, overrides: Optional[Dict[str, Dict]] = None, use_env: bool = True) -> 'NetworkRegistry':
        """
        Build registry from defaults, config overrides and environment

        Args:
            overrides: {network_id: {field: value}}; unknown ids add new networks
            use_env: Apply BRIDGE_RPC_* environment overrides

        Returns:
            NetworkRegistry
        """
        definitions = {network_id: dict(data) for network_id, data in DEFAULT_NETWORKS.items()}

        for network_id, data in (overrides or {}).items():
            if not isinstance(data, dict):
                logger.warning(f"Ignoring invalid network override for {network_id}")
                continue
            definitions.setdefault(network_id, {}).update(data)

        networks = []
        for network_id, data in definitions.items():
            try:
                network = Network(id=network_id, **data)
            except TypeError as e:
                logger.error(f"✗ Invalid network definition for {network_id}: {e}")
                continue

            if use_env:
                env_url = os.getenv(rpc_env_var(network_id))
                if env_url:
                    # Preferred endpoint goes first; defaults remain as fallbacks
                    rpc_urls = [env_url] + [url for url in network.rpc_urls if url != env_url]
                    network = replace(network, rpc_urls=rpc_urls)

            networks.append(network)

        return cls(networks)

    @property
    def networks(self) -> List[Network]:
        return list(self._by_id.values())

    def lookup_by_id(self, network_id: str) -> Network:
        """
        Get network by id

        Raises:
            UnknownNetworkError: if the id is not registered
        """
        try:
            return self._by_id[network_id]
        except KeyError:
            raise UnknownNetworkError(network_id) from None

    def lookup_by_chain_id(self, chain_id: int) -> Optional[Network]:
        return self._by_chain_id.get(chain_id)
