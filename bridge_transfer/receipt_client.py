"""
Chain Receipt Client

Answers "has transaction X on chain C finalized, and did it succeed?" by
polling JSON-RPC endpoints directly, without an indexing backend.

Endpoint strategy:
1. Network's preferred endpoints (from the registry)
2. Static public fallbacks per chain
The first endpoint that passes a connectivity probe is cached per chain.
"""

import asyncio
from typing import Any, Dict, List, Optional, Set

import aiohttp
from loguru import logger

from .network_registry import NetworkRegistry


class ReceiptStatus:
    """Outcome of a receipt lookup"""
    NOT_FOUND = 'not-found-yet'
    SUCCESS = 'success'
    FAILED = 'failed'


class EndpointUnavailableError(Exception):
    """No candidate endpoint is reachable for a chain"""


class ReceiptQueryError(Exception):
    """Endpoints were reachable but none answered the receipt query"""


class RpcError(Exception):
    """JSON-RPC error object returned by a node"""

    def __init__(self, code: Optional[int], message: str):
        super().__init__(message)
        self.code = code


# Errors nodes return for transactions they have not indexed yet
NOT_FOUND_MARKERS = ('not found', 'unknown transaction')


class ChainReceiptClient:
    """
    Transaction receipt lookups with multi-endpoint fallback

    Features:
    - Per-chain ordered endpoint candidates
    - Connectivity probe (eth_chainId) with caching
    - Bounded per-attempt timeout
    - "Not found yet" distinguished from endpoint failure
    """

    DEFAULT_TIMEOUT_SECONDS = 4.0

    FALLBACK_RPC_URLS = {
        11155111: [
            'https://ethereum-sepolia-rpc.publicnode.com',
            'https://rpc.sepolia.org',
        ],
        84532: [
            'https://base-sepolia-rpc.publicnode.com',
        ],
        43113: [
            'https://avalanche-fuji-c-chain-rpc.publicnode.com',
        ],
        5042002: [],
    }

    def __init__(
        self,
        registry: NetworkRegistry,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[aiohttp.ClientSession] = None
    ):
        """
        Initialize receipt client

        Args:
            registry: Network registry
            timeout_seconds: Timeout per RPC attempt
            session: Optional shared aiohttp session
        """
        self.registry = registry
        self.timeout_seconds = timeout_seconds
        self._session = session
        self._owns_session = session is None

        self.endpoint_cache: Dict[int, str] = {}
        self._verified_endpoints: Set[str] = set()
        self._request_id = 0

    def get_candidate_endpoints(self, chain_id: int) -> List[str]:
        """
        Ordered candidate endpoints for a chain

        Args:
            chain_id: EVM chain id

        Returns:
            Network endpoints first, then static fallbacks (deduplicated)
        """
        candidates = []
        network = self.registry.lookup_by_chain_id(chain_id)
        if network:
            candidates.extend(network.rpc_urls)
        candidates.extend(self.FALLBACK_RPC_URLS.get(chain_id, []))

        seen = set()
        ordered = []
        for url in candidates:
            if url and url not in seen:
                seen.add(url)
                ordered.append(url)
        return ordered

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _rpc_call(self, endpoint: str, method: str, params: List[Any]) -> Any:
        """
        Execute one JSON-RPC call

        Raises:
            RpcError: node returned an error object
            aiohttp.ClientError, asyncio.TimeoutError: transport failure
        """
        self._request_id += 1
        payload = {
            'jsonrpc': '2.0',
            'id': self._request_id,
            'method': method,
            'params': params,
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)

        async with self._get_session().post(endpoint, json=payload, timeout=timeout) as resp:
            resp.raise_for_status()
            data = await resp.json(content_type=None)

        if not isinstance(data, dict):
            raise RpcError(None, f"Invalid JSON-RPC response from {endpoint}")

        error = data.get('error')
        if error:
            if isinstance(error, dict):
                raise RpcError(error.get('code'), str(error.get('message', 'unknown error')))
            raise RpcError(None, str(error))

        return data.get('result')

    async def _probe(self, endpoint: str, chain_id: int) -> bool:
        """Check that an endpoint answers and serves the expected chain"""
        try:
            result = await self._rpc_call(endpoint, 'eth_chainId', [])
            reported = int(result, 16) if isinstance(result, str) else int(result)
        except (aiohttp.ClientError, asyncio.TimeoutError, RpcError, TypeError, ValueError) as e:
            logger.debug(f"Probe failed for {endpoint}: {e}")
            return False

        if reported != chain_id:
            logger.warning(f"⚠ {endpoint} serves chain {reported}, expected {chain_id}")
            return False

        self._verified_endpoints.add(endpoint)
        return True

    async def select_endpoint(self, chain_id: int) -> str:
        """
        Get a reachable endpoint for a chain

        Args:
            chain_id: EVM chain id

        Returns:
            Endpoint URL

        Raises:
            EndpointUnavailableError: if no candidate is reachable
        """
        cached = self.endpoint_cache.get(chain_id)
        if cached:
            return cached

        candidates = self.get_candidate_endpoints(chain_id)
        if not candidates:
            raise EndpointUnavailableError(f"No RPC endpoints configured for chain {chain_id}")

        for endpoint in candidates:
            if endpoint in self._verified_endpoints or await self._probe(endpoint, chain_id):
                self.endpoint_cache[chain_id] = endpoint
                logger.info(f"✓ Using RPC endpoint for chain {chain_id}: {endpoint}")
                return endpoint

        raise EndpointUnavailableError(
            f"No reachable RPC endpoint for chain {chain_id} (tried {len(candidates)})"
        )

    @staticmethod
    def _parse_receipt(receipt: Any) -> str:
        if receipt is None:
            return ReceiptStatus.NOT_FOUND
        if not isinstance(receipt, dict):
            raise ValueError(f"Unexpected receipt payload: {type(receipt)}")

        status = receipt.get('status')
        if isinstance(status, str):
            status = int(status, 16)
        if status == 1:
            return ReceiptStatus.SUCCESS
        if status == 0:
            return ReceiptStatus.FAILED
        raise ValueError(f"Unexpected receipt status: {receipt.get('status')!r}")

    async def get_receipt(self, chain_id: int, tx_hash: str) -> str:
        """
        Look up the finality status of a transaction

        Args:
            chain_id: EVM chain id
            tx_hash: Transaction hash

        Returns:
            ReceiptStatus.NOT_FOUND, ReceiptStatus.SUCCESS or ReceiptStatus.FAILED

        Raises:
            EndpointUnavailableError: if no candidate endpoint is reachable
            ReceiptQueryError: if reachable endpoints all failed to answer
        """
        preferred = await self.select_endpoint(chain_id)
        endpoints = [preferred] + [url for url in self.get_candidate_endpoints(chain_id) if url != preferred]

        last_error = None
        for endpoint in endpoints:
            if endpoint not in self._verified_endpoints and not await self._probe(endpoint, chain_id):
                continue

            try:
                receipt = await self._rpc_call(endpoint, 'eth_getTransactionReceipt', [tx_hash])
                status = self._parse_receipt(receipt)
            except RpcError as e:
                if any(marker in str(e).lower() for marker in NOT_FOUND_MARKERS):
                    status = ReceiptStatus.NOT_FOUND
                else:
                    last_error = e
                    logger.debug(f"RPC error from {endpoint} for {tx_hash[:10]}...: {e}")
                    continue
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                last_error = e
                logger.debug(f"Receipt query failed on {endpoint}: {e or type(e).__name__}")
                continue

            if endpoint != preferred:
                logger.info(f"Switching chain {chain_id} RPC endpoint to {endpoint}")
                self.endpoint_cache[chain_id] = endpoint
            return status

        raise ReceiptQueryError(
            f"Receipt query for {tx_hash} on chain {chain_id} failed on all endpoints: {last_error}"
        )

    async def close(self):
        """Close the HTTP session"""
        if self._session is not None and self._owns_session and not self._session.closed:
            try:
                await self._session.close()
            except Exception as e:
                logger.debug(f"Error closing RPC session: {e}")
        self._session = None
