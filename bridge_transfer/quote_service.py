"""
Route Quote Service

Fetches route quotes (fee, ETA, estimated output) from the pricing API, with a
locally computed heuristic when the API is unavailable. Quotes are for display
and for seeding amountOutEstimated only; a quote failure never blocks a transfer.
"""

import asyncio
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, List, Optional

import aiohttp
from loguru import logger

from .models import TransferRoute
from .network_registry import Network


@dataclass
class RouteQuote:
    """Route quote"""
    route_id: str
    provider: str
    amount_in: str
    amount_out: str
    fee_amount: str
    eta_seconds: int
    breakdown: List[Dict[str, str]] = field(default_factory=list)

    def to_route(self) -> TransferRoute:
        return TransferRoute(
            provider=self.provider,
            route_id=self.route_id,
            eta_seconds=self.eta_seconds,
            fee_amount=self.fee_amount,
        )


class QuoteService:
    """
    Pricing quotes with heuristic fallback

    Fallback heuristic:
    - Fee: 12 bps out of Ethereum Sepolia, 8 bps otherwise
    - ETA: 75s into Arc, 65s out of Arc, 150s otherwise
    """

    FALLBACK_PROVIDER = "Arc SDK (simulated)"
    FALLBACK_FEE_BPS = {'ethereum-sepolia': 12}
    DEFAULT_FEE_BPS = 8
    ARC_NETWORK_ID = 'arc-testnet'
    DEFAULT_ETA_SECONDS = 120

    def __init__(
        self,
        base_url: str = "https://api.arc.market",
        api_key: Optional[str] = None,
        timeout_seconds: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None
    ):
        """
        Initialize quote service

        Args:
            base_url: Pricing API base URL
            api_key: Optional bearer token
            timeout_seconds: Request timeout
            session: Optional shared aiohttp session
        """
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _post_json(self, path: str, payload: Dict) -> Dict:
        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f"Bearer {self.api_key}"

        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with self._get_session().post(
            f"{self.base_url}{path}", json=payload, headers=headers, timeout=timeout
        ) as resp:
            if resp.status >= 400:
                raise aiohttp.ClientResponseError(
                    resp.request_info, resp.history, status=resp.status,
                    message=f"Quote request failed: {resp.reason}"
                )
            data = await resp.json(content_type=None)

        if not isinstance(data, dict):
            raise ValueError("Quote response is not an object")
        return data

    async def quote(
        self,
        from_network: Network,
        to_network: Network,
        amount: str,
        wallet_address: str
    ) -> RouteQuote:
        """
        Get a route quote

        Args:
            from_network: Source network
            to_network: Destination network
            amount: Input amount (decimal string)
            wallet_address: Sender wallet

        Returns:
            RouteQuote (heuristic fallback on any API failure)
        """
        payload = {
            'fromChainId': from_network.chain_id,
            'toChainId': to_network.chain_id,
            'amount': amount,
            'wallet': wallet_address,
        }

        try:
            data = await self._post_json('/quote', payload)
            return self._parse_quote(data, amount)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, TypeError) as e:
            logger.warning(f"⚠ Quote API unavailable, falling back to heuristic quote: {e}")
            return self.build_fallback_quote(from_network, to_network, amount)

    def _parse_quote(self, data: Dict, amount: str) -> RouteQuote:
        fees = data.get('fees')
        breakdown = data.get('breakdown')
        if breakdown is None and isinstance(fees, list) and fees:
            breakdown = [
                {
                    'label': entry.get('label') or entry.get('type') or 'Fee',
                    'amount': str(entry.get('amount', '0')),
                }
                for entry in fees if isinstance(entry, dict)
            ]

        route_id = data.get('routeId') or data.get('id') or f"quote-{int(time.time() * 1000)}"

        return RouteQuote(
            route_id=str(route_id),
            provider=data.get('provider') or "Arc Router",
            amount_in=str(data.get('amountIn') or amount),
            amount_out=str(data.get('amountOut') or amount),
            fee_amount=str(data.get('fee') or data.get('feeAmount') or '0'),
            eta_seconds=int(data.get('etaSeconds') or data.get('estimatedSeconds') or self.DEFAULT_ETA_SECONDS),
            breakdown=breakdown or [],
        )

    def build_fallback_quote(self, from_network: Network, to_network: Network, amount: str) -> RouteQuote:
        """Heuristic quote computed locally"""
        try:
            value = Decimal(amount)
        except (InvalidOperation, TypeError):
            value = Decimal(0)
        if not value.is_finite() or value < 0:
            value = Decimal(0)

        fee_bps = self.FALLBACK_FEE_BPS.get(from_network.id, self.DEFAULT_FEE_BPS)
        precision = Decimal('0.0001')
        fee = (value * fee_bps / Decimal(10000)).quantize(precision, rounding=ROUND_HALF_UP)
        amount_out = max(value - fee, Decimal(0)).quantize(precision, rounding=ROUND_HALF_UP)

        if to_network.id == self.ARC_NETWORK_ID:
            eta_seconds = 75
        elif from_network.id == self.ARC_NETWORK_ID:
            eta_seconds = 65
        else:
            eta_seconds = 150

        return RouteQuote(
            route_id=f"fallback-{int(time.time() * 1000)}",
            provider=self.FALLBACK_PROVIDER,
            amount_in=amount,
            amount_out=str(amount_out),
            fee_amount=str(fee),
            eta_seconds=eta_seconds,
            breakdown=[{'label': 'Estimated relayer fee', 'amount': str(fee)}],
        )

    async def close(self):
        """Close the HTTP session"""
        if self._session is not None and self._owns_session and not self._session.closed:
            try:
                await self._session.close()
            except Exception as e:
                logger.debug(f"Error closing quote session: {e}")
        self._session = None
