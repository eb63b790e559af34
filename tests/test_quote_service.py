"""Tests for the route quote service."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import aiohttp
import pytest

from bridge_transfer.quote_service import QuoteService


@pytest.fixture
def networks(registry):
    return {network.id: network for network in registry.networks}


class TestQuoteApi:
    @pytest.mark.asyncio
    async def test_parses_api_quote(self, networks) -> None:
        service = QuoteService(api_key="secret")
        service._post_json = AsyncMock(
            return_value={
                "routeId": "route-42",
                "provider": "Arc Router",
                "amountIn": "100",
                "amountOut": "99.5",
                "fee": "0.5",
                "etaSeconds": 90,
                "fees": [{"type": "protocol", "amount": 0.5}],
            }
        )

        quote = await service.quote(networks["base-sepolia"], networks["arc-testnet"], "100", "0xabc")

        assert quote.route_id == "route-42"
        assert quote.amount_out == "99.5"
        assert quote.fee_amount == "0.5"
        assert quote.eta_seconds == 90
        assert quote.breakdown == [{"label": "protocol", "amount": "0.5"}]

        path, payload = service._post_json.await_args.args
        assert path == "/quote"
        assert payload == {
            "fromChainId": 84532,
            "toChainId": 5042002,
            "amount": "100",
            "wallet": "0xabc",
        }

    @pytest.mark.asyncio
    async def test_route_conversion(self, networks) -> None:
        service = QuoteService()
        service._post_json = AsyncMock(return_value={"routeId": "r", "amountOut": "9", "fee": "1", "etaSeconds": 30})
        route = (await service.quote(networks["base-sepolia"], networks["arc-testnet"], "10", "0xabc")).to_route()
        assert route.route_id == "r"
        assert route.eta_seconds == 30
        assert route.fee_amount == "1"


class TestFallbackQuote:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [aiohttp.ClientConnectionError("down"), asyncio.TimeoutError(), ValueError("not an object")],
    )
    async def test_api_failure_falls_back(self, networks, error) -> None:
        service = QuoteService()
        service._post_json = AsyncMock(side_effect=error)

        quote = await service.quote(networks["ethereum-sepolia"], networks["arc-testnet"], "100", "0xabc")

        assert quote.provider == QuoteService.FALLBACK_PROVIDER
        assert quote.fee_amount == "0.1200"
        assert quote.amount_out == "99.8800"
        assert quote.eta_seconds == 75

    def test_default_fee_and_eta_out_of_arc(self, networks) -> None:
        quote = QuoteService().build_fallback_quote(networks["arc-testnet"], networks["base-sepolia"], "50")
        assert quote.fee_amount == "0.0400"
        assert quote.eta_seconds == 65

    def test_eta_between_other_chains(self, networks) -> None:
        quote = QuoteService().build_fallback_quote(networks["avalanche-fuji"], networks["base-sepolia"], "1")
        assert quote.eta_seconds == 150

    def test_invalid_amount(self, networks) -> None:
        quote = QuoteService().build_fallback_quote(networks["avalanche-fuji"], networks["base-sepolia"], "abc")
        assert quote.amount_out == "0.0000"
        assert quote.amount_in == "abc"
