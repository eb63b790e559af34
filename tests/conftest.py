"""Shared test fixtures for the bridge_transfer test suite."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from bridge_transfer.models import Transfer, new_transfer
from bridge_transfer.network_registry import NetworkRegistry
from bridge_transfer.transfer_store import TransferStore

WALLET = "0x" + "ab" * 20
HASH_1 = "0x" + "1" * 64
HASH_2 = "0x" + "2" * 64
HASH_3 = "0x" + "3" * 64

SEPOLIA_CHAIN_ID = 11155111
ARC_CHAIN_ID = 5042002


class FakeSigner:
    """Connected wallet stand-in."""

    def __init__(self, address: str | None = WALLET) -> None:
        self.address = address
        self.provider = object()
        self.get_provider = AsyncMock(return_value=self.provider)


@pytest.fixture
def store(tmp_path):
    """Provide a TransferStore backed by a temporary SQLite file."""
    transfer_store = TransferStore(str(tmp_path / "transfers.db"))
    yield transfer_store
    transfer_store.close()


@pytest.fixture
def registry() -> NetworkRegistry:
    """Provide the built-in networks without environment overrides."""
    return NetworkRegistry.from_config(use_env=False)


@pytest.fixture
def signer() -> FakeSigner:
    return FakeSigner()


@pytest.fixture
def engine() -> AsyncMock:
    """Bridging engine whose bridge() result each test sets."""
    bridging_engine = AsyncMock()
    bridging_engine.bridge.return_value = {"state": "success", "steps": []}
    return bridging_engine


@pytest.fixture
def make_transfer():
    """Factory for Sepolia -> Arc transfers with optional step overrides."""

    def _make(
        transfer_id: str = "t-1",
        status: str = "pending",
        steps: dict | None = None,
        age_seconds: int = 0,
        **changes,
    ) -> Transfer:
        transfer = new_transfer(
            transfer_id=transfer_id,
            from_network="ethereum-sepolia",
            to_network="arc-testnet",
            source_chain_id=SEPOLIA_CHAIN_ID,
            destination_chain_id=ARC_CHAIN_ID,
            amount="10",
        )
        transfer.status = status
        for step in transfer.steps:
            for field_name, value in (steps or {}).get(step.id, {}).items():
                setattr(step, field_name, value)
        if age_seconds:
            stamp = datetime.now(timezone.utc) - timedelta(seconds=age_seconds)
            transfer.created_at = stamp
            transfer.updated_at = stamp
        for field_name, value in changes.items():
            setattr(transfer, field_name, value)
        return transfer

    return _make
