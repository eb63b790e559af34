"""Tests for the transfer data model."""

from __future__ import annotations

import pytest

from bridge_transfer.models import (
    CANONICAL_STEP_IDS,
    Transfer,
    build_default_steps,
    extract_tx_hash,
    is_tx_hash,
    new_transfer,
    replace_step,
)

from .conftest import ARC_CHAIN_ID, HASH_1, SEPOLIA_CHAIN_ID

# ---------------------------------------------------------------------------
# Hash helpers
# ---------------------------------------------------------------------------


class TestTxHash:
    def test_is_tx_hash(self) -> None:
        assert is_tx_hash(HASH_1) is True
        assert is_tx_hash(HASH_1[:-1]) is False
        assert is_tx_hash(HASH_1 + "0") is False
        assert is_tx_hash(None) is False

    def test_extract_from_explorer_url(self) -> None:
        url = f"https://sepolia.etherscan.io/tx/{HASH_1}"
        assert extract_tx_hash(url) == HASH_1

    def test_extract_none(self) -> None:
        assert extract_tx_hash("https://sepolia.etherscan.io/address/0x1234") is None
        assert extract_tx_hash(None) is None


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


class TestNewTransfer:
    def test_four_pending_steps_in_order(self) -> None:
        transfer = new_transfer("t-1", "ethereum-sepolia", "arc-testnet", SEPOLIA_CHAIN_ID, ARC_CHAIN_ID, "10")
        assert [step.id for step in transfer.steps] == list(CANONICAL_STEP_IDS)
        assert all(step.state == "pending" for step in transfer.steps)
        assert transfer.status == "pending"
        assert transfer.created_at == transfer.updated_at

    def test_chain_ids_per_step(self) -> None:
        steps = {step.id: step for step in build_default_steps(SEPOLIA_CHAIN_ID, ARC_CHAIN_ID)}
        assert steps["approval"].chain_id == SEPOLIA_CHAIN_ID
        assert steps["burn"].chain_id == SEPOLIA_CHAIN_ID
        assert steps["attestation"].chain_id is None
        assert steps["mint"].chain_id == ARC_CHAIN_ID

    def test_same_network_rejected(self) -> None:
        with pytest.raises(ValueError, match="must differ"):
            new_transfer("t-1", "arc-testnet", "arc-testnet", ARC_CHAIN_ID, ARC_CHAIN_ID, "10")

    def test_replace_step_copies(self, make_transfer) -> None:
        transfer = make_transfer()
        updated = replace_step(transfer, "burn", state="success")
        assert updated.get_step("burn").state == "success"
        assert transfer.get_step("burn").state == "pending"


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


class TestSerialization:
    def test_camel_case_layout(self, make_transfer) -> None:
        transfer = make_transfer(
            steps={"burn": {"tx_hash": HASH_1, "state": "success"}},
            amount_out_estimated="9.99",
        )
        data = transfer.to_dict()
        assert data["fromNetwork"] == "ethereum-sepolia"
        assert data["toNetwork"] == "arc-testnet"
        assert data["amountOutEstimated"] == "9.99"
        assert data["steps"][1] == {
            "id": "burn",
            "label": "Sending on source chain",
            "state": "success",
            "txHash": HASH_1,
            "chainId": SEPOLIA_CHAIN_ID,
        }
        assert "errorMessage" not in data

    def test_from_dict_restores_transfer(self, make_transfer) -> None:
        transfer = make_transfer(steps={"mint": {"tx_hash": HASH_1}})
        assert Transfer.from_dict(transfer.to_dict()) == transfer

    def test_from_dict_rebuilds_canonical_steps(self, make_transfer) -> None:
        data = make_transfer().to_dict()
        data["steps"] = [
            {"id": "mint", "label": "Mint", "state": "success"},
            {"id": "burn", "label": "Burn", "state": "success"},
            {"id": "burn", "label": "Duplicate", "state": "error"},
        ]
        restored = Transfer.from_dict(data)
        assert [step.id for step in restored.steps] == list(CANONICAL_STEP_IDS)
        assert restored.get_step("burn").state == "success"
        assert restored.get_step("approval").state == "pending"

    def test_legacy_network_keys(self, make_transfer) -> None:
        data = make_transfer().to_dict()
        data["fromNetworkId"] = data.pop("fromNetwork")
        data["toNetworkId"] = data.pop("toNetwork")
        restored = Transfer.from_dict(data)
        assert restored.from_network == "ethereum-sepolia"
        assert restored.to_network == "arc-testnet"

    def test_invalid_status_rejected(self, make_transfer) -> None:
        data = make_transfer().to_dict()
        data["status"] = "exploded"
        with pytest.raises(ValueError):
            Transfer.from_dict(data)

    def test_zulu_timestamps(self, make_transfer) -> None:
        data = make_transfer().to_dict()
        data["createdAt"] = "2024-05-01T12:00:00.000Z"
        data["updatedAt"] = "2024-05-01T12:05:00.000Z"
        restored = Transfer.from_dict(data)
        assert restored.created_at.year == 2024
        assert restored.updated_at > restored.created_at
