"""Tests for engine result normalization and step-name reconciliation."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from bridge_transfer.models import build_default_steps
from bridge_transfer.step_mapping import (
    EngineResult,
    EngineStep,
    StepNameMatcher,
    extract_step_tx_hash,
    map_engine_steps,
    normalize_engine_result,
)

from .conftest import ARC_CHAIN_ID, HASH_1, HASH_2, HASH_3, SEPOLIA_CHAIN_ID

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _steps():
    return build_default_steps(SEPOLIA_CHAIN_ID, ARC_CHAIN_ID)


def _by_id(steps):
    return {step.id: step for step in steps}


# ---------------------------------------------------------------------------
# Name normalization
# ---------------------------------------------------------------------------


class TestStepNameMatcher:
    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("Approve USDC spend", "approval"),
            ("Receive on destination", "mint"),
            ("depositForBurn", "burn"),
            ("Fetch attestation", "attestation"),
            ("allowance", "approval"),
            ("Sending USDC", "burn"),
            ("Sender approval", "approval"),
            ("withdraw", "mint"),
        ],
    )
    def test_normalize(self, name: str, expected: str) -> None:
        assert StepNameMatcher().normalize(name) == expected

    def test_unknown_name(self) -> None:
        assert StepNameMatcher().normalize("foobar") is None

    def test_extra_aliases(self) -> None:
        matcher = StepNameMatcher(extra_aliases={"mint": ["finalize"]})
        assert matcher.normalize("Finalize on Arc") == "mint"

    def test_extra_aliases_unknown_step_ignored(self) -> None:
        matcher = StepNameMatcher(extra_aliases={"refund": ["refund"]})
        assert matcher.normalize("refund") is None

    def test_exact_word_beats_prefix(self) -> None:
        engine_steps = [EngineStep(name="Sender approval", state="success"), EngineStep(name="burn", state="pending")]
        assert StepNameMatcher().match("burn", engine_steps).name == "burn"
        assert StepNameMatcher().match("approval", engine_steps).name == "Sender approval"

    def test_alias_match_beats_substring(self) -> None:
        engine_steps = [EngineStep(name="burn before mint", state="success"), EngineStep(name="receive", state="success")]
        match = StepNameMatcher().match("mint", engine_steps)
        assert match.name == "receive"

    def test_substring_fallback(self) -> None:
        engine_steps = [EngineStep(name="PreMintHook", state="success")]
        assert StepNameMatcher().match("mint", engine_steps).name == "PreMintHook"

    def test_first_match_wins(self) -> None:
        engine_steps = [EngineStep(name="approve", state="success"), EngineStep(name="approval", state="error")]
        assert StepNameMatcher().match("approval", engine_steps).state == "success"


# ---------------------------------------------------------------------------
# Hash extraction
# ---------------------------------------------------------------------------


class TestExtractStepTxHash:
    def test_direct_field(self) -> None:
        assert extract_step_tx_hash({"txHash": HASH_1}) == HASH_1

    def test_field_priority(self) -> None:
        raw = {"hash": HASH_2, "transactionHash": HASH_1}
        assert extract_step_tx_hash(raw) == HASH_1

    def test_list_field(self) -> None:
        assert extract_step_tx_hash({"txHashes": ["nope", HASH_3]}) == HASH_3

    def test_from_explorer_url(self) -> None:
        raw = {"explorerUrl": f"https://testnet.arcscan.app/tx/{HASH_2}"}
        assert extract_step_tx_hash(raw) == HASH_2

    def test_invalid_hash_ignored(self) -> None:
        assert extract_step_tx_hash({"txHash": "0x1234"}) is None

    def test_attribute_object(self) -> None:
        assert extract_step_tx_hash(SimpleNamespace(tx_hash=HASH_1)) == HASH_1


class TestNormalizeEngineResult:
    def test_dict_result(self) -> None:
        result = normalize_engine_result(
            {"state": "pending", "steps": [{"name": "burn", "state": "SUCCESS", "transactionHash": HASH_1}]}
        )
        assert result.state == "pending"
        assert result.steps == [EngineStep(name="burn", state="success", tx_hash=HASH_1)]

    def test_object_result(self) -> None:
        raw = SimpleNamespace(state="success", steps=[SimpleNamespace(name="mint", state="success", hash=HASH_2)])
        result = normalize_engine_result(raw)
        assert result.steps[0].tx_hash == HASH_2

    def test_missing_state_is_error(self) -> None:
        assert normalize_engine_result({}).state == "error"

    def test_unnamed_steps_dropped(self) -> None:
        result = normalize_engine_result({"state": "success", "steps": [{"state": "success"}]})
        assert result.steps == []


# ---------------------------------------------------------------------------
# Mapping onto canonical steps
# ---------------------------------------------------------------------------


class TestMapEngineSteps:
    def test_happy_path(self) -> None:
        result = EngineResult(
            state="success",
            steps=[
                EngineStep(name="burn", state="success", tx_hash=HASH_1),
                EngineStep(name="mint", state="success", tx_hash=HASH_2),
            ],
        )
        mapped = _by_id(map_engine_steps(result, _steps(), StepNameMatcher()))
        assert mapped["burn"].state == "success"
        assert mapped["burn"].tx_hash == HASH_1
        assert mapped["mint"].state == "success"
        assert mapped["mint"].tx_hash == HASH_2
        assert mapped["approval"].state == "pending"

    def test_provider_names(self) -> None:
        result = EngineResult(
            state="success",
            steps=[
                EngineStep(name="Approve USDC spend", state="success"),
                EngineStep(name="Receive on destination", state="pending"),
            ],
        )
        mapped = _by_id(map_engine_steps(result, _steps(), StepNameMatcher()))
        assert mapped["approval"].state == "success"
        assert mapped["mint"].state == "pending"

    def test_unrecognized_name_changes_nothing(self) -> None:
        steps = _steps()
        result = EngineResult(state="success", steps=[EngineStep(name="foobar", state="success", tx_hash=HASH_1)])
        assert map_engine_steps(result, steps, StepNameMatcher()) == steps

    def test_state_mapping(self) -> None:
        result = EngineResult(
            state="error",
            steps=[
                EngineStep(name="approve", state="noop"),
                EngineStep(name="burn", state="error"),
                EngineStep(name="mint", state="weird"),
            ],
        )
        mapped = _by_id(map_engine_steps(result, _steps(), StepNameMatcher()))
        assert mapped["approval"].state == "success"
        assert mapped["burn"].state == "error"
        assert mapped["mint"].state == "pending"

    def test_stored_hash_kept(self) -> None:
        steps = _steps()
        steps[1].tx_hash = HASH_1
        result = EngineResult(state="pending", steps=[EngineStep(name="burn", state="success", tx_hash=HASH_2)])
        mapped = _by_id(map_engine_steps(result, steps, StepNameMatcher()))
        assert mapped["burn"].tx_hash == HASH_1

    def test_chain_ids_preserved(self) -> None:
        result = EngineResult(state="success", steps=[EngineStep(name="mint", state="success")])
        mapped = _by_id(map_engine_steps(result, _steps(), StepNameMatcher()))
        assert mapped["mint"].chain_id == ARC_CHAIN_ID
        assert mapped["attestation"].chain_id is None
