"""
Step Mapping

Maps the bridging engine's provider-specific step results onto the four
canonical steps (approval, burn, attestation, mint).

Engine output is normalized once at the boundary into EngineResult/EngineStep,
with a single optional tx hash per step, so nothing downstream inspects the
raw shape.
"""

import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional
from loguru import logger

from .models import CANONICAL_STEP_IDS, TransferStep, extract_tx_hash, is_tx_hash


# Synonyms per canonical step (lower-case). Extend via StepNameMatcher(extra_aliases=...)
DEFAULT_STEP_ALIASES = {
    'approval': ['approval', 'approve', 'allowance', 'authorize', 'authorise'],
    'burn': ['burn', 'deposit', 'depositforburn', 'send', 'transfer'],
    'attestation': ['attestation', 'attest', 'fetchattestation', 'confirm', 'message'],
    'mint': ['mint', 'receive', 'receivemessage', 'withdraw', 'claim'],
}

# Engine step state -> canonical step state
ENGINE_STATE_MAP = {
    'success': 'success',
    'noop': 'success',
    'error': 'error',
    'pending': 'pending',
}

HASH_FIELDS = ('txHash', 'tx_hash', 'transactionHash', 'transaction_hash', 'hash')
HASH_LIST_FIELDS = ('txHashes', 'tx_hashes', 'transactionHashes', 'hashes')
URL_FIELDS = ('explorerUrl', 'explorer_url', 'explorerUrls', 'explorer_urls', 'url')

# Shortest alias allowed to match a longer word by prefix ("send" -> "sending")
MIN_PREFIX_ALIAS = 4

_TOKEN_SPLIT = re.compile(r'[^a-z0-9]+')


@dataclass
class EngineStep:
    """Engine step result after normalization"""
    name: str
    state: str
    tx_hash: Optional[str] = None
    explorer_url: Optional[str] = None


@dataclass
class EngineResult:
    """Engine bridge result after normalization"""
    state: str  # 'success', 'pending', 'error'
    steps: List[EngineStep] = field(default_factory=list)


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def extract_step_tx_hash(raw_step: Any) -> Optional[str]:
    """
    Find the transaction hash on a raw engine step

    Search order:
    1. Direct hash fields
    2. List-valued hash fields
    3. Hash-shaped substrings of explorer URLs

    Returns:
        First valid 32-byte hex hash, or None
    """
    for name in HASH_FIELDS:
        value = _field(raw_step, name)
        if is_tx_hash(value):
            return value

    for name in HASH_LIST_FIELDS:
        for value in _as_list(_field(raw_step, name)):
            if is_tx_hash(value):
                return value

    for name in URL_FIELDS:
        for value in _as_list(_field(raw_step, name)):
            found = extract_tx_hash(value)
            if found:
                return found

    return None


def _first_url(raw_step: Any) -> Optional[str]:
    for name in URL_FIELDS:
        for value in _as_list(_field(raw_step, name)):
            if isinstance(value, str) and value:
                return value
    return None


def normalize_engine_result(raw: Any) -> EngineResult:
    """
    Normalize a raw engine result (dict or attribute object)

    Args:
        raw: Result returned by the bridging engine

    Returns:
        EngineResult
    """
    state = str(_field(raw, 'state') or 'error').lower()

    steps = []
    for raw_step in _as_list(_field(raw, 'steps')):
        name = _field(raw_step, 'name')
        if not isinstance(name, str):
            logger.debug(f"Ignoring engine step without a name: {raw_step!r}")
            continue
        steps.append(EngineStep(
            name=name,
            state=str(_field(raw_step, 'state') or 'pending').lower(),
            tx_hash=extract_step_tx_hash(raw_step),
            explorer_url=_first_url(raw_step),
        ))

    return EngineResult(state=state, steps=steps)


class StepNameMatcher:
    """
    Match free-text engine step names to canonical step ids

    Priority per canonical step:
    1. Alias-normalized name equals the canonical id
    2. Raw name equals the canonical id
    3. Substring containment either way (normalized or raw, lower-case)
    """

    def __init__(self, extra_aliases: Optional[Dict[str, Iterable[str]]] = None):
        """
        Initialize matcher

        Args:
            extra_aliases: Additional {canonical_id: [synonyms]}
        """
        self.aliases: Dict[str, List[str]] = {
            step_id: list(names) for step_id, names in DEFAULT_STEP_ALIASES.items()
        }

        for step_id, names in (extra_aliases or {}).items():
            if step_id not in CANONICAL_STEP_IDS:
                logger.warning(f"Ignoring aliases for unknown step '{step_id}'")
                continue
            for name in names:
                name = str(name).lower()
                if name not in self.aliases[step_id]:
                    self.aliases[step_id].append(name)

        self._alias_index: Dict[str, str] = {}
        for step_id in CANONICAL_STEP_IDS:
            for alias in self.aliases[step_id]:
                self._alias_index.setdefault(alias, step_id)

    def _lookup_prefix(self, token: str) -> Optional[str]:
        for alias, step_id in self._alias_index.items():
            if len(alias) >= MIN_PREFIX_ALIAS and token.startswith(alias):
                return step_id
        return None

    def normalize(self, name: str) -> Optional[str]:
        """
        Resolve an engine step name to a canonical id via the alias table

        The compacted whole name is tried first ("depositForBurn"), then each
        word in order ("Approve USDC spend" -> "approve"). A word only matches
        an alias by prefix ("Sending" -> "send") when no word matches exactly.
        """
        lowered = name.lower()
        compact = _TOKEN_SPLIT.sub('', lowered)
        if compact in self._alias_index:
            return self._alias_index[compact]

        tokens = [token for token in _TOKEN_SPLIT.split(lowered) if token]
        for token in tokens:
            if token in self._alias_index:
                return self._alias_index[token]

        for token in tokens:
            step_id = self._lookup_prefix(token)
            if step_id:
                return step_id
        return None

    def match(self, canonical_id: str, engine_steps: List[EngineStep]) -> Optional[EngineStep]:
        """
        Find the engine step for a canonical step

        Args:
            canonical_id: One of the canonical step ids
            engine_steps: Normalized engine steps

        Returns:
            First matching engine step, or None
        """
        named = [step for step in engine_steps if step.name]

        for step in named:
            if self.normalize(step.name) == canonical_id:
                return step

        for step in named:
            if step.name == canonical_id:
                return step

        for step in named:
            raw = step.name.lower()
            normalized = self.normalize(step.name)
            for candidate in (normalized, raw):
                if candidate and (canonical_id in candidate or candidate in canonical_id):
                    return step

        return None


def map_engine_steps(
    engine_result: EngineResult,
    steps: List[TransferStep],
    matcher: StepNameMatcher
) -> List[TransferStep]:
    """
    Apply engine step results to the canonical steps

    Unmatched canonical steps are returned unchanged. A stored tx hash is
    never replaced.

    Args:
        engine_result: Normalized engine result
        steps: Current canonical steps
        matcher: Step name matcher

    Returns:
        New list of canonical steps
    """
    mapped = []
    used = set()

    for step in steps:
        match = matcher.match(step.id, engine_result.steps)
        if match is None:
            logger.debug(f"No engine step matched canonical step '{step.id}'")
            mapped.append(step)
            continue

        used.add(id(match))
        state = ENGINE_STATE_MAP.get(match.state)
        if state is None:
            logger.debug(f"Unknown engine state '{match.state}' for step '{match.name}'")
            state = step.state

        mapped.append(replace(
            step,
            state=state,
            tx_hash=step.tx_hash or match.tx_hash,
            explorer_url=match.explorer_url or step.explorer_url,
        ))

    for engine_step in engine_result.steps:
        if id(engine_step) not in used:
            logger.debug(f"Engine step '{engine_step.name}' did not match any canonical step")

    return mapped
