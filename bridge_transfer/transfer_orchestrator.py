"""
Transfer Orchestrator

Drives one cross-chain USDC transfer through the external bridging engine:
1. Precondition checks (wallet, recipient, networks, amount)
2. Pending record written to the store (before the engine call)
3. Bridging engine call (wallet signs approve / burn / receive)
4. Engine steps mapped onto the canonical steps
5. Transfer status derived and stored

Transfers the engine reports as still pending are finished by the watcher.
"""

import uuid
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple
from loguru import logger

from .config import BridgeSettings
from .models import (
    ExplorerLinks,
    Transfer,
    TransferStep,
    build_default_steps,
    new_transfer,
    utc_now,
)
from .network_registry import Network, NetworkRegistry, UnknownNetworkError
from .quote_service import RouteQuote
from .step_mapping import EngineResult, StepNameMatcher, map_engine_steps, normalize_engine_result
from .transfer_store import TransferStore


class PreconditionError(ValueError):
    """Request rejected before any store mutation"""


class BridgeExecutionError(RuntimeError):
    """Engine failure that carried no message of its own"""


class SigningCapability(Protocol):
    """Connected wallet"""
    address: Optional[str]

    async def get_provider(self) -> Any:
        ...


class BridgingEngine(Protocol):
    """External cross-chain bridging engine"""

    async def bridge(self, source: Dict, destination: Dict, amount: str, config: Optional[Dict] = None) -> Any:
        ...


AdapterFactory = Callable[[Any], Awaitable[Any]]


async def _provider_as_adapter(provider: Any) -> Any:
    return provider


@dataclass
class BridgeRequest:
    """Transfer request"""
    from_network: str
    to_network: str
    amount: str
    quote: Optional[RouteQuote] = None
    recipient: Optional[str] = None


@dataclass
class ExecutionState:
    """Per-invocation execution state (not persisted)"""
    status: str = 'idle'  # 'idle', 'pending', 'success', 'error'
    steps: List[TransferStep] = field(default_factory=lambda: build_default_steps(None, None))
    phase: Optional[str] = None  # 'awaiting-wallet', 'bridge-in-progress'
    message: Optional[str] = None
    transfer_id: Optional[str] = None


class TransferOrchestrator:
    """
    Execute transfers through the bridging engine and record them

    Safety Features:
    1. Preconditions checked before anything is written
    2. Pending record stored before the engine call, so every transfer is discoverable
    3. Engine step names reconciled to canonical steps
    4. Engine failures recorded as failed transfers and re-raised
    """

    DEFAULT_TRANSFER_SPEED = "FAST"
    FALLBACK_ERROR_MESSAGE = "Bridge request failed."
    ENGINE_ERROR_MESSAGE = "Bridge reported an error."

    # Engine overall state -> transfer status
    STATUS_BY_ENGINE_STATE = {
        'success': 'completed',
        'pending': 'minting',
    }

    def __init__(
        self,
        store: TransferStore,
        registry: NetworkRegistry,
        engine: BridgingEngine,
        signer: Optional[SigningCapability],
        adapter_factory: Optional[AdapterFactory] = None,
        step_matcher: Optional[StepNameMatcher] = None,
        transfer_speed: str = DEFAULT_TRANSFER_SPEED
    ):
        """
        Initialize orchestrator

        Args:
            store: Transfer store
            registry: Network registry
            engine: Bridging engine
            signer: Connected wallet (None when disconnected)
            adapter_factory: Builds the engine adapter from the wallet provider
            step_matcher: Step name matcher (default aliases if omitted)
            transfer_speed: Engine transfer speed setting
        """
        self.store = store
        self.registry = registry
        self.engine = engine
        self.signer = signer
        self.adapter_factory = adapter_factory or _provider_as_adapter
        self.step_matcher = step_matcher or StepNameMatcher()
        self.transfer_speed = transfer_speed
        self.state = ExecutionState()

    def reset(self):
        """Return to idle"""
        self.state = ExecutionState()

    def _check_preconditions(self, request: BridgeRequest) -> Tuple[Network, Network, str]:
        """
        Validate a request

        Returns:
            Tuple of (source_network, destination_network, recipient)

        Raises:
            PreconditionError: on any violation
        """
        if self.signer is None:
            raise PreconditionError("Connect a wallet to bridge USDC.")

        recipient = request.recipient or getattr(self.signer, 'address', None)
        if not recipient:
            raise PreconditionError("No recipient address found.")

        try:
            source = self.registry.lookup_by_id(request.from_network)
            destination = self.registry.lookup_by_id(request.to_network)
        except UnknownNetworkError as e:
            raise PreconditionError(f"Unsupported network: {e.args[0]}") from None

        if source.id == destination.id:
            raise PreconditionError("Source and destination networks must differ.")

        try:
            amount = Decimal(str(request.amount).strip())
        except InvalidOperation:
            raise PreconditionError(f"Invalid amount: {request.amount!r}") from None
        if not amount.is_finite() or amount <= 0:
            raise PreconditionError("Amount must be greater than zero.")

        return source, destination, recipient

    def _derive_status(self, result: EngineResult) -> str:
        return self.STATUS_BY_ENGINE_STATE.get(result.state, 'failed')

    def _apply_engine_result(self, transfer: Transfer, result: EngineResult) -> Transfer:
        if transfer.is_terminal:
            return transfer

        steps = map_engine_steps(result, transfer.steps, self.step_matcher)
        burn = next(step for step in steps if step.id == 'burn')
        mint = next(step for step in steps if step.id == 'mint')
        status = self._derive_status(result)

        explorer_links = transfer.explorer_links
        if burn.explorer_url or mint.explorer_url:
            explorer_links = ExplorerLinks(source=burn.explorer_url, destination=mint.explorer_url)

        return replace(
            transfer,
            steps=steps,
            status=status,
            updated_at=utc_now(),
            explorer_links=explorer_links,
            error_message=self.ENGINE_ERROR_MESSAGE if status == 'failed' else transfer.error_message,
        )

    @staticmethod
    def _mark_failed(transfer: Transfer, message: str) -> Transfer:
        if transfer.is_terminal:
            return transfer
        first_step = transfer.steps[0]
        steps = [replace(first_step, state='error')] + list(transfer.steps[1:])
        return replace(transfer, steps=steps, status='failed', error_message=message, updated_at=utc_now())

    async def execute(self, request: BridgeRequest) -> str:
        """
        Execute a transfer

        Args:
            request: Transfer request

        Returns:
            Transfer id (also for transfers still in progress on the engine side)

        Raises:
            PreconditionError: request rejected, nothing stored
            Exception: engine error, re-raised after the transfer is marked failed
            BridgeExecutionError: engine error without a message
        """
        source, destination, recipient = self._check_preconditions(request)
        quote = request.quote

        transfer_id = str(uuid.uuid4())
        record = new_transfer(
            transfer_id=transfer_id,
            from_network=source.id,
            to_network=destination.id,
            source_chain_id=source.chain_id,
            destination_chain_id=destination.chain_id,
            amount=request.amount,
            amount_out_estimated=quote.amount_out if quote else None,
            route=quote.to_route() if quote else None,
        )

        logger.info(f"Starting transfer: {transfer_id}")
        logger.info(f"  From: {source.label} → To: {destination.label}")
        logger.info(f"  Amount: {request.amount} USDC")

        self.state = ExecutionState(
            status='pending',
            steps=record.steps,
            phase='awaiting-wallet',
            message="Awaiting wallet confirmations…",
            transfer_id=transfer_id,
        )
        self.store.upsert(record)

        try:
            provider = await self.signer.get_provider()
            adapter = await self.adapter_factory(provider)

            raw_result = await self.engine.bridge(
                source={'adapter': adapter, 'chain': source.bridge_chain},
                destination={'adapter': adapter, 'chain': destination.bridge_chain, 'recipient': recipient},
                amount=request.amount,
                config={'transferSpeed': self.transfer_speed},
            )
        except Exception as e:
            message = str(e) or self.FALLBACK_ERROR_MESSAGE
            logger.error(f"❌ Transfer {transfer_id} failed: {message}")
            failed = self.store.mutate(transfer_id, lambda current: self._mark_failed(current, message))
            self.state = ExecutionState(
                status='error',
                steps=(failed or self._mark_failed(record, message)).steps,
                message=message,
                transfer_id=transfer_id,
            )
            if str(e):
                raise
            raise BridgeExecutionError(message) from e

        result = normalize_engine_result(raw_result)
        stored = self.store.mutate(transfer_id, lambda current: self._apply_engine_result(current, result))
        if stored is None:
            # Record vanished (store cleared mid-flight); keep the outcome anyway
            stored = self._apply_engine_result(record, result)
            self.store.upsert(stored)

        if stored.status == 'completed':
            logger.info(f"✅ Transfer {transfer_id} completed")
            self.state = ExecutionState(status='success', steps=stored.steps, transfer_id=transfer_id)
        elif stored.status == 'failed':
            logger.error(f"❌ Transfer {transfer_id} reported failed by bridge engine")
            self.state = ExecutionState(
                status='error',
                steps=stored.steps,
                message=stored.error_message or self.ENGINE_ERROR_MESSAGE,
                transfer_id=transfer_id,
            )
        else:
            logger.info(f"⏳ Transfer {transfer_id} submitted, waiting for attestation and mint")
            self.state = ExecutionState(
                status='pending',
                steps=stored.steps,
                phase='bridge-in-progress',
                message="Bridge in progress…",
                transfer_id=transfer_id,
            )

        return transfer_id


def create_orchestrator(
    store: TransferStore,
    registry: NetworkRegistry,
    engine: BridgingEngine,
    signer: Optional[SigningCapability],
    settings: Optional[BridgeSettings] = None,
    **kwargs
) -> TransferOrchestrator:
    """
    Build a TransferOrchestrator

    Args:
        settings: Optional settings supplying step aliases and transfer speed
        **kwargs: Passed to TransferOrchestrator (take precedence over settings)
    """
    if settings is not None:
        kwargs.setdefault('step_matcher', StepNameMatcher(extra_aliases=settings.step_aliases))
        kwargs.setdefault('transfer_speed', settings.transfer_speed)
    return TransferOrchestrator(store, registry, engine, signer, **kwargs)
