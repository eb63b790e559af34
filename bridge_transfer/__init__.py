"""
Bridge Transfer

Cross-chain USDC transfers through an external bridging engine, with durable
local tracking and background reconciliation against on-chain receipts.

Components:
- transfer_store: SQLite-backed transfer persistence
- receipt_client: JSON-RPC receipt lookups with endpoint fallback
- transfer_orchestrator: Drives one transfer through the bridging engine
- step_mapping: Engine step names -> canonical steps
- transfer_watcher: Polls receipts for in-flight transfers
- quote_service: Route quotes with heuristic fallback
- network_registry: Supported networks
- config: YAML + environment settings

Canonical Steps:
1. approval - Token allowance on the source chain
2. burn - Send on the source chain
3. attestation - Off-chain confirmation by the bridging protocol
4. mint - Receive on the destination chain
"""

from .models import (
    Transfer,
    TransferStep,
    TransferRoute,
    ExplorerLinks,
    CANONICAL_STEP_IDS,
    new_transfer,
)
from .transfer_store import (
    TransferStore,
)
from .network_registry import (
    Network,
    NetworkRegistry,
    UnknownNetworkError,
)
from .receipt_client import (
    ChainReceiptClient,
    ReceiptStatus,
    EndpointUnavailableError,
    ReceiptQueryError,
)
from .step_mapping import (
    StepNameMatcher,
    normalize_engine_result,
    map_engine_steps,
)
from .transfer_orchestrator import (
    TransferOrchestrator,
    BridgeRequest,
    ExecutionState,
    PreconditionError,
    BridgeExecutionError,
    create_orchestrator,
)
from .transfer_watcher import (
    TransferWatcher,
    CancellationToken,
    apply_step_receipt,
    create_watcher,
)
from .quote_service import (
    QuoteService,
    RouteQuote,
)
from .config import (
    BridgeSettings,
    load_settings,
)

__all__ = [
    # Data model
    'Transfer',
    'TransferStep',
    'TransferRoute',
    'ExplorerLinks',
    'CANONICAL_STEP_IDS',
    'new_transfer',

    # Persistence
    'TransferStore',

    # Networks
    'Network',
    'NetworkRegistry',
    'UnknownNetworkError',

    # Chain reads
    'ChainReceiptClient',
    'ReceiptStatus',
    'EndpointUnavailableError',
    'ReceiptQueryError',

    # Step mapping
    'StepNameMatcher',
    'normalize_engine_result',
    'map_engine_steps',

    # Execution
    'TransferOrchestrator',
    'BridgeRequest',
    'ExecutionState',
    'PreconditionError',
    'BridgeExecutionError',
    'create_orchestrator',

    # Reconciliation
    'TransferWatcher',
    'CancellationToken',
    'apply_step_receipt',
    'create_watcher',

    # Quotes
    'QuoteService',
    'RouteQuote',

    # Configuration
    'BridgeSettings',
    'load_settings',
]

__version__ = '1.0.0'
__description__ = 'Cross-chain USDC transfer orchestration and reconciliation'
