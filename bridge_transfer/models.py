"""
Transfer Data Model

Persisted records for cross-chain USDC transfers.

A Transfer always carries exactly four steps in canonical order:
1. approval    - token allowance on the source chain
2. burn        - send on the source chain
3. attestation - off-chain confirmation by the bridging protocol
4. mint        - receive on the destination chain
"""

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any


TRANSFER_STATUSES = ('pending', 'confirming', 'minting', 'completed', 'failed')
TERMINAL_STATUSES = ('completed', 'failed')
STEP_STATES = ('pending', 'success', 'error')

CANONICAL_STEP_IDS = ('approval', 'burn', 'attestation', 'mint')
STEP_LABELS = {
    'approval': 'Approval',
    'burn': 'Sending on source chain',
    'attestation': 'Circle is confirming',
    'mint': 'Minting on destination chain',
}

# 32-byte transaction hash
TX_HASH_PATTERN = re.compile(r'0x[0-9a-fA-F]{64}')


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp (accepts a trailing 'Z')"""
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        raise ValueError(f"Invalid timestamp: {value!r}")
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def extract_tx_hash(value: Optional[str]) -> Optional[str]:
    """Return the first hash-shaped substring of value, if any"""
    if not value or not isinstance(value, str):
        return None
    match = TX_HASH_PATTERN.search(value)
    return match.group(0) if match else None


def is_tx_hash(value: Any) -> bool:
    return isinstance(value, str) and TX_HASH_PATTERN.fullmatch(value) is not None


@dataclass
class TransferStep:
    """One stage of the canonical pipeline"""
    id: str
    label: str
    state: str = 'pending'  # 'pending', 'success', 'error'
    tx_hash: Optional[str] = None
    explorer_url: Optional[str] = None
    chain_id: Optional[int] = None

    @property
    def is_settled(self) -> bool:
        return self.state in ('success', 'error')

    def to_dict(self) -> Dict:
        data = {'id': self.id, 'label': self.label, 'state': self.state}
        if self.tx_hash is not None:
            data['txHash'] = self.tx_hash
        if self.explorer_url is not None:
            data['explorerUrl'] = self.explorer_url
        if self.chain_id is not None:
            data['chainId'] = self.chain_id
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'TransferStep':
        step_id = data['id']
        state = data.get('state', 'pending')
        if state not in STEP_STATES:
            raise ValueError(f"Invalid step state: {state!r}")
        chain_id = data.get('chainId')
        return cls(
            id=step_id,
            label=data.get('label') or STEP_LABELS.get(step_id, step_id),
            state=state,
            tx_hash=data.get('txHash'),
            explorer_url=data.get('explorerUrl'),
            chain_id=int(chain_id) if chain_id is not None else None,
        )


@dataclass
class TransferRoute:
    """Route details from the pricing quote (display only)"""
    provider: str
    route_id: Optional[str] = None
    eta_seconds: Optional[int] = None
    fee_amount: Optional[str] = None

    def to_dict(self) -> Dict:
        data: Dict[str, Any] = {'provider': self.provider}
        if self.route_id is not None:
            data['routeId'] = self.route_id
        if self.eta_seconds is not None:
            data['etaSeconds'] = self.eta_seconds
        if self.fee_amount is not None:
            data['feeAmount'] = self.fee_amount
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'TransferRoute':
        return cls(
            provider=data.get('provider', ''),
            route_id=data.get('routeId'),
            eta_seconds=data.get('etaSeconds'),
            fee_amount=data.get('feeAmount'),
        )


@dataclass
class ExplorerLinks:
    """Human-facing explorer URLs for the source and destination transactions"""
    source: Optional[str] = None
    destination: Optional[str] = None

    def to_dict(self) -> Dict:
        data = {}
        if self.source is not None:
            data['source'] = self.source
        if self.destination is not None:
            data['destination'] = self.destination
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'ExplorerLinks':
        return cls(source=data.get('source'), destination=data.get('destination'))


@dataclass
class Transfer:
    """One user-initiated cross-chain movement"""
    id: str
    created_at: datetime
    updated_at: datetime
    from_network: str
    to_network: str
    amount: str
    status: str  # 'pending', 'confirming', 'minting', 'completed', 'failed'
    steps: List[TransferStep] = field(default_factory=list)
    amount_out_estimated: Optional[str] = None
    route: Optional[TransferRoute] = None
    explorer_links: Optional[ExplorerLinks] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def get_step(self, step_id: str) -> Optional[TransferStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def to_dict(self) -> Dict:
        """Convert to the persisted dictionary layout"""
        data: Dict[str, Any] = {
            'id': self.id,
            'createdAt': self.created_at.isoformat(),
            'updatedAt': self.updated_at.isoformat(),
            'fromNetwork': self.from_network,
            'toNetwork': self.to_network,
            'amount': self.amount,
            'status': self.status,
            'steps': [step.to_dict() for step in self.steps],
        }
        if self.amount_out_estimated is not None:
            data['amountOutEstimated'] = self.amount_out_estimated
        if self.route is not None:
            data['route'] = self.route.to_dict()
        if self.explorer_links is not None:
            data['explorerLinks'] = self.explorer_links.to_dict()
        if self.error_message is not None:
            data['errorMessage'] = self.error_message
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'Transfer':
        """
        Build a Transfer from its persisted layout

        Steps are rebuilt in canonical order by id, so a stored record can never
        yield more, fewer or reordered steps.

        Raises:
            KeyError, ValueError, TypeError: if the record is malformed
        """
        status = data['status']
        if status not in TRANSFER_STATUSES:
            raise ValueError(f"Invalid transfer status: {status!r}")

        stored_steps = {}
        for raw_step in data.get('steps') or []:
            step = TransferStep.from_dict(raw_step)
            stored_steps.setdefault(step.id, step)

        steps = []
        for step_id in CANONICAL_STEP_IDS:
            steps.append(stored_steps.get(step_id) or TransferStep(id=step_id, label=STEP_LABELS[step_id]))

        route = data.get('route')
        links = data.get('explorerLinks')

        return cls(
            id=str(data['id']),
            created_at=parse_timestamp(data['createdAt']),
            updated_at=parse_timestamp(data.get('updatedAt') or data['createdAt']),
            from_network=data.get('fromNetwork') or data['fromNetworkId'],
            to_network=data.get('toNetwork') or data['toNetworkId'],
            amount=str(data['amount']),
            status=status,
            steps=steps,
            amount_out_estimated=data.get('amountOutEstimated'),
            route=TransferRoute.from_dict(route) if route else None,
            explorer_links=ExplorerLinks.from_dict(links) if links else None,
            error_message=data.get('errorMessage'),
        )


def build_default_steps(source_chain_id: Optional[int], destination_chain_id: Optional[int]) -> List[TransferStep]:
    """Create the four pending canonical steps with their chain ids"""
    chain_by_step = {
        'approval': source_chain_id,
        'burn': source_chain_id,
        'attestation': None,
        'mint': destination_chain_id,
    }
    return [
        TransferStep(id=step_id, label=STEP_LABELS[step_id], chain_id=chain_by_step[step_id])
        for step_id in CANONICAL_STEP_IDS
    ]


def new_transfer(
    transfer_id: str,
    from_network: str,
    to_network: str,
    source_chain_id: Optional[int],
    destination_chain_id: Optional[int],
    amount: str,
    amount_out_estimated: Optional[str] = None,
    route: Optional[TransferRoute] = None,
) -> Transfer:
    """
    Create a pending Transfer with all four steps pending

    Raises:
        ValueError: if source and destination networks are the same
    """
    if from_network == to_network:
        raise ValueError("Source and destination networks must differ")

    now = utc_now()
    return Transfer(
        id=transfer_id,
        created_at=now,
        updated_at=now,
        from_network=from_network,
        to_network=to_network,
        amount=amount,
        status='pending',
        steps=build_default_steps(source_chain_id, destination_chain_id),
        amount_out_estimated=amount_out_estimated,
        route=route,
    )


def replace_step(transfer: Transfer, step_id: str, **changes) -> Transfer:
    """Return a copy of transfer with one step changed"""
    steps = [replace(step, **changes) if step.id == step_id else step for step in transfer.steps]
    return replace(transfer, steps=steps)
