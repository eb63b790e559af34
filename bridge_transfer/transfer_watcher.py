"""
Transfer Watcher

Background reconciliation of in-flight transfers against on-chain receipts.

Each pass walks the pending steps of every non-terminal transfer:
1. Resolve a tx hash (step hash, step explorer URL, transfer explorer link)
2. Persist a newly resolved hash
3. Query the receipt on the step's chain
4. Apply definitive receipts and recompute the transfer status

Passes run immediately and then every 15 seconds while active transfers exist.
"""

import asyncio
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Tuple
from loguru import logger

from .models import Transfer, TransferStep, extract_tx_hash, is_tx_hash, replace_step, utc_now
from .network_registry import NetworkRegistry
from .receipt_client import ChainReceiptClient, EndpointUnavailableError, ReceiptQueryError, ReceiptStatus
from .transfer_store import TransferStore


UpdateFn = Callable[[str, Callable[[Transfer], Transfer]], Optional[Transfer]]

# Transfer-level explorer link holding each on-chain step's transaction
LINK_ROLE_BY_STEP = {
    'burn': 'source',
    'mint': 'destination',
}


class CancellationToken:
    """Cooperative cancellation flag for one watcher loop"""

    def __init__(self):
        self._cancelled = False

    def cancel(self):
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


def resolve_step_tx_hash(transfer: Transfer, step: TransferStep) -> Optional[str]:
    """
    Find a usable tx hash for a step

    Search order:
    1. Stored step hash
    2. Step explorer URL
    3. Transfer explorer link for the step's role (source for burn, destination for mint)
    """
    if is_tx_hash(step.tx_hash):
        return step.tx_hash

    found = extract_tx_hash(step.explorer_url)
    if found:
        return found

    role = LINK_ROLE_BY_STEP.get(step.id)
    if role and transfer.explorer_links is not None:
        return extract_tx_hash(getattr(transfer.explorer_links, role))

    return None


def _with_resolved_hash(current: Transfer, step_id: str, tx_hash: str, explorer_url: Optional[str]) -> Transfer:
    step = current.get_step(step_id)
    if current.is_terminal or step is None or step.tx_hash:
        return current
    updated = replace_step(current, step_id, tx_hash=tx_hash, explorer_url=step.explorer_url or explorer_url)
    return replace(updated, updated_at=utc_now())


def apply_step_receipt(current: Transfer, step_id: str, is_success: bool) -> Transfer:
    """
    Apply a definitive receipt to one step and recompute the transfer status

    Rules:
    - Terminal transfers and already settled steps are returned unchanged
    - mint success promotes a pending attestation to success
    - mint error demotes a pending attestation to error
    - mint resolution decides the transfer status directly
    - otherwise, once every step is settled: all success after minting -> completed,
      any error -> failed

    Args:
        current: Latest stored transfer
        step_id: Canonical step id
        is_success: Receipt outcome

    Returns:
        Updated transfer (same object if nothing changed)
    """
    if current.is_terminal:
        return current

    step = current.get_step(step_id)
    if step is None or step.state != 'pending':
        return current

    new_state = 'success' if is_success else 'error'
    updated = replace_step(current, step_id, state=new_state)

    if step_id == 'mint':
        attestation = updated.get_step('attestation')
        if attestation is not None and attestation.state == 'pending':
            updated = replace_step(updated, 'attestation', state=new_state)
        status = 'completed' if is_success else 'failed'
    else:
        status = current.status
        if all(item.is_settled for item in updated.steps):
            all_success = all(item.state == 'success' for item in updated.steps)
            if all_success and current.status == 'minting':
                status = 'completed'
            elif not all_success and current.status != 'failed':
                status = 'failed'

    error_message = updated.error_message
    if status == 'failed' and not error_message:
        error_message = f"{step.label} transaction failed on chain."

    return replace(updated, status=status, error_message=error_message, updated_at=utc_now())


class TransferWatcher:
    """
    Poll chain receipts for active transfers and write confirmations back

    Features:
    - One loop per active transfer set, restarted when the set changes
    - Immediate pass on (re)start, then a fixed 15s interval
    - On-demand pass (force_check), safe alongside the scheduled loop
    - Not-found results throttled in the log, never treated as failure
    - Endpoint errors logged and retried on the next pass
    """

    POLL_INTERVAL_SECONDS = 15
    NOT_FOUND_LOG_EVERY = 5

    def __init__(self, update_fn: UpdateFn, receipt_client: ChainReceiptClient, registry: NetworkRegistry):
        """
        Initialize watcher

        Args:
            update_fn: Read-modify-write on one stored transfer (e.g. TransferStore.mutate)
            receipt_client: Chain receipt client
            registry: Network registry (explorer links for resolved hashes)
        """
        self.update_fn = update_fn
        self.receipt_client = receipt_client
        self.registry = registry

        self.retry_counts: Dict[str, int] = {}
        self._transfers: List[Transfer] = []
        self._active_key: Tuple[str, ...] = ()
        self._token: Optional[CancellationToken] = None
        self._task: Optional[asyncio.Task] = None
        self._store: Optional[TransferStore] = None

    @property
    def active_transfers(self) -> List[Transfer]:
        return list(self._transfers)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def set_transfers(self, transfers: List[Transfer]):
        """
        Update the watched transfers

        The loop is restarted when the set of active transfer ids changes and
        cancelled when no active transfers remain.
        """
        active = [transfer for transfer in transfers if not transfer.is_terminal]
        key = tuple(transfer.id for transfer in active)
        self._transfers = active

        if key == self._active_key and (self.running or not active):
            return

        self._active_key = key
        self._cancel_loop()
        if not active:
            logger.debug("No active transfers, watcher idle")
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, watcher loop not started")
            return

        token = CancellationToken()
        self._token = token
        self._task = loop.create_task(self._run(token))
        logger.debug(f"Watching {len(active)} active transfer(s)")

    def _cancel_loop(self):
        if self._token is not None:
            self._token.cancel()
            self._token = None
        if self._task is not None:
            if not self._task.done():
                self._task.cancel()
            self._task = None

    async def _run(self, token: CancellationToken):
        while not token.cancelled:
            await self.check_transfers(self.active_transfers, token)
            if token.cancelled:
                break
            await asyncio.sleep(self.POLL_INTERVAL_SECONDS)

    def _refresh(self, transfer: Transfer):
        """Replace the in-memory snapshot of a transfer after a write"""
        refreshed = []
        for item in self._transfers:
            if item.id == transfer.id:
                if transfer.is_terminal:
                    continue
                item = transfer
            refreshed.append(item)
        self._transfers = refreshed

    def _write(self, transfer_id: str, fn: Callable[[Transfer], Transfer],
               token: Optional[CancellationToken]) -> Optional[Transfer]:
        if token is not None and token.cancelled:
            return None
        updated = self.update_fn(transfer_id, fn)
        if isinstance(updated, Transfer):
            self._refresh(updated)
        return updated

    async def check_transfers(self, transfers: List[Transfer], token: Optional[CancellationToken] = None) -> int:
        """
        Run one reconciliation pass

        Args:
            transfers: Transfer snapshot to check
            token: Cancellation token (no writes after cancellation)

        Returns:
            Number of receipts applied
        """
        applied = 0
        for transfer in transfers:
            if transfer.is_terminal:
                continue
            for step in transfer.steps:
                if token is not None and token.cancelled:
                    return applied
                if step.state != 'pending':
                    continue
                if await self._check_step(transfer, step, token):
                    applied += 1
        return applied

    async def _check_step(self, transfer: Transfer, step: TransferStep,
                          token: Optional[CancellationToken]) -> bool:
        tx_hash = resolve_step_tx_hash(transfer, step)

        if tx_hash and not step.tx_hash:
            explorer_url = None
            network = self.registry.lookup_by_chain_id(step.chain_id) if step.chain_id is not None else None
            if network:
                explorer_url = network.explorer_tx_url(tx_hash)
            logger.info(f"Resolved tx hash for {transfer.id}/{step.id}: {tx_hash[:10]}...")
            self._write(transfer.id, lambda current: _with_resolved_hash(current, step.id, tx_hash, explorer_url), token)

        if not tx_hash or step.chain_id is None:
            return False

        try:
            status = await self.receipt_client.get_receipt(step.chain_id, tx_hash)
        except EndpointUnavailableError as e:
            logger.warning(f"⚠ Cannot check {transfer.id}/{step.id}: {e}")
            return False
        except ReceiptQueryError as e:
            logger.warning(f"⚠ Receipt query failed for {transfer.id}/{step.id}, retrying next pass: {e}")
            return False

        if token is not None and token.cancelled:
            return False

        retry_key = f"{transfer.id}:{step.id}:{tx_hash}"
        if status == ReceiptStatus.NOT_FOUND:
            count = self.retry_counts.get(retry_key, 0) + 1
            self.retry_counts[retry_key] = count
            if count % self.NOT_FOUND_LOG_EVERY == 0:
                logger.info(f"Still waiting for {step.id} receipt of {transfer.id} "
                            f"({tx_hash[:10]}..., {count} checks)")
            return False

        self.retry_counts.pop(retry_key, None)
        is_success = status == ReceiptStatus.SUCCESS
        updated = self._write(transfer.id, lambda current: apply_step_receipt(current, step.id, is_success), token)
        if updated is None:
            return False

        if is_success:
            logger.info(f"✓ {step.label} confirmed for {transfer.id} ({updated.status})")
        else:
            logger.error(f"✗ {step.label} failed on chain for {transfer.id} ({updated.status})")
        return True

    async def force_check(self) -> int:
        """Run a reconciliation pass now over the active transfers"""
        return await self.check_transfers(self.active_transfers)

    def attach(self, store: TransferStore):
        """Follow a store: watch its current transfers and every later change"""
        self.detach()
        self._store = store
        store.add_listener(self.set_transfers)
        self.set_transfers(store.load())

    def detach(self):
        if self._store is not None:
            self._store.remove_listener(self.set_transfers)
            self._store = None

    def stop(self):
        """Cancel the loop and stop following the store"""
        self.detach()
        self._cancel_loop()
        self._active_key = ()

    async def shutdown(self):
        """Stop and wait for the loop task to finish"""
        task = self._task
        self.stop()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass


def create_watcher(
    transfers: List[Transfer],
    update_fn: UpdateFn,
    receipt_client: ChainReceiptClient,
    registry: NetworkRegistry
) -> TransferWatcher:
    """Build a TransferWatcher already watching transfers"""
    watcher = TransferWatcher(update_fn, receipt_client, registry)
    watcher.set_transfers(transfers)
    return watcher
