"""
requests.py - Request Ledger

Tracks individual stake / unstake / burn requests from creation to their
terminal state:

    PENDING --(batch OPEN)--> CANCELLED
    PENDING --(batch SETTLED, claim)--> CLAIMED   (stake, unstake)
    PENDING --(batch SETTLED, claim)--> REDEEMED  (burn)

Payouts are always computed from the figures fixed on the request's own
batch at settlement, never from a live price. Records are never deleted;
terminal requests only leave the per-owner index.
"""

from __future__ import annotations
from dataclasses import replace
from decimal import Decimal, ROUND_DOWN
from typing import Any, List, Optional
import logging

from . import fees
from .batches import BatchLifecycleManager
from .core import (
    Batch, Request, RequestKind, RequestStatus,
    EVENT_REQUEST_CREATED, EVENT_REQUEST_CANCELLED, EVENT_REQUEST_CLAIMED,
    AuthorizationError, InvalidRequestState, ZeroAmount,
    to_decimal,
)
from .store import LedgerStore

logger = logging.getLogger(__name__)


_CLAIMED_STATUS = {
    RequestKind.STAKE: RequestStatus.CLAIMED,
    RequestKind.UNSTAKE: RequestStatus.CLAIMED,
    RequestKind.BURN: RequestStatus.REDEEMED,
}


class RequestLedger:
    """
    Arena of user requests bound to batches.

    Only the vault or gateway that created a request transitions it, through
    cancel() and claim(); both are single atomic check-and-transition steps.

    Example:
        rid = ledger.create(RequestKind.STAKE, "vault", "USDC", "alice", "alice", Decimal("10"), batch_id)
        ...batch settles...
        shares = ledger.claim("alice", rid)
    """

    def __init__(self, store: LedgerStore, batches: BatchLifecycleManager):
        self.store = store
        self.batches = batches

    def create(
        self,
        kind: RequestKind,
        vault_id: str,
        asset: str,
        requester: str,
        beneficiary: str,
        amount: Any,
        batch_id: str,
    ) -> str:
        """
        Record a PENDING request against the open batch of (vault, asset).

        Raises:
            ZeroAmount: If amount is not positive
            InvalidBatchState: If batch_id is not the pair's open batch
        """
        value = to_decimal(amount)
        if value <= 0:
            raise ZeroAmount(f"Request amount must be positive, got {value}")
        with self.store.atomic():
            self.batches.require_open(batch_id, vault_id, asset)
            request = Request(
                request_id=self.store.new_id("request", kind, vault_id, requester, batch_id),
                kind=kind,
                vault=vault_id,
                asset=asset,
                requester=requester,
                beneficiary=beneficiary,
                amount=value,
                batch_id=batch_id,
                created_at=self.store.current_time,
            )
            self.store.put_request(request)
            self.store.emit(
                EVENT_REQUEST_CREATED,
                request_id=request.request_id, kind=kind, vault=vault_id, asset=asset,
                requester=requester, beneficiary=beneficiary, amount=value, batch_id=batch_id,
            )
        logger.debug("Created %s request %s for %s", kind.value, request.request_id[:12], requester)
        return request.request_id

    def cancel(self, caller: str, request_id: str, kind: Optional[RequestKind] = None) -> Request:
        """
        Cancel a PENDING request while its batch is still OPEN.

        Returns:
            The cancelled request, so the caller can undo its bookkeeping

        Raises:
            AuthorizationError: If caller is not the requester
            InvalidRequestState: If the request is terminal, of another kind,
                or its batch is no longer OPEN
        """
        with self.store.atomic():
            request = self._pending(request_id, kind)
            if caller != request.requester:
                raise AuthorizationError(f"{caller} did not create request {request_id}")
            batch = self.store.get_batch(request.batch_id)
            if not batch.is_open:
                raise InvalidRequestState(
                    f"Request {request_id} is bound to {batch.status.value} batch {batch.batch_id}"
                )
            cancelled = replace(request, status=RequestStatus.CANCELLED, closed_at=self.store.current_time)
            self.store.put_request(cancelled)
            self.store.emit(EVENT_REQUEST_CANCELLED, request_id=request_id, kind=request.kind, requester=caller)
        logger.info("Cancelled %s request %s", request.kind.value, request_id[:12])
        return cancelled

    def claim(self, caller: str, request_id: str, kind: Optional[RequestKind] = None) -> Decimal:
        """
        Finalize a PENDING request at its batch's settled price.

        Returns:
            Shares for STAKE, assets for UNSTAKE and BURN

        Raises:
            AuthorizationError: If caller is not the beneficiary (or, for
                BURN, the requester)
            InvalidRequestState: If the request is terminal, of another kind,
                or its batch has not settled
        """
        with self.store.atomic():
            request = self._pending(request_id, kind)
            allowed = {request.beneficiary}
            if request.kind is RequestKind.BURN:
                allowed.add(request.requester)
            if caller not in allowed:
                raise AuthorizationError(f"{caller} cannot claim request {request_id}")
            batch = self.store.get_batch(request.batch_id)
            if not batch.is_settled:
                raise InvalidRequestState(
                    f"Batch {batch.batch_id} of request {request_id} is {batch.status.value}, not settled"
                )
            payout = self._payout(request, batch)
            claimed = replace(
                request,
                status=_CLAIMED_STATUS[request.kind],
                payout=payout,
                closed_at=self.store.current_time,
            )
            self.store.put_request(claimed)
            self.store.emit(
                EVENT_REQUEST_CLAIMED,
                request_id=request_id, kind=request.kind, beneficiary=request.beneficiary,
                payout=payout, net_share_price=batch.settlement.net_share_price,
            )
        logger.info("Claimed %s request %s: payout %s", request.kind.value, request_id[:12], payout)
        return payout

    def _pending(self, request_id: str, kind: Optional[RequestKind]) -> Request:
        request = self.store.get_request(request_id)
        if kind is not None and request.kind is not kind:
            raise InvalidRequestState(f"Request {request_id} is a {request.kind.value} request")
        if request.is_terminal:
            raise InvalidRequestState(f"Request {request_id} is already {request.status.value}")
        return request

    def _payout(self, request: Request, batch: Batch) -> Decimal:
        settlement = batch.settlement
        if request.kind is RequestKind.BURN:
            return request.amount
        decimals = self.store.get_asset(request.asset).decimals
        if request.kind is RequestKind.STAKE:
            return fees.convert_to_shares(request.amount, settlement.net_share_price, decimals)
        # Unstake: never more than the request's share of what the batch returned
        at_price = fees.convert_to_assets(request.amount, settlement.net_share_price, decimals)
        pro_rata = (request.amount * settlement.assets_returned / batch.shares_requested).quantize(
            Decimal(10) ** -decimals, rounding=ROUND_DOWN,
        )
        return min(at_price, pro_rata)

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get(self, request_id: str) -> Request:
        return self.store.get_request(request_id)

    def pending_requests(self, owner: str) -> List[Request]:
        """Non-terminal requests where owner is requester or beneficiary, oldest first."""
        return self.store.requests_of(owner)

    def is_claimable(self, request_id: str) -> bool:
        request = self.store.get_request(request_id)
        if request.is_terminal:
            return False
        return self.store.get_batch(request.batch_id).is_settled
