# arbloop/execution.py
import asyncio
import logging
from typing import Dict, Mapping, Optional, Tuple

from .config import ExecutionSettings
from .exceptions import EmergencyStopError, LegExecutionFailure, UnbalancedPositionError, VenueError
from .models import (Edge, ExecutionAttempt, ExecutionOutcome, ExecutionPhase, LegStatus,
                     Opportunity, OutcomeKind, PhaseTransition, Side, SwapResult)
from .risk_state import RiskState
from .venues import Venue

SHUTDOWN_ABANDON_REASON = "confirmation abandoned on shutdown"


class ExecutionOrchestrator:
    """
    Walks an approved opportunity leg by leg.
    Legs run strictly in order: leg N+1 is only submitted after leg N is confirmed.
    Every execution ends with each started leg either CONFIRMED or FAILED and the
    realised figures recorded in RiskState.
    """
    def __init__(self, venues: Mapping[str, Venue], state: RiskState, settings: ExecutionSettings,
                 logger: logging.Logger, shutdown: Optional[asyncio.Event] = None,
                 slippage_budget: float = 0.005):
        self.venues: Dict[str, Venue] = dict(venues)
        self.state = state
        self.cfg = settings
        self.logger = logger
        self.shutdown = shutdown or asyncio.Event()
        self.slippage_budget = slippage_budget

    async def execute(self, opp: Opportunity, size: float) -> ExecutionOutcome:
        """
        Runs every leg of the cycle with `size` numeraire units at the start.
        Returns SETTLED, FAILED (first leg never confirmed) or UNBALANCED (a later leg failed).
        Raises EmergencyStopError without touching any venue while the stop is active.

        Shutdown before the first leg returns a FAILED outcome that touched no venue
        and is not recorded. Once the first leg is confirmed, shutdown only cuts the
        pauses short; the remaining legs still run to a terminal state.
        """
        if self.state.emergency_stop:
            raise EmergencyStopError(f"refusing {opp.id}: {self.state.emergency_reason}")

        outcome = ExecutionOutcome(opportunity=opp, kind=OutcomeKind.FAILED, executed_size=size)
        outcome.phase_log.append(PhaseTransition(ExecutionPhase.PENDING))

        if self.shutdown.is_set():
            outcome.reason = "shutdown before leg 1"
            outcome.phase_log.append(PhaseTransition(ExecutionPhase.FAILED))
            outcome.finished_at = self.state.clock()
            self.logger.info(f"🛑 Skipping {opp.id}: shutdown requested before the first leg")
            return outcome

        self.logger.info(f"⚡ EXECUTION TRIGGERED: {opp.id} | {opp.cycle.path()} | Size: {size:,.2f}")

        amount_in = size
        failure: Optional[str] = None
        for index, edge in enumerate(opp.cycle.edges):
            if index > 0:
                await self._pause(self.cfg.inter_leg_delay)

            attempt = ExecutionAttempt(
                leg_index=index,
                side=edge.side,
                venue=edge.venue,
                symbol=edge.sample.symbol,
                requested_size=leg_quantity(edge, amount_in),
            )
            outcome.legs.append(attempt)
            outcome.phase_log.append(PhaseTransition(ExecutionPhase.LEG_EXECUTING, index))

            try:
                await self._run_leg(attempt)
            except LegExecutionFailure as e:
                failure = str(e)
                break

            outcome.phase_log.append(PhaseTransition(ExecutionPhase.LEG_CONFIRMED, index))
            amount_in *= edge.rate

        if failure is None:
            outcome.kind = OutcomeKind.SETTLED
            outcome.realized_pnl = size * opp.profit_percent - outcome.total_fees
            outcome.phase_log.append(PhaseTransition(ExecutionPhase.SETTLED))
            self.logger.info(f"✅ SETTLED: {opp.id} | Net: {outcome.realized_pnl:+.4f} | Fees: {outcome.total_fees:.4f}")
        else:
            self._fail(outcome, failure)

        outcome.finished_at = self.state.clock()
        self.state.record_outcome(outcome)
        return outcome

    def _fail(self, outcome: ExecutionOutcome, reason: str):
        outcome.reason = reason
        outcome.phase_log.append(PhaseTransition(ExecutionPhase.FAILED))
        confirmed_legs = outcome.confirmed_legs
        opp = outcome.opportunity

        if not confirmed_legs:
            # first leg never confirmed: its fees are the loss
            outcome.kind = OutcomeKind.FAILED
            outcome.realized_pnl = -outcome.total_fees
            self.logger.warning(f"⚠️ FAILED: {opp.id} | {reason} | Fees lost: {outcome.total_fees:.4f}")
            return

        # only the confirmed legs are booked; the failed leg's fee estimate is not
        booked = sum(leg.fee_cost for leg in confirmed_legs)
        outcome.kind = OutcomeKind.UNBALANCED
        outcome.realized_pnl = -booked
        err = UnbalancedPositionError(len(confirmed_legs), reason)
        outcome.reason = str(err)
        held = opp.cycle.edges[len(confirmed_legs) - 1]
        self.logger.critical(f"🚨 UNBALANCED: {opp.id} | {err} | Residual {held.target} on {held.venue} | Fees booked: {booked:.4f}. MANUAL REMEDIATION REQUIRED.")

    async def _run_leg(self, attempt: ExecutionAttempt):
        venue = self.venues.get(attempt.venue)
        if venue is None:
            reason = f"Unsupported venue: {attempt.venue}"
            attempt.finalize(LegStatus.FAILED, reason)
            raise LegExecutionFailure(attempt.leg_index, reason)

        result = await self._submit_with_retry(venue, attempt)
        attempt.status = LegStatus.SUBMITTED
        attempt.receipt = result.receipt
        attempt.realized_price = result.price

        status, reason = await self._await_confirmation(venue, attempt)
        if status is not LegStatus.CONFIRMED:
            attempt.finalize(LegStatus.FAILED, reason)
            raise LegExecutionFailure(attempt.leg_index, reason, attempt.fee_cost)
        attempt.finalize(LegStatus.CONFIRMED)
        self.logger.info(f"   ✅ LEG{attempt.leg_index + 1} {attempt.side.value.upper()} {attempt.requested_size:.6f} {attempt.symbol} @ {attempt.venue} | {attempt.receipt}")

    async def _submit_with_retry(self, venue: Venue, attempt: ExecutionAttempt) -> SwapResult:
        last_error = "no attempt made"
        for n in range(self.cfg.max_submit_retries):
            attempt.submit_attempts += 1
            try:
                result = await venue.submit_swap(attempt.side, attempt.symbol, attempt.requested_size, self.slippage_budget)
            except VenueError as e:
                result = SwapResult(False, error=str(e))
            attempt.fee_cost += result.fee_cost
            if result.success:
                return result

            last_error = result.error or "rejected"
            self.logger.warning(f"   ⚠️ LEG{attempt.leg_index + 1} submit {n + 1}/{self.cfg.max_submit_retries} rejected by {attempt.venue}: {last_error}")
            if n + 1 < self.cfg.max_submit_retries:
                woken = await self._pause(min(self.cfg.confirm_delay_cap, self._backoff(self.cfg.submit_retry_delay, n)))
                if woken and attempt.leg_index == 0:
                    last_error = f"{last_error} (retries stopped on shutdown)"
                    break

        reason = f"submit failed after {attempt.submit_attempts} attempt(s): {last_error}"
        attempt.finalize(LegStatus.FAILED, reason)
        raise LegExecutionFailure(attempt.leg_index, reason, attempt.fee_cost)

    async def _await_confirmation(self, venue: Venue, attempt: ExecutionAttempt) -> Tuple[LegStatus, Optional[str]]:
        for n in range(self.cfg.max_confirm_attempts):
            if self.shutdown.is_set() and attempt.leg_index == 0:
                # final check before giving up on a first-leg receipt; later legs keep polling
                status = await self._poll(venue, attempt)
                if status is LegStatus.CONFIRMED:
                    return status, None
                return LegStatus.FAILED, SHUTDOWN_ABANDON_REASON

            status = await self._poll(venue, attempt)
            if status is LegStatus.CONFIRMED:
                return status, None
            if status is LegStatus.FAILED:
                return status, f"{attempt.venue} reported order {attempt.receipt} failed"

            if n + 1 < self.cfg.max_confirm_attempts:
                await self._pause(min(self.cfg.confirm_delay_cap, self._backoff(self.cfg.confirm_delay, n)))

        return LegStatus.FAILED, f"confirmation not received after {attempt.confirm_polls} poll(s)"

    async def _poll(self, venue: Venue, attempt: ExecutionAttempt) -> LegStatus:
        attempt.confirm_polls += 1
        try:
            return await venue.confirm(attempt.receipt, attempt.symbol)
        except VenueError as e:
            self.logger.warning(f"   ⚠️ LEG{attempt.leg_index + 1} confirm poll {attempt.confirm_polls} error: {e}")
            return LegStatus.SUBMITTED

    @staticmethod
    def _backoff(base: float, n: int) -> float:
        return base * (2 ** n)

    async def _pause(self, delay: float) -> bool:
        """Sleeps up to `delay` seconds. True when woken by shutdown."""
        if self.shutdown.is_set():
            return True
        if delay <= 0:
            return False
        try:
            await asyncio.wait_for(self.shutdown.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False


def leg_quantity(edge: Edge, amount_in: float) -> float:
    """
    Converts the amount held before the leg (in edge.source units) into the
    base quantity submitted to the venue.
    """
    if edge.side is Side.BUY:
        return amount_in / edge.sample.price
    return amount_in
