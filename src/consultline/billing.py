"""
Billing accrual engine.

Cost accrues continuously: ``cost = accrued_seconds / 60 * rate``, never
rounded up per started minute. The engine reports projections only; ending a
session is the state machine's decision. The ledger is touched twice per
session at most: a balance read before admission and one debit at finalize.
"""

import asyncio
import logging
import math
import time
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional

from consultline.errors import ConsultError, InsufficientBalance, LedgerUnavailable
from consultline.ledger import BalanceService
from consultline.models.billing import CostUpdate, FinalCost, SettlementReceipt
from consultline.models.session import Session

logger = logging.getLogger(__name__)

SECONDS_PER_MINUTE = Decimal(60)
CENT = Decimal("0.01")


def accrued_cost(seconds: int, rate: Decimal) -> Decimal:
    return Decimal(seconds) * rate / SECONDS_PER_MINUTE


def connected_seconds(session: Session, now: float) -> float:
    """Seconds the session has actually been connected, outages excluded."""
    if session.connected_at is None:
        return 0.0
    end = session.ended_at.timestamp() if session.ended_at else now
    paused = session.paused_seconds
    if session.paused_since is not None:
        paused += max(0.0, end - session.paused_since.timestamp())
    return max(0.0, end - session.connected_at.timestamp() - paused)


class SettlementQueue:
    """Debits final costs against the ledger, retrying outages in the background.

    Every attempt for a session uses the session id as idempotency key. A
    session's cost stays here until the ledger confirms it. The first attempt
    is bounded by ``first_attempt_timeout`` so a slow ledger never holds up
    the summary; anything slower continues as a background retry.
    """

    def __init__(
        self,
        ledger: BalanceService,
        retry_delay: float = 2.0,
        max_delay: float = 60.0,
        first_attempt_timeout: float = 3.0,
    ):
        self._ledger = ledger
        self._retry_delay = retry_delay
        self._max_delay = max_delay
        self._first_attempt_timeout = first_attempt_timeout
        self._receipts: dict[str, SettlementReceipt] = {}
        self._pending: dict[str, tuple[str, FinalCost]] = {}
        self._rejected: dict[str, tuple[str, FinalCost, str]] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._settled: dict[str, asyncio.Event] = {}

    def receipt(self, session_id: str) -> Optional[SettlementReceipt]:
        return self._receipts.get(session_id)

    def is_settled(self, session_id: str) -> bool:
        return session_id in self._receipts

    def is_pending(self, session_id: str) -> bool:
        return session_id in self._pending

    def pending(self) -> list[FinalCost]:
        return [final for _, final in self._pending.values()]

    def rejected(self) -> list[FinalCost]:
        return [final for _, final, _ in self._rejected.values()]

    async def settle(self, customer_id: str, final: FinalCost) -> Optional[SettlementReceipt]:
        """Try the debit once; on ledger outage schedule retries and return None."""
        sid = final.session_id
        if sid in self._receipts:
            return self._receipts[sid]
        if sid in self._pending or sid in self._rejected:
            return None
        try:
            return await asyncio.wait_for(self._debit(customer_id, final), timeout=self._first_attempt_timeout)
        except asyncio.TimeoutError:
            logger.warning("Settlement for session=%s still unconfirmed after %.1fs, retrying in background",
                           sid, self._first_attempt_timeout)
        except LedgerUnavailable as e:
            logger.warning("Settlement for session=%s deferred: %s", sid, e)
        except ConsultError as e:
            logger.error("Ledger rejected settlement for session=%s: %s", sid, e)
            self._rejected[sid] = (customer_id, final, e.code)
            return None
        except Exception:
            logger.exception("Unexpected ledger failure settling session=%s", sid)
        self.defer(customer_id, final)
        return None

    def defer(self, customer_id: str, final: FinalCost) -> None:
        """Queue a cost for background retries unless it is already settled or queued."""
        sid = final.session_id
        if sid in self._receipts or sid in self._pending or sid in self._rejected:
            return
        self._pending[sid] = (customer_id, final)
        self._tasks[sid] = asyncio.get_running_loop().create_task(self._retry(customer_id, final))

    async def _debit(self, customer_id: str, final: FinalCost) -> SettlementReceipt:
        new_balance = await self._ledger.debit(customer_id, final.amount, idempotency_key=final.session_id)
        receipt = SettlementReceipt(
            session_id=final.session_id,
            amount=final.amount,
            new_balance=new_balance,
            settled_at=datetime.now(timezone.utc),
        )
        self._receipts[final.session_id] = receipt
        self._event(final.session_id).set()
        logger.info("Settled session=%s amount=%s balance=%s", final.session_id, final.amount, new_balance)
        return receipt

    async def _retry(self, customer_id: str, final: FinalCost) -> None:
        delay = self._retry_delay
        try:
            while True:
                await asyncio.sleep(delay)
                try:
                    await self._debit(customer_id, final)
                except LedgerUnavailable as e:
                    delay = min(delay * 2, self._max_delay)
                    logger.warning("Settlement retry for session=%s failed, next in %.1fs: %s", final.session_id, delay, e)
                    continue
                except ConsultError as e:
                    logger.error("Ledger rejected settlement retry for session=%s: %s", final.session_id, e)
                    self._rejected[final.session_id] = (customer_id, final, e.code)
                except Exception:
                    delay = min(delay * 2, self._max_delay)
                    logger.exception("Unexpected ledger failure retrying session=%s, next in %.1fs",
                                     final.session_id, delay)
                    continue
                self._pending.pop(final.session_id, None)
                return
        finally:
            self._tasks.pop(final.session_id, None)

    def _event(self, session_id: str) -> asyncio.Event:
        if session_id not in self._settled:
            self._settled[session_id] = asyncio.Event()
        return self._settled[session_id]

    async def wait_settled(self, session_id: str, timeout: Optional[float] = None) -> SettlementReceipt:
        await asyncio.wait_for(self._event(session_id).wait(), timeout=timeout)
        return self._receipts[session_id]

    def close(self) -> None:
        """Stop retrying. Pending and rejected costs stay inspectable."""
        for task in list(self._tasks.values()):
            task.cancel()


class BillingEngine:
    def __init__(
        self,
        settlements: SettlementQueue,
        minimum_session_minutes: int = 5,
        clock: Callable[[], float] = time.time,
    ):
        self._settlements = settlements
        self._minimum_minutes = minimum_session_minutes
        self._clock = clock
        self._finalized: dict[str, FinalCost] = {}
        self._submitted: set[str] = set()

    @property
    def settlements(self) -> SettlementQueue:
        return self._settlements

    def minimum_required(self, rate: Decimal) -> Decimal:
        return rate * self._minimum_minutes

    def validate_minimum(self, balance: Decimal, rate: Decimal) -> None:
        """Raise InsufficientBalance unless the balance covers the minimum session."""
        minimum = self.minimum_required(rate)
        if balance < minimum:
            raise InsufficientBalance(shortfall=minimum - balance, minimum_required=minimum)

    def tick(self, session: Session) -> CostUpdate:
        """Cost of the connected time so far. Never reports less than before."""
        seconds = max(session.accrued_seconds, int(connected_seconds(session, self._clock())))
        return CostUpdate(accrued_seconds=seconds, cost=accrued_cost(seconds, session.request.rate))

    def project_exhaustion(self, session: Session, current_balance: Decimal) -> float:
        """Seconds of connected time left before the balance reaches zero."""
        rate = session.request.rate
        if rate <= 0:
            return math.inf
        remaining = current_balance - accrued_cost(session.accrued_seconds, rate)
        return max(0.0, float(remaining / rate * SECONDS_PER_MINUTE))

    def final_cost(self, session_id: str) -> Optional[FinalCost]:
        return self._finalized.get(session_id)

    def freeze(self, session: Session) -> FinalCost:
        """Fix the session's final cost without touching the ledger. Idempotent per session id."""
        cached = self._finalized.get(session.id)
        if cached is not None:
            return cached
        rate = session.request.rate
        final = FinalCost(
            session_id=session.id,
            billed_seconds=session.accrued_seconds,
            rate=rate,
            amount=accrued_cost(session.accrued_seconds, rate).quantize(CENT, rounding=ROUND_HALF_UP),
        )
        self._finalized[session.id] = final
        return final

    async def finalize(self, session: Session) -> FinalCost:
        """Freeze the session's cost and settle it. Idempotent per session id."""
        final = self.freeze(session)
        if session.id not in self._submitted:
            self._submitted.add(session.id)
            await self._settlements.settle(session.customer_id, final)
        return final
