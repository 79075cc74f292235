"""
Batch Payout Module

Runs the payout pass over every active investment, either on demand or on a
recurring daemon thread. Investments are processed on a bounded worker pool;
each worker settles every period due for one investment and then its maturity,
so two workers never touch the same investment. A failure on one investment is
logged, counted and skipped; since its last payout date did not advance, the
next pass retries it.
"""

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass, field
from typing import Dict, Optional, Any, Set

from .currency import ZERO
from .audit import AuditTrail, AuditEventType
from .investments import InvestmentRepository, InvestmentStatus, PayoutType
from .lifecycle import InvestmentLifecycleManager
from .payouts import PayoutScheduler
from .clock import Clock, SystemClock, ensure_utc
from .config import EngineConfig, get_config
from .logging_config import get_logger, log_action

logger = get_logger("investment_core.batch")

BATCH_PAYOUT_TYPES = (PayoutType.INTEREST, PayoutType.CAPITAL)


@dataclass
class BatchResult:
    """Outcome of one batch payout pass"""
    run_at: datetime
    skipped: bool = False  # another pass was already running
    investments_checked: int = 0
    investments_paid: int = 0
    payouts_processed: int = 0
    matured: int = 0
    renewed: int = 0
    failed: int = 0
    total_paid: Decimal = ZERO
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_at": self.run_at.isoformat(),
            "skipped": self.skipped,
            "investments_checked": self.investments_checked,
            "investments_paid": self.investments_paid,
            "payouts_processed": self.payouts_processed,
            "matured": self.matured,
            "renewed": self.renewed,
            "failed": self.failed,
            "total_paid": str(self.total_paid),
            "errors": dict(self.errors),
        }


class PayoutBatchRunner:
    """
    Batch and recurring payout processing
    """

    def __init__(
        self,
        repository: InvestmentRepository,
        lifecycle: InvestmentLifecycleManager,
        scheduler: PayoutScheduler,
        audit_trail: AuditTrail,
        clock: Optional[Clock] = None,
        config: Optional[EngineConfig] = None
    ):
        self.repository = repository
        self.lifecycle = lifecycle
        self.scheduler = scheduler
        self.audit_trail = audit_trail
        self.clock = clock or SystemClock()
        self.config = config or get_config()

        self._run_guard = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_result: Optional[BatchResult] = None

    def is_due(self, investment, now: datetime) -> bool:
        """True when a payout or the maturity settlement of ``investment`` is due at ``now``"""
        next_due = self.scheduler.next_payout_date(investment)
        if next_due is not None:
            return next_due <= now
        return self.scheduler.is_term_complete(investment, now)

    def batch_process_due_payouts(self, now: Optional[datetime] = None) -> BatchResult:
        """
        Process every due payout and maturity across active investments

        Only one pass runs at a time; a call made while another pass is in
        progress returns immediately with ``skipped=True``.

        Args:
            now: Cut-off time; defaults to the clock

        Returns:
            BatchResult with per-pass counts and the errors of failed investments
        """
        now = ensure_utc(now) if now else self.clock.now()
        result = BatchResult(run_at=now)

        if not self._run_guard.acquire(blocking=False):
            result.skipped = True
            log_action(logger, "warning", "Payout batch already running; pass skipped",
                       action="batch_payouts_skipped")
            return result

        try:
            active = self.repository.list_investments(status=InvestmentStatus.ACTIVE)
            result.investments_checked = len(active)
            due = [inv for inv in active if self.is_due(inv, now)]

            if due:
                already_paid = {inv.id: self._payout_ids(inv.id) for inv in due}
                workers = max(1, min(self.config.payout_worker_count, len(due)))
                with ThreadPoolExecutor(max_workers=workers,
                                        thread_name_prefix="payout-worker") as executor:
                    futures = {
                        executor.submit(self.lifecycle.process_due_payouts, inv.id, now): inv
                        for inv in due
                    }
                    for future in as_completed(futures):
                        snapshot = futures[future]
                        investment_id = snapshot.id
                        error = future.exception()
                        # periods committed before a failure still count
                        self._tally(result, snapshot, already_paid[investment_id])
                        if error is None:
                            continue
                        result.failed += 1
                        result.errors[investment_id] = str(error)
                        log_action(logger, "error", f"Payout processing failed for investment {investment_id}: {error}",
                                   action="batch_payout_failed", resource=investment_id,
                                   extra={"error_type": type(error).__name__})
                        self.audit_trail.log_event(
                            event_type=AuditEventType.PAYOUT_FAILED,
                            entity_type="investment",
                            entity_id=investment_id,
                            metadata={"error": str(error), "error_type": type(error).__name__,
                                      "run_at": now}
                        )

            self.audit_trail.log_event(
                event_type=AuditEventType.PAYOUT_BATCH_COMPLETED,
                entity_type="payout_batch",
                entity_id=now.isoformat(),
                metadata=result.to_dict()
            )
            log_action(logger, "info",
                       f"Payout batch processed {result.payouts_processed} payouts, {result.failed} failures",
                       action="batch_payouts", extra=result.to_dict())
            self.last_result = result
            return result
        finally:
            self._run_guard.release()

    def _payout_ids(self, investment_id: str) -> Set[str]:
        return {p.id for p in self.repository.list_payouts(investment_id)}

    def _tally(self, result: BatchResult, snapshot, already_paid: Set[str]) -> None:
        """Count the payout records written for ``snapshot`` during this pass"""
        records = [
            p for p in self.repository.list_payouts(snapshot.id)
            if p.id not in already_paid and p.payout_type in BATCH_PAYOUT_TYPES
        ]
        if records:
            result.investments_paid += 1
        for record in records:
            if record.payout_type == PayoutType.CAPITAL:
                result.matured += 1
            else:
                result.payouts_processed += 1
            result.total_paid += record.amount
        if self.repository.get(snapshot.id).renewal_count > snapshot.renewal_count:
            result.renewed += 1

    # ------------------------------------------------------------------
    # Recurring schedule
    # ------------------------------------------------------------------

    def start(self, interval_seconds: Optional[float] = None) -> None:
        """Run the batch pass every ``interval_seconds`` on a daemon thread"""
        if self.is_running():
            return
        interval = interval_seconds if interval_seconds is not None else self.config.payout_interval_seconds
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, args=(interval,),
                                        name="payout-batch", daemon=True)
        self._thread.start()
        log_action(logger, "info", f"Payout worker started with a {interval}s interval",
                   action="payout_worker_start")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        log_action(logger, "info", "Payout worker stopped", action="payout_worker_stop")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self, interval: float) -> None:
        while not self._stop_event.is_set():
            try:
                self.batch_process_due_payouts()
            except Exception as e:
                log_action(logger, "error", f"Payout batch pass failed: {e}",
                           action="batch_payouts_error", exc_info=True)
            self._stop_event.wait(interval)
