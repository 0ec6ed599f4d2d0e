"""
Recovery bank: a ledger of lendable recovery time per stop.

Flexible stops (terminals, malls) lend recovery minutes to constrained stops
(schools, hospitals) so that trips can be shifted towards their connections
without breaking recovery bounds. Every transfer is recorded as an immutable
transaction and can be rolled back.
"""

import logging
import uuid
from typing import Dict, Iterable, List, Optional, Tuple, Union

from connection_optimizer.errors import TransactionError
from connection_optimizer.models.optimization import OptimizationConstraints
from connection_optimizer.models.recovery import (
    AllocationRequest,
    AllocationResult,
    BankSnapshot,
    RankedAccount,
    RecoveryAccount,
    RecoveryAccountOverride,
    RecoveryBankState,
    RecoveryTransaction,
    StopType,
    TransactionType,
    TransferResult,
    UnmetRequest,
    UtilizationReport,
)
from connection_optimizer.models.schedule import Schedule, TimePoint
from connection_optimizer.services.optimization_cache import BoundedCache
from connection_optimizer.services.stop_classifier import StopClassifier, build_default_classifier

logger = logging.getLogger(__name__)


FLEXIBILITY_BY_TYPE: Dict[StopType, float] = {
    StopType.TERMINAL: 0.9,
    StopType.MALL: 0.8,
    StopType.MAJOR_STOP: 0.7,
    StopType.REGULAR: 0.6,
    StopType.HOSPITAL: 0.3,
    StopType.SCHOOL: 0.2,
}

# (min recovery, max recovery, max credit) in minutes
RECOVERY_LIMITS: Dict[StopType, Tuple[float, float, float]] = {
    StopType.TERMINAL: (2, 15, 8),
    StopType.MALL: (1, 10, 6),
    StopType.MAJOR_STOP: (1, 8, 4),
    StopType.HOSPITAL: (2, 6, 2),
    StopType.SCHOOL: (1, 4, 1),
    StopType.REGULAR: (0, 6, 3),
}

LENDER_DEBT_RATIO_LIMIT = 0.8
TOP_ACCOUNTS = 5

OverrideInput = Union[RecoveryAccountOverride, dict]


class RecoveryBankService:
    """
    Ledger of recovery credit per stop.

    Lifecycle: initialize_bank() -> transfers / allocations -> rollback or
    reset_bank(). snapshot()/restore() let the optimization engine undo a
    rejected trial without replaying rollbacks.
    """

    def __init__(self, classifier: Optional[StopClassifier] = None):
        self.classifier = classifier or build_default_classifier()
        self._accounts: Dict[str, RecoveryAccount] = {}
        self._baseline: Dict[str, RecoveryAccount] = {}
        self._transactions: List[RecoveryTransaction] = []
        self._history: List[RecoveryTransaction] = []
        self._constraints: Optional[OptimizationConstraints] = None
        self._initialized = False
        self._total_available = 0.0
        self._total_borrowed = 0.0
        self._score_cache = BoundedCache(5000, name="transaction_score_cache")
        self._operation_count = 0

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # =========================================================================
    # Initialization
    # =========================================================================

    def initialize_bank(
        self,
        schedule: Schedule,
        overrides: Optional[Iterable[OverrideInput]] = None,
        constraints: Optional[OptimizationConstraints] = None,
    ) -> RecoveryBankState:
        """Create one account per time point and store the baseline for reset."""
        self._constraints = constraints or OptimizationConstraints()
        override_map: Dict[str, RecoveryAccountOverride] = {}
        for item in overrides or []:
            override = item if isinstance(item, RecoveryAccountOverride) else RecoveryAccountOverride(**item)
            override_map[override.stop_id] = override

        known_ids = {tp.id for tp in schedule.time_points}
        for stop_id in override_map:
            if stop_id not in known_ids:
                logger.warning(f"Recovery override for unknown stop {stop_id} ignored")

        self._accounts = {}
        for time_point in schedule.ordered_time_points:
            account = self._create_account(time_point, override_map.get(time_point.id))
            self._accounts[account.stop_id] = account

        self._baseline = {stop_id: acc.model_copy() for stop_id, acc in self._accounts.items()}
        self._transactions = []
        self._history = []
        self._total_available = sum(acc.available_credit for acc in self._accounts.values())
        self._total_borrowed = 0.0
        self._score_cache.clear()
        self._initialized = True

        logger.info(
            f"Recovery bank initialized: {len(self._accounts)} accounts, "
            f"{self._total_available:.1f} min lendable"
        )
        return self.get_bank_state()

    def _create_account(
        self,
        time_point: TimePoint,
        override: Optional[RecoveryAccountOverride] = None,
    ) -> RecoveryAccount:
        constraints = self._constraints
        stop_type = (override.stop_type if override and override.stop_type else None) or \
            self.classifier.classify(time_point) or StopType.REGULAR

        type_min, type_max, max_credit = RECOVERY_LIMITS[stop_type]
        min_recovery = max(type_min, constraints.min_recovery_time)
        max_recovery = min(type_max, constraints.max_recovery_time)
        flexibility = FLEXIBILITY_BY_TYPE[stop_type]
        available: Optional[float] = None

        if override is not None:
            if override.flexibility_score is not None:
                flexibility = override.flexibility_score
            if override.max_credit is not None:
                max_credit = override.max_credit
            if override.min_recovery_time is not None:
                min_recovery = override.min_recovery_time
            if override.max_recovery_time is not None:
                max_recovery = override.max_recovery_time
            if override.available_credit is not None:
                available = min(override.available_credit, max_credit)

        min_recovery = min(min_recovery, max_recovery)

        return RecoveryAccount(
            stop_id=time_point.id,
            stop_name=time_point.name,
            stop_type=stop_type,
            available_credit=max_credit if available is None else available,
            current_debt=0.0,
            max_credit=max_credit,
            min_recovery_time=min_recovery,
            max_recovery_time=max_recovery,
            flexibility_score=flexibility,
        )

    # =========================================================================
    # Transfers
    # =========================================================================

    def request_recovery_transfer(
        self,
        lender_stop_id: str,
        borrower_stop_id: str,
        amount: float,
        affected_trips: Optional[List[str]] = None,
        reason: str = "",
    ) -> TransferResult:
        """Move *amount* minutes of credit from lender to borrower."""
        self._operation_count += 1
        try:
            lender, borrower = self._resolve_accounts(lender_stop_id, borrower_stop_id)
            self._validate_transaction(lender, borrower, amount)
        except TransactionError as exc:
            logger.debug(f"Transfer {lender_stop_id} -> {borrower_stop_id} rejected: {exc}")
            return TransferResult(success=False, error=str(exc))

        transaction = self._execute(lender, borrower, amount, affected_trips or [], reason)
        return TransferResult(success=True, transaction=transaction)

    def _resolve_accounts(self, lender_stop_id: str, borrower_stop_id: str) -> Tuple[RecoveryAccount, RecoveryAccount]:
        if not self._initialized:
            raise TransactionError("Recovery bank not initialized")
        lender = self._accounts.get(lender_stop_id)
        if lender is None:
            raise TransactionError(f"Account not found for stop {lender_stop_id}")
        borrower = self._accounts.get(borrower_stop_id)
        if borrower is None:
            raise TransactionError(f"Account not found for stop {borrower_stop_id}")
        return lender, borrower

    def _validate_transaction(self, lender: RecoveryAccount, borrower: RecoveryAccount, amount: float) -> None:
        if amount <= 0:
            raise TransactionError(f"Transaction amount must be positive, got {amount}min")

        if lender.available_credit < amount:
            raise TransactionError(
                f"Insufficient credit: {lender.stop_name} has {lender.available_credit:g}min, "
                f"requested {amount:g}min"
            )

        if borrower.current_debt + amount > borrower.max_recovery_time:
            raise TransactionError(
                f"Borrower would exceed max recovery: {borrower.stop_name} "
                f"max={borrower.max_recovery_time:g}min"
            )

        if self._constraints is not None and amount > self._constraints.max_trip_deviation:
            raise TransactionError(
                f"Transaction amount {amount:g}min exceeds max deviation "
                f"{self._constraints.max_trip_deviation:g}min"
            )

        debt_ratio = lender.current_debt / max(lender.max_credit, 1)
        if debt_ratio > LENDER_DEBT_RATIO_LIMIT:
            raise TransactionError(f"Lender has high debt ratio: {round(debt_ratio * 100)}%")

    def _execute(
        self,
        lender: RecoveryAccount,
        borrower: RecoveryAccount,
        amount: float,
        affected_trips: List[str],
        reason: str,
    ) -> RecoveryTransaction:
        transaction = RecoveryTransaction(
            id=f"txn_{uuid.uuid4().hex[:12]}",
            lender_stop_id=lender.stop_id,
            borrower_stop_id=borrower.stop_id,
            amount=amount,
            affected_trips=list(affected_trips),
            score=self.calculate_transaction_score(lender, borrower, amount),
            type=TransactionType.BORROW,
            reason=reason,
        )

        lender.available_credit -= amount
        borrower.current_debt += amount
        self._total_borrowed += amount
        self._transactions.append(transaction)
        self._history.append(transaction)
        return transaction

    def calculate_transaction_score(self, lender: RecoveryAccount, borrower: RecoveryAccount, amount: float) -> float:
        """Weighted desirability of a transfer, in [0, 1]."""
        key = (lender.stop_id, borrower.stop_id, amount, lender.current_debt, borrower.current_debt,
               lender.flexibility_score, borrower.flexibility_score)

        def compute() -> float:
            lender_utilization = lender.current_debt / lender.max_credit if lender.max_credit > 0 else 0.0
            borrower_utilization = (
                borrower.current_debt / borrower.max_recovery_time if borrower.max_recovery_time > 0 else 0.0
            )
            score = (
                lender.flexibility_score * 0.3
                + (1 - borrower.flexibility_score) * 0.3
                + min(amount / 5, 1) * 0.2
                + (1 - lender_utilization) * 0.1
                + (1 - borrower_utilization) * 0.1
            ) * self._distance_penalty(lender.stop_id, borrower.stop_id)
            return max(0.0, min(1.0, score))

        return self._score_cache.get_or_compute(key, compute)

    @staticmethod
    def _distance_penalty(lender_stop_id: str, borrower_stop_id: str) -> float:
        """Stop id similarity as a stand-in for distance: 0.8 (similar) to 1.0."""
        if lender_stop_id == borrower_stop_id:
            return 1.0
        max_len = max(len(lender_stop_id), len(borrower_stop_id))
        if max_len == 0:
            return 0.8
        matches = sum(1 for a, b in zip(lender_stop_id, borrower_stop_id) if a == b)
        return max(0.8, 1 - (matches / max_len) * 0.2)

    # =========================================================================
    # Allocation
    # =========================================================================

    def find_optimal_allocation(self, requests: Iterable[Union[AllocationRequest, dict]]) -> AllocationResult:
        """Serve requests by priority, each from the most flexible valid lender."""
        parsed = [r if isinstance(r, AllocationRequest) else AllocationRequest(**r) for r in requests]
        if not self._initialized:
            return AllocationResult(
                success=False,
                unmet_requests=[UnmetRequest(request=r, reason="Recovery bank not initialized") for r in parsed],
            )

        allocations: List[RecoveryTransaction] = []
        unmet: List[UnmetRequest] = []
        total_score = 0.0

        for request in sorted(parsed, key=lambda r: r.priority, reverse=True):
            lender, failure = self._select_lender(request)
            if lender is None:
                unmet.append(UnmetRequest(request=request, reason=failure))
                continue

            result = self.request_recovery_transfer(
                lender.stop_id,
                request.borrower_stop_id,
                request.amount,
                request.affected_trips,
                request.reason,
            )
            if not result.success:
                unmet.append(UnmetRequest(request=request, reason=result.error or "Transfer failed"))
                continue

            allocations.append(result.transaction)
            total_score += request.amount * request.priority * lender.flexibility_score

        return AllocationResult(
            success=len(allocations) > 0,
            allocations=allocations,
            unmet_requests=unmet,
            total_score=total_score,
        )

    def _select_lender(self, request: AllocationRequest) -> Tuple[Optional[RecoveryAccount], str]:
        borrower = self._accounts.get(request.borrower_stop_id)
        if borrower is None:
            return None, f"Account not found for stop {request.borrower_stop_id}"

        if request.lender_stop_id is not None:
            if request.lender_stop_id == request.borrower_stop_id:
                return None, "Self-lending is not allowed"
            lender = self._accounts.get(request.lender_stop_id)
            if lender is None:
                return None, f"Account not found for stop {request.lender_stop_id}"
            try:
                self._validate_transaction(lender, borrower, request.amount)
            except TransactionError as exc:
                return None, str(exc)
            return lender, ""

        candidates = [acc for acc in self._accounts.values() if acc.stop_id != borrower.stop_id]
        system_credit = sum(acc.available_credit for acc in candidates)
        if system_credit < request.amount:
            return None, (
                f"Insufficient system-wide credit: {system_credit:g}min available, "
                f"requested {request.amount:g}min"
            )

        best: Optional[RecoveryAccount] = None
        best_key: Tuple[float, float] = (-1.0, -1.0)
        for lender in candidates:
            if lender.available_credit < request.amount:
                continue
            try:
                self._validate_transaction(lender, borrower, request.amount)
            except TransactionError:
                continue
            key = (lender.flexibility_score, self.calculate_transaction_score(lender, borrower, request.amount))
            if key > best_key:
                best, best_key = lender, key

        if best is None:
            return None, "No eligible lender with sufficient credit"
        return best, ""

    # =========================================================================
    # Rollback, reset and snapshots
    # =========================================================================

    def rollback_transaction(self, transaction_id: str) -> TransferResult:
        if not self._initialized:
            return TransferResult(success=False, error="Recovery bank not initialized")

        index = next((i for i, t in enumerate(self._transactions) if t.id == transaction_id), None)
        if index is None:
            return TransferResult(success=False, error="Transaction not found")

        transaction = self._transactions[index]
        lender = self._accounts.get(transaction.lender_stop_id)
        borrower = self._accounts.get(transaction.borrower_stop_id)
        if lender is None or borrower is None:
            return TransferResult(success=False, error="Account(s) not found for rollback")

        lender.available_credit += transaction.amount
        borrower.current_debt -= transaction.amount
        self._total_borrowed -= transaction.amount
        del self._transactions[index]
        return TransferResult(success=True, transaction=transaction)

    def reset_bank(self) -> None:
        """Restore every account to its initialized baseline and clear history."""
        self._accounts = {stop_id: acc.model_copy() for stop_id, acc in self._baseline.items()}
        self._transactions = []
        self._history = []
        self._total_borrowed = 0.0
        self._score_cache.clear()

    def snapshot(self) -> BankSnapshot:
        return BankSnapshot(
            accounts={stop_id: acc.model_copy() for stop_id, acc in self._accounts.items()},
            transaction_history=list(self._history),
            active_transaction_ids=[t.id for t in self._transactions],
            total_borrowed_recovery=self._total_borrowed,
            utilization_rate=self._utilization_rate(),
        )

    def restore(self, snapshot: BankSnapshot) -> None:
        by_id = {t.id: t for t in self._history}
        self._accounts = {stop_id: acc.model_copy() for stop_id, acc in snapshot.accounts.items()}
        self._history = list(snapshot.transaction_history)
        self._transactions = [by_id[t_id] for t_id in snapshot.active_transaction_ids if t_id in by_id]
        self._total_borrowed = snapshot.total_borrowed_recovery

    # =========================================================================
    # Queries
    # =========================================================================

    def _utilization_rate(self) -> float:
        return self._total_borrowed / self._total_available if self._total_available > 0 else 0.0

    def get_account(self, stop_id: str) -> Optional[RecoveryAccount]:
        account = self._accounts.get(stop_id)
        return account.model_copy() if account else None

    def get_bank_state(self) -> Optional[RecoveryBankState]:
        if not self._initialized:
            return None
        return RecoveryBankState(
            accounts={stop_id: acc.model_copy() for stop_id, acc in self._accounts.items()},
            transactions=list(self._transactions),
            total_available_recovery=self._total_available,
            total_borrowed_recovery=self._total_borrowed,
            utilization_rate=self._utilization_rate(),
        )

    def get_transaction_history(self) -> List[RecoveryTransaction]:
        return list(self._history)

    def generate_utilization_report(self) -> UtilizationReport:
        if not self._initialized:
            return UtilizationReport()

        lenders: List[RankedAccount] = []
        borrowers: List[RankedAccount] = []
        for stop_id, account in self._accounts.items():
            baseline = self._baseline.get(stop_id)
            lent = max(0.0, (baseline.available_credit if baseline else account.max_credit) - account.available_credit)
            if lent > 0:
                lenders.append(RankedAccount(stop_id=stop_id, stop_name=account.stop_name, amount=lent))
            if account.current_debt > 0:
                borrowers.append(RankedAccount(stop_id=stop_id, stop_name=account.stop_name, amount=account.current_debt))

        lenders.sort(key=lambda r: r.amount, reverse=True)
        borrowers.sort(key=lambda r: r.amount, reverse=True)
        rate = self._utilization_rate()

        return UtilizationReport(
            summary={
                "total_accounts": len(self._accounts),
                "total_available_credit": self._total_available,
                "total_outstanding_debt": self._total_borrowed,
                "utilization_rate": rate,
            },
            accounts=[acc.model_copy() for acc in self._accounts.values()],
            utilization_rate=rate,
            top_lenders=lenders[:TOP_ACCOUNTS],
            top_borrowers=borrowers[:TOP_ACCOUNTS],
        )

    def get_performance_statistics(self) -> dict:
        return {
            "operation_count": self._operation_count,
            "active_transactions": len(self._transactions),
            "history_length": len(self._history),
            "score_cache": self._score_cache.stats(),
        }


# =============================================================================
# Singleton
# =============================================================================

_recovery_bank_service: Optional[RecoveryBankService] = None


def get_recovery_bank_service() -> RecoveryBankService:
    """Shared instance for hosts that want one."""
    global _recovery_bank_service
    if _recovery_bank_service is None:
        _recovery_bank_service = RecoveryBankService()
    return _recovery_bank_service


def reset_recovery_bank_service():
    """Reset the singleton (for tests)."""
    global _recovery_bank_service
    _recovery_bank_service = None


__all__ = [
    "FLEXIBILITY_BY_TYPE",
    "RECOVERY_LIMITS",
    "RecoveryBankService",
    "get_recovery_bank_service",
    "reset_recovery_bank_service",
]
