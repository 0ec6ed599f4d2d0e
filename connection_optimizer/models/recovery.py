"""
Recovery bank data contracts: accounts, transactions and allocation requests.
"""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class StopType(str, Enum):
    """Stop categories; each carries its own recovery flexibility."""
    TERMINAL = "terminal"
    MAJOR_STOP = "major_stop"
    SCHOOL = "school"
    HOSPITAL = "hospital"
    MALL = "mall"
    REGULAR = "regular"


class TransactionType(str, Enum):
    BORROW = "borrow"
    REPAY = "repay"
    TRANSFER = "transfer"


class RecoveryAccount(BaseModel):
    """Lendable recovery time held by one stop."""

    stop_id: str
    stop_name: str
    stop_type: StopType
    available_credit: float = Field(..., ge=0, description="Minutes that can still be lent")
    current_debt: float = Field(0.0, ge=0, description="Minutes borrowed by this stop")
    max_credit: float = Field(..., ge=0)
    min_recovery_time: float = Field(0.0, ge=0)
    max_recovery_time: float = Field(..., ge=0)
    flexibility_score: float = Field(..., ge=0, le=1)

    @property
    def debt_ratio(self) -> float:
        return self.current_debt / self.max_credit if self.max_credit > 0 else 0.0

    @property
    def utilization(self) -> float:
        """Share of the lendable credit already lent out."""
        if self.max_credit <= 0:
            return 0.0
        return max(0.0, min(1.0, (self.max_credit - self.available_credit) / self.max_credit))


class RecoveryTransaction(BaseModel):
    """Immutable record of a recovery transfer."""

    id: str
    lender_stop_id: str
    borrower_stop_id: str
    amount: float = Field(..., gt=0)
    affected_trips: List[str] = Field(default_factory=list)
    score: float = Field(..., ge=0, le=1)
    type: TransactionType = TransactionType.BORROW
    reason: str = ""

    class Config:
        frozen = True


class RecoveryAccountOverride(BaseModel):
    """Explicit settings applied on top of the inferred account defaults."""

    stop_id: str
    stop_type: Optional[StopType] = None
    flexibility_score: Optional[float] = Field(None, ge=0, le=1)
    max_credit: Optional[float] = Field(None, ge=0)
    available_credit: Optional[float] = Field(None, ge=0)
    min_recovery_time: Optional[float] = Field(None, ge=0)
    max_recovery_time: Optional[float] = Field(None, ge=0)


class RecoveryBankState(BaseModel):
    accounts: Dict[str, RecoveryAccount] = Field(default_factory=dict)
    transactions: List[RecoveryTransaction] = Field(default_factory=list)
    total_available_recovery: float = 0.0
    total_borrowed_recovery: float = 0.0
    utilization_rate: float = 0.0


class TransferResult(BaseModel):
    success: bool
    transaction: Optional[RecoveryTransaction] = None
    error: Optional[str] = None


class AllocationRequest(BaseModel):
    """Request for recovery time at a borrower stop."""

    borrower_stop_id: str
    amount: float = Field(..., gt=0)
    priority: int = Field(5, ge=1, le=10)
    lender_stop_id: Optional[str] = None
    affected_trips: List[str] = Field(default_factory=list)
    reason: str = ""


class UnmetRequest(BaseModel):
    request: AllocationRequest
    reason: str


class AllocationResult(BaseModel):
    success: bool
    allocations: List[RecoveryTransaction] = Field(default_factory=list)
    unmet_requests: List[UnmetRequest] = Field(default_factory=list)
    total_score: float = 0.0


class RankedAccount(BaseModel):
    stop_id: str
    stop_name: str
    amount: float


class UtilizationReport(BaseModel):
    summary: Dict[str, float] = Field(default_factory=dict)
    accounts: List[RecoveryAccount] = Field(default_factory=list)
    utilization_rate: float = 0.0
    top_lenders: List[RankedAccount] = Field(default_factory=list)
    top_borrowers: List[RankedAccount] = Field(default_factory=list)


class BankSnapshot(BaseModel):
    """Point-in-time copy used by the engine to undo rejected trials."""

    accounts: Dict[str, RecoveryAccount]
    transaction_history: List[RecoveryTransaction]
    active_transaction_ids: List[str]
    total_borrowed_recovery: float
    utilization_rate: float
