"""
Pydantic schemas for the loan tracker API.

Field names follow the client's camelCase JSON. Unknown fields are kept so
newer clients can store extra attributes without a server release.
"""

from __future__ import annotations

from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

Number = Union[int, float]


class _Document(BaseModel):
    # Some clients send phone numbers and ids as JSON numbers.
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    def to_fields(self) -> dict:
        """Only the fields the client actually sent, so updates merge."""
        return self.model_dump(exclude_unset=True)


class UserRecord(_Document):
    id: Optional[str] = None
    phone: str = Field(..., min_length=1)
    fullName: Optional[str] = None
    idNumber: Optional[str] = None
    balance: Optional[Number] = None
    totalLimit: Optional[Number] = None
    rank: Optional[str] = None
    rankProgress: Optional[Number] = None
    isLoggedIn: Optional[bool] = None
    isAdmin: Optional[bool] = None
    pendingUpgradeRank: Optional[str] = None
    rankUpgradeBill: Optional[str] = None
    address: Optional[str] = None
    joinDate: Optional[str] = None
    idFront: Optional[str] = None
    idBack: Optional[str] = None
    refZalo: Optional[str] = None
    relationship: Optional[str] = None
    lastLoanSeq: Optional[int] = None
    bankName: Optional[str] = None
    bankAccountNumber: Optional[str] = None
    bankAccountHolder: Optional[str] = None


class LoanRecord(_Document):
    id: str = Field(..., min_length=1)
    userId: Optional[str] = None
    userName: Optional[str] = None
    amount: Optional[Number] = None
    date: Optional[str] = None
    createdAt: Optional[str] = None
    status: Optional[str] = None
    fine: Optional[Number] = None
    billImage: Optional[str] = None
    signature: Optional[str] = None
    rejectionReason: Optional[str] = None


class NotificationRecord(_Document):
    id: str = Field(..., min_length=1)
    userId: Optional[str] = None
    title: Optional[str] = None
    message: Optional[str] = None
    time: Optional[str] = None
    read: Optional[bool] = None
    type: Optional[str] = None


class LogEntry(_Document):
    user: str
    time: str
    action: str
    ip: Optional[str] = None
    device: Optional[str] = None


class BudgetUpdate(BaseModel):
    budget: Number


class RankProfitUpdate(BaseModel):
    rankProfit: Number


class SuccessResponse(BaseModel):
    success: Literal[True] = True


class ErrorResponse(BaseModel):
    error: str


class SnapshotResponse(BaseModel):
    users: list[dict]
    loans: list[dict]
    notifications: list[dict]
    budget: Number
    rankProfit: Number


class HealthResponse(BaseModel):
    status: Literal["OK"] = "OK"
    database: str
    dbCode: int
    error: Optional[str] = None
    env: str
