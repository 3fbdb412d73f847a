"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal
from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from ..loans import Loan
from ..schedule import RepaymentScheduleEntry


# Loan schemas
class CreateLoanRequest(BaseModel):
    loan_name: str = Field(..., max_length=100)
    applicant_id: str
    applicant_name: str
    bank: str = Field(..., max_length=100)
    amount: Decimal = Field(..., gt=0, description="Requested principal")
    interest_rate: Decimal = Field(..., ge=0, le=100, description="Annual rate in percent")
    term: int = Field(..., ge=1, le=360, description="Term in months")
    repayment_method: str = Field(..., description="equal_payment or equal_principal")
    purpose: Optional[str] = Field(None, max_length=500)
    collateral: Optional[str] = Field(None, max_length=500)
    application_date: Optional[datetime] = None


class UpdateLoanRequest(BaseModel):
    loan_name: Optional[str] = Field(None, max_length=100)
    applicant_name: Optional[str] = None
    bank: Optional[str] = Field(None, max_length=100)
    amount: Optional[Decimal] = Field(None, gt=0)
    interest_rate: Optional[Decimal] = Field(None, ge=0, le=100)
    term: Optional[int] = Field(None, ge=1, le=360)
    repayment_method: Optional[str] = None
    purpose: Optional[str] = Field(None, max_length=500)
    collateral: Optional[str] = Field(None, max_length=500)


class LoanApprovalRequest(BaseModel):
    status: str = Field(..., pattern="^(approved|rejected)$")
    remark: Optional[str] = Field(None, max_length=1000)
    approved_by: Optional[str] = None
    approved_amount: Optional[Decimal] = Field(None, gt=0)
    approved_rate: Optional[Decimal] = Field(None, ge=0, le=100)


def loan_to_response(loan: Loan) -> Dict[str, Any]:
    """Serialize a loan for API responses"""
    data = loan.to_dict()
    data['loan_number'] = loan.loan_number
    return data


def schedule_entry_to_response(entry: RepaymentScheduleEntry) -> Dict[str, Any]:
    """Serialize a schedule entry for API responses"""
    return {
        "period_number": entry.period_number,
        "due_date": entry.due_date.isoformat(),
        "total_amount": str(entry.total_amount),
        "principal_amount": str(entry.principal_amount),
        "interest_amount": str(entry.interest_amount),
        "status": entry.status.value,
    }
