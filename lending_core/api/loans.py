"""
Loan endpoints
"""

from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, Query, status

from .dependencies import LendingSystem, get_lending_system
from .schemas import (
    CreateLoanRequest, UpdateLoanRequest, LoanApprovalRequest,
    loan_to_response, schedule_entry_to_response
)
from ..loans import LoanStatus
from ..exceptions import (
    InvalidTermsError, LoanNotFoundError, InvalidLoanStateError, PersistenceError
)


router = APIRouter()


@contextmanager
def _http_errors():
    """Map lending errors onto HTTP status codes"""
    try:
        yield
    except LoanNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTermsError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except InvalidLoanStateError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("")
async def list_loans(
    status_filter: Optional[str] = Query(None, alias="status"),
    applicant_id: Optional[str] = None,
    bank: Optional[str] = None,
    amount_min: Optional[Decimal] = None,
    amount_max: Optional[Decimal] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """List loans with optional filters"""
    with _http_errors():
        loans = system.loan_manager.list_loans(
            status=LoanStatus(status_filter) if status_filter else None,
            applicant_id=applicant_id,
            bank=bank,
            amount_min=amount_min,
            amount_max=amount_max,
            date_from=date_from,
            date_to=date_to,
            search=search
        )

    return {
        "loans": [loan_to_response(loan) for loan in loans],
        "total": len(loans)
    }


@router.get("/statistics")
async def get_statistics(system: LendingSystem = Depends(get_lending_system)):
    """Portfolio statistics grouped by loan status"""
    with _http_errors():
        stats = system.loan_manager.get_statistics()
    return stats.to_dict()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Submit a loan application"""
    with _http_errors():
        loan = system.loan_manager.submit_application(
            loan_name=request.loan_name,
            applicant_id=request.applicant_id,
            applicant_name=request.applicant_name,
            bank=request.bank,
            amount=request.amount,
            interest_rate=request.interest_rate,
            term=request.term,
            repayment_method=request.repayment_method,
            purpose=request.purpose,
            collateral=request.collateral,
            application_date=request.application_date
        )

    return {
        "loan": loan_to_response(loan),
        "message": "Loan application created successfully"
    }


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get loan details"""
    loan = system.loan_manager.get_loan(loan_id)
    if not loan:
        raise HTTPException(status_code=404, detail="Loan not found")

    return {"loan": loan_to_response(loan)}


@router.put("/{loan_id}")
async def update_loan(
    loan_id: str,
    request: UpdateLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Update a pending loan application"""
    changes = {
        name: value for name, value in request.model_dump().items()
        if value is not None
    }
    with _http_errors():
        loan = system.loan_manager.update_application(loan_id, **changes)

    return {
        "loan": loan_to_response(loan),
        "message": "Loan updated successfully"
    }


@router.patch("/{loan_id}/approve")
async def review_loan(
    loan_id: str,
    request: LoanApprovalRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Approve or reject a pending loan"""
    with _http_errors():
        if request.status == LoanStatus.APPROVED.value:
            loan = system.loan_manager.approve_loan(
                loan_id,
                approved_by=request.approved_by,
                approved_amount=request.approved_amount,
                approved_rate=request.approved_rate,
                remark=request.remark
            )
            message = "Loan approved"
        else:
            loan = system.loan_manager.reject_loan(
                loan_id,
                approved_by=request.approved_by,
                remark=request.remark
            )
            message = "Loan rejected"

    return {"loan": loan_to_response(loan), "message": message}


@router.delete("/{loan_id}")
async def delete_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Delete a pending or rejected loan"""
    with _http_errors():
        system.loan_manager.delete_loan(loan_id)

    return {"message": "Loan deleted successfully"}


@router.post("/{loan_id}/schedule")
async def generate_loan_schedule(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Generate the repayment schedule of an approved loan"""
    with _http_errors():
        entries = system.loan_manager.generate_schedule(loan_id)
        if not entries:
            entries = system.loan_manager.get_schedule(loan_id)
            created = False
        else:
            created = True

    return {
        "schedule": [schedule_entry_to_response(entry) for entry in entries],
        "created": created
    }


@router.get("/{loan_id}/schedule")
async def get_loan_schedule(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get loan repayment schedule"""
    with _http_errors():
        schedule = system.loan_manager.get_schedule(loan_id)

    return {"schedule": [schedule_entry_to_response(entry) for entry in schedule]}
