"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal, InvalidOperation
from datetime import date
from typing import Dict, Optional, Any
from pydantic import BaseModel, Field

from ..currency import Money, Currency
from ..customers import CustomerAggregate
from ..exceptions import ValidationError
from ..models import Cadence, InstallmentMode, Loan, LoanTerms, PaymentRecord


def parse_date(value: str, field_name: str) -> date:
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be an ISO date (YYYY-MM-DD), got {value!r}")


def parse_optional_date(value: Optional[str], field_name: str) -> Optional[date]:
    return parse_date(value, field_name) if value else None


def _money(value: str, currency: Currency, field_name: str) -> Money:
    try:
        return Money(Decimal(value), currency)
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field_name} must be a decimal amount, got {value!r}")


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (INR, USD, etc.)")

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


class LoanTermsModel(BaseModel):
    principal_amount: str = Field(..., description="Decimal amount as string")
    currency: str = "INR"
    cadence: str = Field(..., description="Daily, Weekly or Monthly")
    total_installments: int
    installment_amount: str = Field(..., description="Per-installment amount")
    emi_start_date: str = Field(..., description="Due date of installment 1 (ISO date)")
    installment_mode: str = Field("fixed", description="fixed or custom")
    final_installment_amount: Optional[str] = Field(None, description="Last installment amount in custom mode")

    def to_loan_terms(self) -> LoanTerms:
        try:
            currency = Currency[self.currency]
        except KeyError:
            raise ValidationError(f"Unsupported currency: {self.currency}")
        try:
            cadence = Cadence(self.cadence)
            mode = InstallmentMode(self.installment_mode)
        except ValueError as e:
            raise ValidationError(str(e))

        final_amount = None
        if self.final_installment_amount:
            final_amount = _money(self.final_installment_amount, currency, "final_installment_amount")

        return LoanTerms(
            principal=_money(self.principal_amount, currency, "principal_amount"),
            cadence=cadence,
            total_installments=self.total_installments,
            installment_amount=_money(self.installment_amount, currency, "installment_amount"),
            emi_start_date=parse_date(self.emi_start_date, "emi_start_date"),
            installment_mode=mode,
            final_installment_amount=final_amount,
        )


# Loan schemas
class CreateLoanRequest(BaseModel):
    customer_id: str
    loan_number: str = Field(..., description="Loan number from the pool, e.g. L1")
    customer_name: Optional[str] = None
    terms: LoanTermsModel
    originated_by: Optional[str] = None


# Payment schemas
class SinglePaymentRequest(BaseModel):
    status: str = Field(..., description="Paid or Partial")
    amount: Optional[str] = Field(None, description="Defaults to the outstanding amount for Paid")
    payment_date: Optional[str] = None
    collected_by: Optional[str] = None
    notes: Optional[str] = None


class AdvancePaymentRequest(BaseModel):
    from_date: str
    to_date: str
    payment_date: Optional[str] = None
    collected_by: Optional[str] = None
    notes: Optional[str] = None


class EditPaymentRequest(BaseModel):
    payment_id: str
    loan_number: str
    customer_id: str
    new_amount: str
    new_status: str
    notes: Optional[str] = None
    edited_by: Optional[str] = None


# Loan request schemas
class LoanAdditionRequest(BaseModel):
    customer_id: str
    loan_number: str
    customer_name: Optional[str] = None
    terms: LoanTermsModel
    requested_by: Optional[str] = None


class LoanRenewalRequest(BaseModel):
    original_loan_id: str
    loan_number: str
    terms: LoanTermsModel
    requested_by: Optional[str] = None


class ResolveLoanRequest(BaseModel):
    approve: bool
    resolved_by: Optional[str] = None
    note: Optional[str] = None


# Response helpers
def payment_to_response(record: PaymentRecord) -> Dict[str, Any]:
    return record.to_dict()


def loan_to_response(loan: Loan, include_history: bool = False) -> Dict[str, Any]:
    result = {
        "id": loan.id,
        "customer_id": loan.customer_id,
        "customer_name": loan.customer_name,
        "loan_number": loan.loan_number,
        "status": loan.status.value,
        "terms": loan.terms.to_dict(),
        "paid_count": str(loan.paid_count),
        "cumulative_paid": MoneyModel.from_money(loan.cumulative_paid).model_dump(),
        "remaining_balance": MoneyModel.from_money(loan.remaining_balance).model_dump(),
        "next_due_date": loan.next_due_date.isoformat() if loan.next_due_date else None,
        "last_payment_date": loan.last_payment_date.isoformat() if loan.last_payment_date else None,
        "payment_count": len(loan.history),
        "version": loan.version,
        "original_loan_number": loan.original_loan_number,
        "renewed_loan_number": loan.renewed_loan_number,
        "renewed_date": loan.renewed_date.isoformat() if loan.renewed_date else None,
    }
    if include_history:
        result["history"] = [payment_to_response(r) for r in loan.history]
    return result


def customer_to_response(aggregate: CustomerAggregate) -> Dict[str, Any]:
    return {
        "customer_id": aggregate.customer_id,
        "total_paid": MoneyModel.from_money(aggregate.total_paid).model_dump(),
        "remaining_balance": MoneyModel.from_money(aggregate.remaining_balance).model_dump(),
        "last_payment_date": aggregate.last_payment_date.isoformat() if aggregate.last_payment_date else None,
        "active_loan_count": aggregate.active_loan_count,
        "loan_ids": aggregate.loan_ids,
        "updated_at": aggregate.updated_at.isoformat(),
    }


def receipt_to_response(receipt) -> Dict[str, Any]:
    return {
        "loan_id": receipt.loan_id,
        "payments": [payment_to_response(r) for r in receipt.records],
        "total_amount": MoneyModel.from_money(receipt.total_amount).model_dump(),
        "loan": loan_to_response(receipt.loan),
        "ledger_synced": receipt.ledger_synced,
    }
