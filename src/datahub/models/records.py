"""Local mirrors of the two Clio record sets."""
from datetime import date, datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class CollectedTime(SQLModel, table=True):
    """
    One row per invoice line item per payment (Clio invoice_payments_v2 report).

    The same line item id recurs when a bill is paid in instalments, so rows
    carry a surrogate key and the Clio id is only indexed.
    """

    __tablename__ = "collectedtime"

    row_id: Optional[int] = Field(default=None, primary_key=True)
    clio_id: int = Field(index=True)  # line item id
    matter_id: Optional[int] = None
    bill_id: Optional[int] = None
    contact_id: Optional[int] = None

    work_date: Optional[date] = None  # date the work was done
    created_at: Optional[datetime] = None
    kind: Optional[str] = None
    type: Optional[str] = None
    activity_type: Optional[str] = None
    description: Optional[str] = None

    sub_total: Optional[float] = None
    tax: Optional[float] = None
    secondary_tax: Optional[float] = None
    payment_allocated: float = 0.0

    user_id: Optional[int] = Field(default=None, index=True)
    user_name: Optional[str] = None

    # Range filter column: collected figures are reported by payment date
    payment_date: date = Field(index=True)


class WipEntry(SQLModel, table=True):
    """One row per Clio activity (time entry or expense), billed or not."""

    __tablename__ = "wip"

    row_id: Optional[int] = Field(default=None, primary_key=True)
    clio_id: int = Field(index=True)  # activity id
    entry_date: date = Field(index=True)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    type: Optional[str] = None  # "TimeEntry" | "ExpenseEntry"
    matter_id: Optional[int] = None
    matter_display_number: Optional[str] = None
    quantity_in_hours: float = 0.0
    note: str = ""
    total: float = 0.0
    price: float = 0.0
    expense_category: Optional[str] = None
    activity_description_id: Optional[int] = None
    activity_description_name: Optional[str] = None

    user_id: Optional[int] = Field(default=None, index=True)
    bill_id: Optional[int] = None
    billed: bool = False
