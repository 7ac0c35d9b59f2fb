from pydantic import BaseModel, Field
from typing import Optional

class BookBase(BaseModel):
    isbn: Optional[str] = None
    title: str = Field(..., min_length=1, max_length=255)
    author: str = Field(..., min_length=1, max_length=255)
    publisher: Optional[str] = None
    publication_year: Optional[int] = None
    category: Optional[str] = None
    subject: Optional[str] = None
    department: str = Field("GENERAL", pattern="^(CSE|EEE|CIVIL|MECH|ECE|GENERAL)$")
    sub_block: Optional[str] = None
    description: Optional[str] = None

class BookCreate(BookBase):
    total_copies: int = Field(1, ge=1)
    price: float = Field(500, ge=0)
    replacement_cost: Optional[float] = Field(None, ge=0)
    daily_fine: Optional[float] = Field(None, ge=0)
    max_borrow_days: Optional[int] = Field(None, ge=1)

class BookResponse(BaseModel):
    id: str
    isbn: Optional[str] = None
    title: str
    author: str
    publisher: Optional[str] = None
    publicationYear: Optional[int] = None
    category: Optional[str] = None
    subject: Optional[str] = None
    department: str
    subBlock: Optional[str] = None
    description: Optional[str] = None
    totalCopies: int
    availableCopies: int
    lostCopies: int
    status: str
    price: float
    replacementCost: float
    dailyFine: float
    maxBorrowDays: int
