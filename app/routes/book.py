import logging
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from sqlalchemy import or_
from app.config import settings
from app.database import get_db
from app.models.book import Book
from app.models.user import User
from app.services.auth import get_current_user, require_library_staff
from app.schemas.book import BookResponse, BookCreate
from app.services.loan_ledger import LoanLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/library", tags=["Library Books"])

@router.get("/books", response_model=List[BookResponse])
def get_books(
    search: Optional[str] = Query(None, description="Search by title, author, ISBN or subject"),
    category: Optional[str] = Query(None, description="Filter by category"),
    department: Optional[str] = Query(None, description="Filter by department"),
    status_filter: Optional[str] = Query(None, alias="status", description="Filter by status"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get list of books with optional search and filter."""
    query = db.query(Book)

    if search:
        search_term = f"%{search}%"
        query = query.filter(
            or_(
                Book.title.ilike(search_term),
                Book.author.ilike(search_term),
                Book.isbn.ilike(search_term),
                Book.subject.ilike(search_term)
            )
        )

    if category:
        query = query.filter(Book.category == category)
    if department:
        query = query.filter(Book.department == department.upper())
    if status_filter:
        query = query.filter(Book.status == status_filter)

    books = query.order_by(Book.title, Book.book_id).offset((page - 1) * limit).limit(limit).all()
    return [BookResponse(**book.to_dict()) for book in books]

@router.get("/books/{book_id}", response_model=BookResponse)
def get_book(
    book_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get book details by ID."""
    book = LoanLedger(db).get_book(book_id)
    return BookResponse(**book.to_dict())

@router.post("/books", response_model=BookResponse, status_code=status.HTTP_201_CREATED)
def create_book(
    book_data: BookCreate,
    current_user: User = Depends(require_library_staff),
    db: Session = Depends(get_db)
):
    """Add a title to the catalog with all of its copies available."""
    if book_data.isbn and db.query(Book).filter(Book.isbn == book_data.isbn).first():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="A book with this ISBN already exists"
        )

    values = book_data.model_dump()
    values["replacement_cost"] = values["replacement_cost"] if values["replacement_cost"] is not None \
        else settings.default_replacement_cost
    values["daily_fine"] = values["daily_fine"] if values["daily_fine"] is not None \
        else settings.default_daily_fine
    values["max_borrow_days"] = values["max_borrow_days"] or settings.default_max_borrow_days

    book = Book(**values, available_copies=book_data.total_copies, lost_copies=0, status='available')
    db.add(book)
    db.commit()
    db.refresh(book)
    logger.info(f"Book {book.book_id} '{book.title}' added with {book.total_copies} copies by user {current_user.user_id}")
    return BookResponse(**book.to_dict())
