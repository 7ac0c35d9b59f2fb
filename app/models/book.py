from sqlalchemy import Column, String, Integer, Numeric, Text, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base, UTCDateTime

class Book(Base):
    __tablename__ = "book"

    book_id = Column(Integer, primary_key=True, autoincrement=True)
    isbn = Column(String(20), unique=True, nullable=True)
    title = Column(String(255), nullable=False, index=True)
    author = Column(String(255), nullable=False, index=True)
    publisher = Column(String(255), nullable=True)
    publication_year = Column(Integer, nullable=True)
    category = Column(String(100), nullable=True)
    subject = Column(String(100), nullable=True)
    department = Column(String(20), default='GENERAL', nullable=False, index=True)
    sub_block = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    total_copies = Column(Integer, default=1, nullable=False)
    available_copies = Column(Integer, default=1, nullable=False)
    # Copies written off by "lost" returns; never come back to the shelf
    lost_copies = Column(Integer, default=0, nullable=False)
    status = Column(String(50), default='available', nullable=False, index=True)
    price = Column(Numeric(10, 2), default=500, nullable=False)
    replacement_cost = Column(Numeric(10, 2), default=750, nullable=False)
    daily_fine = Column(Numeric(10, 2), default=10, nullable=False)
    max_borrow_days = Column(Integer, default=30, nullable=False)
    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    loans = relationship("Loan", back_populates="book")

    __table_args__ = (
        CheckConstraint("available_copies >= 0", name="chk_book_available_nonneg"),
        CheckConstraint("available_copies <= total_copies", name="chk_book_available_le_total"),
        CheckConstraint("lost_copies >= 0 AND lost_copies <= total_copies", name="chk_book_lost"),
        CheckConstraint("daily_fine >= 0", name="chk_book_daily_fine"),
        CheckConstraint("replacement_cost >= 0", name="chk_book_replacement_cost"),
        CheckConstraint("max_borrow_days >= 1", name="chk_book_max_borrow_days"),
        CheckConstraint("status IN ('available', 'borrowed', 'reserved', 'maintenance')", name="chk_book_status"),
    )

    def to_dict(self):
        return {
            "id": str(self.book_id),
            "isbn": self.isbn,
            "title": self.title,
            "author": self.author,
            "publisher": self.publisher,
            "publicationYear": self.publication_year,
            "category": self.category,
            "subject": self.subject,
            "department": self.department,
            "subBlock": self.sub_block,
            "description": self.description,
            "totalCopies": self.total_copies,
            "availableCopies": self.available_copies,
            "lostCopies": self.lost_copies,
            "status": self.status,
            "price": float(self.price),
            "replacementCost": float(self.replacement_cost),
            "dailyFine": float(self.daily_fine),
            "maxBorrowDays": self.max_borrow_days,
        }
