from sqlalchemy import Column, String, Integer, Boolean, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base, UTCDateTime

class Student(Base):
    __tablename__ = "student"

    student_id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("user.user_id", ondelete="SET NULL"), unique=True, nullable=True)
    university_reg_number = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=False)
    course_code = Column(String(20), nullable=True)
    current_semester = Column(Integer, default=1, nullable=False, index=True)
    total_books_issued_all_semesters = Column(Integer, default=0, nullable=False)
    total_books_returned_all_semesters = Column(Integer, default=0, nullable=False)
    library_noc_status = Column(String(20), default='pending', nullable=False, index=True)
    library_noc_date = Column(UTCDateTime, nullable=True)
    library_noc_issued_by = Column(Integer, ForeignKey("user.user_id", ondelete="SET NULL"), nullable=True)
    library_noc_note = Column(String(500), nullable=True)
    library_cleared = Column(Boolean, default=False, nullable=False)
    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    user = relationship("User", back_populates="student", foreign_keys=[user_id])
    loans = relationship("Loan", back_populates="student", order_by="Loan.loan_id")

    __table_args__ = (
        CheckConstraint("current_semester >= 1", name="chk_student_semester"),
        CheckConstraint("total_books_issued_all_semesters >= 0", name="chk_student_issued"),
        CheckConstraint(
            "total_books_returned_all_semesters >= 0 AND "
            "total_books_returned_all_semesters <= total_books_issued_all_semesters",
            name="chk_student_returned",
        ),
        CheckConstraint("library_noc_status IN ('pending', 'approved', 'rejected')", name="chk_student_noc_status"),
    )

    def to_dict(self):
        return {
            "id": str(self.student_id),
            "userId": str(self.user_id) if self.user_id else None,
            "universityRegNumber": self.university_reg_number,
            "name": self.name,
            "email": self.email,
            "courseCode": self.course_code,
            "currentSemester": self.current_semester,
            "totalBooksIssuedAllSemesters": self.total_books_issued_all_semesters,
            "totalBooksReturnedAllSemesters": self.total_books_returned_all_semesters,
            "libraryNOCStatus": self.library_noc_status,
            "libraryNOCDate": self.library_noc_date.isoformat() if self.library_noc_date else None,
            "libraryNOCIssuedBy": str(self.library_noc_issued_by) if self.library_noc_issued_by else None,
            "libraryCleared": self.library_cleared,
        }
