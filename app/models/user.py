from sqlalchemy import Column, String, Integer, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base, UTCDateTime

class User(Base):
    __tablename__ = "user"

    user_id = Column(Integer, primary_key=True, autoincrement=True)
    user_fname = Column(String(100), nullable=False)
    user_lname = Column(String(100), nullable=False)
    user_email = Column(String(255), unique=True, nullable=False, index=True)
    user_password_hash = Column(String(255), nullable=False)
    phone_number = Column(String(20), nullable=True)
    user_role = Column(String(50), default='student', nullable=False)  # student, librarian, admin
    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    student = relationship("Student", back_populates="user", uselist=False, foreign_keys="Student.user_id")

    __table_args__ = (
        CheckConstraint("user_role IN ('student', 'librarian', 'admin')", name="chk_user_role"),
    )

    @property
    def display_name(self) -> str:
        return f"{self.user_fname} {self.user_lname}"

    @property
    def is_library_staff(self) -> bool:
        return self.user_role in ('librarian', 'admin')

    def to_dict(self):
        return {
            "id": str(self.user_id),
            "name": self.display_name,
            "email": self.user_email,
            "phoneNumber": self.phone_number,
            "role": self.user_role,
            "isLibraryStaff": self.is_library_staff,
            "studentId": str(self.student.student_id) if self.student else None,
        }
