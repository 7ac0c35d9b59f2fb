import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from app.database import get_db
from app.models.user import User
from app.schemas.auth import UserCreate, StaffCreate, UserLogin, UserResponse, Token
from app.services.auth import (
    verify_password,
    get_password_hash,
    create_access_token,
    get_current_user,
    require_admin
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Authentication"])

def _token_for(user: User) -> Token:
    access_token = create_access_token(data={"sub": str(user.user_id)})
    return Token(access_token=access_token, token_type="bearer", user=UserResponse(**user.to_dict()))

def _create_user(db: Session, user_data: UserCreate, role: str) -> User:
    existing_user = db.query(User).filter(User.user_email == user_data.user_email).first()
    if existing_user:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered"
        )

    db_user = User(
        user_fname=user_data.user_fname,
        user_lname=user_data.user_lname,
        user_email=user_data.user_email,
        user_password_hash=get_password_hash(user_data.password),
        phone_number=user_data.phone_number,
        user_role=role
    )
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return db_user

@router.post("/signup", response_model=Token, status_code=status.HTTP_201_CREATED)
def signup(user_data: UserCreate, db: Session = Depends(get_db)):
    """Register a new student account."""
    db_user = _create_user(db, user_data, 'student')
    logger.info(f"User {db_user.user_id} registered")
    return _token_for(db_user)

@router.post("/staff", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def create_staff(
    user_data: StaffCreate,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Create a librarian or admin account (admins only)."""
    db_user = _create_user(db, user_data, user_data.user_role)
    logger.info(f"User {db_user.user_id} created as {db_user.user_role} by admin {current_user.user_id}")
    return UserResponse(**db_user.to_dict())

@router.post("/login", response_model=Token)
def login(user_data: UserLogin, db: Session = Depends(get_db)):
    """Login and get access token."""
    user = db.query(User).filter(User.user_email == user_data.user_email).first()
    if not user or not verify_password(user_data.password, user.user_password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password"
        )
    return _token_for(user)

@router.get("/me", response_model=UserResponse)
def get_current_user_info(current_user: User = Depends(get_current_user)):
    """Get current authenticated user information."""
    return UserResponse(**current_user.to_dict())
