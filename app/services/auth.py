import logging
from datetime import timedelta
from typing import Optional
from jose import JWTError, jwt
from passlib.context import CryptContext
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from app.config import settings
from app.models.user import User
from app.services.errors import Forbidden
from app.database import get_db
from app.utils.timezone import now_local

logger = logging.getLogger(__name__)

# HTTP Bearer token - auto_error=False so we can handle errors ourselves
security = HTTPBearer(auto_error=False)

# Password hashing context - using bcrypt with automatic salt generation
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a plain password against a hashed password."""
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except Exception as e:
        logger.error(f"Password verification error: {e}. Hash format may be invalid.")
        return False

def get_password_hash(password: str) -> str:
    """Hash a password using bcrypt."""
    return pwd_context.hash(password)

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    """Create a JWT access token."""
    to_encode = data.copy()
    expire = now_local() + (expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)

def decode_access_token(token: Optional[str]) -> Optional[int]:
    """User id carried by ``token``, or None when the token is missing, expired or malformed."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
        user_id_str = payload.get("sub")
        if user_id_str is None:
            return None
        return int(user_id_str)
    except JWTError as e:
        logger.warning(f"JWT validation error: {str(e)}")
        return None
    except (ValueError, TypeError) as e:
        logger.warning(f"Token parsing error: {str(e)}")
        return None

def authenticate_token(db: Session, token: Optional[str]) -> Optional[User]:
    user_id = decode_access_token(token)
    if user_id is None:
        return None
    return db.query(User).filter(User.user_id == user_id).first()

def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """Get current authenticated user from JWT token."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials. Please provide a valid Authorization header with Bearer token.",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        auth_header = request.headers.get("Authorization")
        if auth_header:
            logger.warning(f"Authorization header present but invalid format: {auth_header[:50]}")
        else:
            logger.warning("Authorization header missing")
        raise credentials_exception

    user = authenticate_token(db, credentials.credentials)
    if user is None:
        raise credentials_exception
    return user

def require_library_staff(current_user: User = Depends(get_current_user)) -> User:
    """Librarians and admins only."""
    if not current_user.is_library_staff:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Library staff access required"
        )
    return current_user

def ensure_student_access(current_user: User, student) -> None:
    """Staff may act on any student; a student only on their own record."""
    if current_user.is_library_staff or student.user_id == current_user.user_id:
        return
    raise Forbidden("You can only access your own library records", student_id=student.student_id)

def require_admin(current_user: User = Depends(get_current_user)) -> User:
    """Admins only."""
    if current_user.user_role != 'admin':
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return current_user
