from datetime import datetime, timedelta
from typing import Optional
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlalchemy.orm import Session
import bcrypt

from config import Config
from database import get_db
from models import Profile

logger = logging.getLogger(__name__)

# JWT Configuration
SECRET_KEY = Config.SECRET_KEY
ALGORITHM = Config.ALGORITHM
ACCESS_TOKEN_EXPIRE_MINUTES = Config.ACCESS_TOKEN_EXPIRE_MINUTES

ACCESS_SCOPE = "access"
CERTIFICATE_SCOPE = "certificate"

# Security scheme
security = HTTPBearer()


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Check a login attempt against the stored bcrypt hash; malformed hashes never match."""
    try:
        return bcrypt.checkpw(plain_password.encode('utf-8'), hashed_password.encode('utf-8'))
    except ValueError as e:
        logger.warning(f"Unreadable password hash: {e}")
        return False


def get_password_hash(password: str) -> str:
    # Cost factor from BCRYPT_ROUNDS
    salt = bcrypt.gensalt(rounds=Config.BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None, scope: str = ACCESS_SCOPE):
    """Create a JWT carrying `data` and a scope claim."""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=15)
    to_encode.update({"exp": expire, "scope": scope})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


def verify_token(token: str, scope: str = ACCESS_SCOPE) -> Optional[str]:
    """Verify a JWT token and return its subject."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        subject: str = payload.get("sub")
        if subject is None or payload.get("scope") != scope:
            return None
        return subject
    except JWTError:
        return None


def issue_token_for(profile: Profile) -> dict:
    access_token = create_access_token(
        data={"sub": profile.id},
        expires_delta=timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    return {"access_token": access_token, "token_type": "bearer"}


def load_active_profile(db: Session, token: str) -> Optional[Profile]:
    """Resolve a bearer token to an active profile, or None."""
    profile_id = verify_token(token)
    if profile_id is None:
        return None
    profile = db.query(Profile).filter(Profile.id == profile_id).first()
    if not profile or not profile.is_active:
        return None
    return profile


# Dependency to get the calling user
async def get_current_profile(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> Profile:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    profile = load_active_profile(db, credentials.credentials)
    if profile is None:
        raise credentials_exception
    return profile
