from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Request
from jose import JWTError, jwt
from passlib.context import CryptContext

from database import get_repository
from exceptions import ForbiddenError, NotAuthenticatedError
from settings import ACCESS_TOKEN_EXPIRE_MINUTES, AUTH_COOKIE_NAME, JWT_ALGORITHM, JWT_SECRET

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ADMIN_ROLES = ("admin", "super-admin")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise NotAuthenticatedError("Invalid or expired token")


def extract_token(request: Request) -> Optional[str]:
    """Bearer token from the Authorization header, else the auth cookie."""
    authorization = request.headers.get("authorization")
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1]
    return request.cookies.get(AUTH_COOKIE_NAME)


def is_admin(user: dict) -> bool:
    return user.get("role") in ADMIN_ROLES


# Dependency to get current user

def get_current_user(request: Request, repo=Depends(get_repository)) -> dict:
    token = extract_token(request)
    if not token:
        raise NotAuthenticatedError("Not authorized, no token")
    payload = decode_token(token)
    user_id = payload.get("sub")
    if not user_id:
        raise NotAuthenticatedError("Invalid token")
    user = repo.get_user(user_id)
    if not user:
        raise NotAuthenticatedError("Not authorized, user not found")
    # Never pass the password hash along
    user.pop("password_hash", None)
    return user


def require_admin(current_user: dict = Depends(get_current_user)) -> dict:
    if not is_admin(current_user):
        raise ForbiddenError("Not authorized as an admin")
    return current_user
