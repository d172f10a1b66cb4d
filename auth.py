"""
Bearer token resolution.
Tokens are issued by the identity service; this module only verifies them
and loads the caller's user record.
"""
from datetime import timedelta
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

import config
from database import get_db
from errors import AuthenticationRequired, Forbidden
from models import ROLE_ADMIN, User, utcnow

security = HTTPBearer(auto_error=False)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    if expires_delta:
        expire = utcnow() + expires_delta
    else:
        expire = utcnow() + timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db=Depends(get_db),
) -> User:
    if credentials is None:
        raise AuthenticationRequired("Authentication required")
    try:
        payload = jwt.decode(credentials.credentials, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthenticationRequired("Token has expired")
    except jwt.InvalidTokenError:
        raise AuthenticationRequired("Invalid authentication credentials")

    user_id = payload.get("sub")
    if user_id is None:
        raise AuthenticationRequired("Invalid authentication credentials")

    user = await db.users.find_one({"id": user_id}, {"_id": 0})
    if user is None or not user.get("active", True):
        raise AuthenticationRequired("User not found")
    return User(**user)


async def get_admin_user(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != ROLE_ADMIN:
        raise Forbidden("Admin access required")
    return current_user
