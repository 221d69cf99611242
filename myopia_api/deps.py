# backend/myopia_api/deps.py
from typing import Optional
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from sqlalchemy.orm import Session
from . import config, database, models

bearer = HTTPBearer(auto_error=False)


def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: Session = Depends(database.get_db)
) -> models.User:
    if not creds:
        raise HTTPException(status_code=401, detail="No token provided.")
    token = creds.credentials
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
        user_id = int(payload.get("sub"))
    except (JWTError, ValueError, TypeError):
        raise HTTPException(status_code=401, detail="Invalid token.")
    user = db.get(models.User, user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid user.")
    return user


def get_current_admin(current: models.User = Depends(get_current_user)) -> models.User:
    if current.role != models.Role.admin:
        raise HTTPException(status_code=403, detail="Access denied: Admins only")
    return current


def get_current_doctor(current: models.User = Depends(get_current_user)) -> models.User:
    if current.role != models.Role.doctor:
        raise HTTPException(status_code=403, detail="Access denied: Doctors only")
    return current
