# backend/myopia_api/auth.py
import hashlib
import logging
import secrets
from datetime import datetime, timedelta
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from jose import jwt
from passlib.hash import bcrypt

from . import schemas, models, database, config, mailer
from .deps import get_current_user, get_current_admin
from .errors import Conflict, NotFound, ValidationFailed
from .pagination import PageParams, page_params, paginate, dump, page_envelope

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def create_access_token(user: models.User) -> str:
    expire = datetime.utcnow() + timedelta(hours=config.JWT_EXPIRE_HOURS)
    payload = {"sub": str(user.id), "role": user.role.value, "exp": expire}
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def token_key(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def send_reset_link(email: str, reset_url: str) -> None:
    text = (
        "You requested a password reset.\n\n"
        f"Open this link to choose a new password: {reset_url}\n\n"
        f"The link expires in {config.RESET_TOKEN_TTL_MINUTES} minutes."
    )
    html = (
        "<p>You requested a password reset.</p>"
        f'<p>Click <a href="{reset_url}">here</a> to reset your password.</p>'
        f"<p>This link expires in {config.RESET_TOKEN_TTL_MINUTES} minutes.</p>"
    )
    mailer.send_email(email, "Password Reset Request", text, html)


@router.post("/register", status_code=status.HTTP_201_CREATED)
def register(payload: schemas.UserRegister, db: Session = Depends(database.get_db)):
    email = _normalize_email(payload.email)
    existing = db.query(models.User).filter(models.User.email == email).first()
    if existing:
        raise Conflict("Email already registered.")
    user = models.User(
        name=payload.name,
        email=email,
        password_hash=bcrypt.hash(payload.password),
        role=payload.role,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("Registered %s %s", user.role.value, user.id)
    return {"message": "User registered successfully.", "data": dump(schemas.UserOut, user)}


@router.post("/login")
def login(payload: schemas.UserLogin, db: Session = Depends(database.get_db)):
    user = db.query(models.User).filter(models.User.email == _normalize_email(payload.email)).first()
    if not user or not bcrypt.verify(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password.")
    out = schemas.LoginOut(token=create_access_token(user), user=schemas.UserOut.model_validate(user))
    return out.model_dump(by_alias=True, mode="json")


@router.get("/profile")
def read_profile(current: models.User = Depends(get_current_user)):
    return {"data": dump(schemas.UserOut, current)}


@router.put("/profile")
def update_profile(
    payload: schemas.UserUpdate,
    db: Session = Depends(database.get_db),
    current: models.User = Depends(get_current_user),
):
    if payload.email:
        email = _normalize_email(payload.email)
        taken = (
            db.query(models.User)
            .filter(models.User.email == email, models.User.id != current.id)
            .first()
        )
        if taken:
            raise Conflict("Email already in use.")
        current.email = email
    if payload.name:
        current.name = payload.name
    db.commit()
    db.refresh(current)
    return {"message": "Profile updated successfully.", "data": dump(schemas.UserOut, current)}


@router.delete("/profile")
def delete_profile(
    db: Session = Depends(database.get_db),
    current: models.User = Depends(get_current_user),
):
    patients = db.query(models.Patient).filter(models.Patient.doctor_id == current.id).count()
    images = db.query(models.RetinalImage).filter(models.RetinalImage.uploaded_by == current.id).count()
    if patients or images:
        raise Conflict("Cannot delete user with associated patients or retinal images.")
    db.query(models.PasswordResetToken).filter(models.PasswordResetToken.user_id == current.id).delete()
    db.delete(current)
    db.commit()
    return {"message": "User account deleted successfully."}


@router.post("/password-reset/request")
def request_password_reset(payload: schemas.PasswordResetRequest, db: Session = Depends(database.get_db)):
    user = db.query(models.User).filter(models.User.email == _normalize_email(payload.email)).first()
    if not user:
        raise NotFound("User with this email not found.")

    raw_token = secrets.token_hex(32)
    # only the newest token stays usable
    db.query(models.PasswordResetToken).filter(models.PasswordResetToken.user_id == user.id).delete()
    db.add(models.PasswordResetToken(
        user_id=user.id,
        token_key=token_key(raw_token),
        token=bcrypt.hash(raw_token),
        expires=datetime.utcnow() + timedelta(minutes=config.RESET_TOKEN_TTL_MINUTES),
    ))
    db.flush()
    try:
        send_reset_link(user.email, f"{config.FRONTEND_URL}/reset-password/{raw_token}")
    except Exception:
        db.rollback()
        raise
    db.commit()
    logger.info("Password reset requested for user %s", user.id)
    return {"message": "Password reset link sent to email."}


@router.post("/password-reset")
def reset_password(payload: schemas.PasswordReset, db: Session = Depends(database.get_db)):
    match = (
        db.query(models.PasswordResetToken)
        .filter(
            models.PasswordResetToken.token_key == token_key(payload.token),
            models.PasswordResetToken.expires > datetime.utcnow(),
        )
        .first()
    )
    if match is not None and not bcrypt.verify(payload.token, match.token):
        match = None
    user = db.get(models.User, match.user_id) if match else None
    if not user:
        raise ValidationFailed("Invalid or expired reset token.")

    user.password_hash = bcrypt.hash(payload.new_password)
    db.query(models.PasswordResetToken).filter(models.PasswordResetToken.user_id == user.id).delete()
    db.commit()
    return {"message": "Password reset successfully."}


@router.get("/users")
def list_users(
    params: PageParams = Depends(page_params),
    db: Session = Depends(database.get_db),
    current: models.User = Depends(get_current_admin),
):
    query = db.query(models.User).filter(models.User.role == models.Role.doctor)
    if params.search:
        query = query.filter(models.User.name.ilike(f"%{params.search}%"))
    rows, total = paginate(query.order_by(models.User.name.asc()), params)
    data = [dump(schemas.UserOut, u) for u in rows]
    return page_envelope("Users retrieved successfully.", data, total, params)


@router.get("/users/count")
def count_users(
    db: Session = Depends(database.get_db),
    current: models.User = Depends(get_current_admin),
):
    return {"count": db.query(models.User).filter(models.User.role == models.Role.doctor).count()}
