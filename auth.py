from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session
from datetime import datetime, timedelta, timezone
from typing import Optional
from werkzeug.security import check_password_hash, generate_password_hash
import jwt
import logging
import uuid
from config import Settings
from context import AppContext, get_context, get_db
from database import User
from schemas import UserCreate, UserLogin, Token

logger = logging.getLogger(__name__)

auth_router = APIRouter()
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login")


def create_access_token(data: dict, settings: Settings):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(
        minutes=settings.access_token_expire_minutes
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def resolve_token(token: str, db: Session, settings: Settings) -> Optional[User]:
    """Return the token's user, or None when the token is invalid or expired."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except jwt.PyJWTError:
        return None
    uid = payload.get("sub")
    if uid is None:
        return None
    return db.query(User).filter(User.uid == uid).first()


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    settings = context.settings
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
        uid: str = payload.get("sub")
        if uid is None:
            raise credentials_exception
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired")
    except jwt.PyJWTError:
        raise credentials_exception

    user = db.query(User).filter(User.uid == uid).first()
    if user is None:
        raise credentials_exception
    return user


@auth_router.post("/register", response_model=Token)
async def register(
    user: UserCreate,
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    db_user = db.query(User).filter(User.username == user.username).first()
    if db_user:
        raise HTTPException(status_code=400, detail="Username already registered")

    new_user = User(
        uid=uuid.uuid4().hex,
        username=user.username,
        password=generate_password_hash(user.password),
    )
    db.add(new_user)
    db.commit()
    logger.info("Registered user %s", new_user.username)

    access_token = create_access_token({"sub": new_user.uid}, context.settings)
    return Token(access_token=access_token)


@auth_router.post("/login", response_model=Token)
async def login(
    user: UserLogin,
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    db_user = db.query(User).filter(User.username == user.username).first()
    if not db_user or not check_password_hash(db_user.password, user.password):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    access_token = create_access_token({"sub": db_user.uid}, context.settings)
    return Token(access_token=access_token)


@auth_router.post("/logout")
async def logout(
    current_user: User = Depends(get_current_user),
    context: AppContext = Depends(get_context),
):
    context.feeds.release(current_user.uid)
    logger.info("User %s signed out", current_user.username)
    return {"message": "Signed out"}
