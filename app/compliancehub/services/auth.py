from fastapi import Depends, HTTPException, Request
from sqlalchemy import func
from sqlalchemy.orm import Session
from compliancehub.core.security import verify_password
from compliancehub.db.session import get_db
from compliancehub.models import User

ROLE_ORDER = {"viewer": 1, "manager": 2, "admin": 3}


def authenticate(db: Session, email: str, password: str) -> User | None:
    user = db.query(User).filter(func.lower(User.email) == email.strip().lower()).first()
    if not user or not user.is_active or not verify_password(password, user.password_hash):
        return None
    return user


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    user_id = request.session.get("user_id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    user = db.get(User, user_id)
    if not user or not user.is_active:
        request.session.clear()
        raise HTTPException(status_code=401, detail="Invalid session")
    return user


def require_role(min_role: str):
    def checker(user: User = Depends(get_current_user)) -> User:
        if ROLE_ORDER.get(user.role, 0) < ROLE_ORDER[min_role]:
            raise HTTPException(status_code=403, detail="Forbidden")
        return user

    return checker
