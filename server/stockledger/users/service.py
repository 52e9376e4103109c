from sqlalchemy.orm import Session

from stockledger.errors import NotFoundError, ValidationError
from stockledger.models import USER_ROLES, User


SUPERVISOR_ROLES = {"manager", "planner"}


def get_user(db: Session, user_id: int | None) -> User:
    if user_id is None:
        raise NotFoundError("Actor is required.")
    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.is_active:
        raise NotFoundError(f"User {user_id} not found.")
    return user


def is_supervisor(user: User) -> bool:
    return user.role in SUPERVISOR_ROLES


def create_user(db: Session, *, username: str, role: str, full_name: str | None = None) -> User:
    if role not in USER_ROLES:
        raise ValidationError(f"Unknown role '{role}'. Expected one of: {', '.join(USER_ROLES)}.")
    username = (username or "").strip()
    if not username:
        raise ValidationError("Username is required.")
    if db.query(User.id).filter(User.username == username).scalar() is not None:
        raise ValidationError(f"Username '{username}' is already taken.")
    user = User(username=username, role=role, full_name=full_name, is_active=True)
    db.add(user)
    db.flush()
    return user
