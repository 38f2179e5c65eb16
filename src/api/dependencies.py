"""FastAPI dependencies for authentication, database and services."""

from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, HTTPException, Query, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from src.database import SessionLocal, get_db
from src.models.user import User
from src.services.auth import decode_access_token
from src.services.credit_ledger import CreditLedger
from src.services.receipt_store import ReceiptStore
from src.services.status_notifier import StatusNotifier
from src.services.storage import ObjectStore, get_object_store
from src.services.submission import SubmissionService

security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str = "Invalid authentication credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _user_from_token(token: str, db: Session) -> User:
    payload = decode_access_token(token)
    if payload is None:
        raise _unauthorized()

    user_id = payload.get("sub")
    if user_id is None:
        raise _unauthorized()

    user = db.query(User).filter(User.id == int(user_id)).first()
    if user is None:
        raise _unauthorized("User not found")
    return user


def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
    db: Annotated[Session, Depends(get_db)],
) -> User:
    """Get the current authenticated user from JWT token."""
    return _user_from_token(credentials.credentials, db)


def get_stream_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(optional_security)],
    db: Annotated[Session, Depends(get_db)],
    token: Annotated[str | None, Query()] = None,
) -> User:
    """Authenticate a streaming request by header or ``?token=``.

    Browsers' EventSource cannot set headers, so the token may come in the
    query string instead.
    """
    if credentials is not None:
        return _user_from_token(credentials.credentials, db)
    if token:
        return _user_from_token(token, db)
    raise _unauthorized("Not authenticated")


def get_session_factory() -> Callable[[], Session]:
    """Get the session factory for work outside the request session."""
    return SessionLocal


def get_storage() -> ObjectStore:
    """Get object store instance."""
    return get_object_store()


def get_receipt_store(
    db: Annotated[Session, Depends(get_db)],
) -> ReceiptStore:
    """Get receipt store bound to the request session."""
    return ReceiptStore(db)


def get_credit_ledger(
    db: Annotated[Session, Depends(get_db)],
) -> CreditLedger:
    """Get credit ledger bound to the request session."""
    return CreditLedger(db)


def get_submission_service(
    db: Annotated[Session, Depends(get_db)],
    storage: Annotated[ObjectStore, Depends(get_storage)],
) -> SubmissionService:
    """Get submission service with dependencies."""
    return SubmissionService(db, storage)


def get_status_notifier(
    session_factory: Annotated[Callable[[], Session], Depends(get_session_factory)],
) -> StatusNotifier:
    """Get status notifier reading through its own sessions."""
    return StatusNotifier(session_factory)
