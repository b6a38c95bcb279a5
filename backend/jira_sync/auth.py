"""Token authentication for the operational API."""

from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from jira_sync.config import settings
from jira_sync.schemas.auth import Operator, OperatorInDB, TokenData

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ALGORITHM = "HS256"

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")


class OperatorDirectory:
    """The configured operator account; the password hash is computed on first use."""

    def __init__(self, username: str, password: str):
        self.username = username
        self._password = password
        self._operator: Optional[OperatorInDB] = None

    def get(self, username: str) -> Optional[OperatorInDB]:
        if username != self.username:
            return None
        if self._operator is None:
            self._operator = OperatorInDB(
                username=self.username,
                full_name="Sync Operator",
                hashed_password=pwd_context.hash(self._password),
            )
        return self._operator


operators = OperatorDirectory(settings.admin_username, settings.admin_password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=ALGORITHM)


def authenticate_operator(username: str, password: str) -> Optional[OperatorInDB]:
    operator = operators.get(username)
    if not operator or not pwd_context.verify(password, operator.hashed_password):
        return None
    return operator


def get_current_operator(token: Annotated[str, Depends(oauth2_scheme)]) -> Operator:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
        token_data = TokenData(username=payload.get("sub"))
    except JWTError:
        raise credentials_exception
    if token_data.username is None:
        raise credentials_exception
    operator = operators.get(token_data.username)
    if operator is None:
        raise credentials_exception
    if operator.disabled:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Inactive operator")
    return Operator(**operator.model_dump(exclude={"hashed_password"}))
