from typing import Optional

from pydantic import BaseModel


class Token(BaseModel):
    access_token: str
    token_type: str


class TokenData(BaseModel):
    username: Optional[str] = None


class Operator(BaseModel):
    """Person allowed to trigger, cancel and resume sync runs."""
    username: str
    full_name: Optional[str] = None
    disabled: bool = False


class OperatorInDB(Operator):
    hashed_password: str
