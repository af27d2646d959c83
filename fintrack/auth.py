from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import bcrypt
from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt
from sqlalchemy import Table, insert, select, update
from sqlalchemy.engine import Connection, Engine

from fintrack.config import Settings, get_settings
from fintrack.database import get_engine, users

ALGORITHM = "HS256"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def create_access_token(user_id: int, settings: Settings, now: datetime | None = None) -> str:
    issued_at = now or datetime.now(timezone.utc)
    claims = {
        "sub": str(user_id),
        "iat": issued_at,
        "exp": issued_at + timedelta(minutes=settings.token_ttl_minutes),
    }
    return jwt.encode(claims, settings.secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str, settings: Settings) -> int:
    try:
        claims = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
        return int(claims["sub"])
    except (JWTError, KeyError, TypeError, ValueError) as exc:
        raise ValueError("Invalid or expired token.") from exc


@dataclass(frozen=True)
class OwnerScope:
    """Builds statements that are always filtered to one owner's rows.

    Every owned table carries a ``user_id`` column; handlers go through this
    object instead of adding the filter themselves.
    """

    user_id: int

    def owns(self, table: Table):
        return table.c.user_id == self.user_id

    def select(self, table: Table, *columns):
        stmt = select(*columns) if columns else select(table)
        return stmt.where(self.owns(table))

    def insert(self, table: Table, **values):
        return insert(table).values(user_id=self.user_id, **values)

    def update(self, table: Table, *criteria):
        return update(table).where(self.owns(table), *criteria)

    def delete(self, table: Table, *criteria):
        return table.delete().where(self.owns(table), *criteria)

    def get(self, conn: Connection, table: Table, row_id: int):
        return conn.execute(
            self.select(table).where(table.c.id == row_id)
        ).mappings().first()

    def exists(self, conn: Connection, table: Table, row_id: int) -> bool:
        return bool(
            conn.execute(self.select(table, table.c.id).where(table.c.id == row_id)).first()
        )


def parse_bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing authorization token.")
    scheme, _, token = authorization.partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization header.")
    return token


def current_user_id(
    authorization: str | None = Header(None),
    engine: Engine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
) -> int:
    token = parse_bearer_token(authorization)
    try:
        user_id = decode_access_token(token, settings)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    with engine.begin() as conn:
        result = conn.execute(select(users.c.id).where(users.c.id == user_id))
        if not result.first():
            raise HTTPException(status_code=401, detail="User not found.")
    return user_id


def current_owner(user_id: int = Depends(current_user_id)) -> OwnerScope:
    return OwnerScope(user_id=user_id)
