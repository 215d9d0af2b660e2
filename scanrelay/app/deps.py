from fastapi import Header, HTTPException, Depends, Cookie
from .db import get_conn
from datetime import datetime, timezone
from typing import Optional


SESSION_COOKIE_NAME = "pharmacy_session"


def _extract_session_token(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1]
    if cookie_token:
        return cookie_token
    raise HTTPException(status_code=401, detail="missing token")


def lookup_session(token: str) -> Optional[dict]:
    # Desktop users sign in through the POS; the relay only validates their session token.
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id AS session_id, s.user_id, u.email, s.expires_at, s.is_active
                FROM auth_sessions s
                JOIN users u ON u.id = s.user_id
                WHERE s.token = %s
                """,
                (token,),
            )
            row = cur.fetchone()
            now = datetime.now(timezone.utc)
            if not row or not row["is_active"] or row["expires_at"] < now:
                return None
            return {
                "session_id": row["session_id"],
                "user_id": row["user_id"],
                "email": row["email"],
                "token": token,
            }


def get_session(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    token = _extract_session_token(authorization, cookie_token)
    session = lookup_session(token)
    if session is None:
        raise HTTPException(status_code=401, detail="invalid token")
    return session


def get_current_user(session=Depends(get_session)):
    return {"user_id": session["user_id"], "email": session["email"]}
