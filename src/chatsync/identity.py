"""The signed-in user's identity, and the bearer token file it is read from."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import jwt

from .models import normalize_identity

DEFAULT_TOKEN_PATH = Path.home() / ".chatsync" / "token"
BEARER_PREFIX = "Bearer "


class IdentityError(ValueError):
    """The token is missing, undecodable, or carries no usable identity claim."""


@dataclass(frozen=True)
class Identity:
    email: str
    token: str

    @property
    def authorization(self) -> str:
        return f"{BEARER_PREFIX}{self.token}"


def strip_bearer(token: str) -> str:
    token = token.strip()
    if token.startswith(BEARER_PREFIX):
        return token[len(BEARER_PREFIX) :].strip()
    return token


def resolve_identity(token: str | None) -> Identity:
    """Decode the caller's own identity from a bearer token.

    The signature is not verified here; the server does that on every call.
    """

    if not token or not token.strip():
        raise IdentityError("no auth token")
    raw = strip_bearer(token)
    try:
        claims = jwt.decode(raw, options={"verify_signature": False})
    except jwt.PyJWTError as exc:
        raise IdentityError("auth token is not a decodable JWT") from exc
    email = normalize_identity(claims.get("email")) or normalize_identity(claims.get("sub"))
    if not email:
        raise IdentityError("auth token has no email or sub claim")
    return Identity(email=email, token=raw)


class TokenStore:
    """Persists the bearer token between runs with owner-only permissions."""

    def __init__(self, path: Path | str = DEFAULT_TOKEN_PATH) -> None:
        self.path = Path(path).expanduser()

    def read(self) -> str | None:
        try:
            token = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return token or None

    def write(self, token: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(strip_bearer(token))
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, self.path)

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return

    def load_identity(self) -> Identity:
        return resolve_identity(self.read())
