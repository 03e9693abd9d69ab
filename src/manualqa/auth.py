"""
Bearer-token authentication.

The service role key authenticates an internal principal with the admin role.
User tokens come from API_TOKENS: "token:user_id:role|role,token2:user_id2:role".
"""
from __future__ import annotations

import hmac
from dataclasses import dataclass, field

from .config import API_TOKENS, SERVICE_ROLE_KEY
from .observability import get_logger

logger = get_logger(__name__)

ADMIN_ROLE = "admin"
SERVICE_USER_ID = "service"


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: str
    roles: frozenset[str] = field(default_factory=frozenset)

    def has_role(self, role: str) -> bool:
        return role in self.roles

    @property
    def is_admin(self) -> bool:
        return self.has_role(ADMIN_ROLE)


def parse_token_spec(spec: str) -> dict[str, AuthenticatedUser]:
    tokens: dict[str, AuthenticatedUser] = {}
    for entry in str(spec or "").split(","):
        entry = entry.strip()
        if not entry:
            continue
        parts = entry.split(":")
        if len(parts) < 2 or not parts[0] or not parts[1]:
            logger.warning("api_token_entry_ignored", reason="expected token:user_id[:roles]")
            continue
        roles = frozenset(r.strip() for r in parts[2].split("|") if r.strip()) if len(parts) > 2 else frozenset()
        tokens[parts[0]] = AuthenticatedUser(user_id=parts[1], roles=roles)
    return tokens


class StaticTokenAuthProvider:
    def __init__(self, tokens: dict[str, AuthenticatedUser] | None = None, service_key: str = ""):
        self._tokens = dict(tokens or {})
        self._service_key = str(service_key or "")

    @classmethod
    def from_config(cls) -> "StaticTokenAuthProvider":
        return cls(parse_token_spec(API_TOKENS), SERVICE_ROLE_KEY)

    def authenticate(self, token: str | None) -> AuthenticatedUser | None:
        token = str(token or "").strip()
        if not token:
            return None
        if self._service_key and hmac.compare_digest(token, self._service_key):
            return AuthenticatedUser(user_id=SERVICE_USER_ID, roles=frozenset({ADMIN_ROLE}))
        for known, user in self._tokens.items():
            if hmac.compare_digest(token, known):
                return user
        return None
