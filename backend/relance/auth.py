"""Bearer-token authentication.

Handlers never read a global session: the ``require_auth`` dependency builds
an ``AuthContext`` from the request and passes it in explicitly.
"""

import hmac
from dataclasses import dataclass
from typing import Dict, Optional

from fastapi import Request

from .errors import AuthenticationError

NOT_AUTHENTICATED = "Non authentifié"


@dataclass(frozen=True)
class User:
    user_id: str


@dataclass(frozen=True)
class AuthContext:
    user: User
    token: str


def bearer_token(auth_header: Optional[str]) -> Optional[str]:
    raw = (auth_header or '').strip()
    if not raw.lower().startswith('bearer '):
        return None
    token = raw.split(' ', 1)[1].strip()
    return token or None


class TokenAuthProvider:
    def __init__(self, tokens: Dict[str, str]):
        self._tokens = dict(tokens or {})

    def get_current_user(self, token: Optional[str]) -> User:
        if token:
            for known, user_id in self._tokens.items():
                if hmac.compare_digest(known, token):
                    return User(user_id=user_id)
        raise AuthenticationError(NOT_AUTHENTICATED)

    def authenticate(self, request: Request) -> AuthContext:
        token = bearer_token(request.headers.get('Authorization'))
        user = self.get_current_user(token)
        return AuthContext(user=user, token=token)


def check_cron_secret(request: Request, secret: Optional[str]):
    token = bearer_token(request.headers.get('Authorization'))
    if not secret or not token or not hmac.compare_digest(token, secret):
        raise AuthenticationError("Unauthorized")
