"""Signed tokens: browser sessions and short-lived resolve tokens.

Resolve tokens stand in for a raw Discord ID in the admin UI. They carry a
fixed purpose claim and are signed with their own secret so they can never be
replayed as a session (or the other way round).
"""

import logging
import time
from typing import Any, Dict, Optional

import jwt

from clanhub.utils.constants import TOKEN_SETTINGS

logger = logging.getLogger('ClanHub')

class TokenService:
    """Issue and verify HS256 tokens"""

    def __init__(self, session_secret: str, resolve_secret: str,
                 session_ttl: int = TOKEN_SETTINGS['SESSION_TTL'],
                 resolve_ttl: int = TOKEN_SETTINGS['RESOLVE_TTL']):
        if not session_secret or not resolve_secret:
            raise ValueError("Token secrets must not be empty")
        if session_secret == resolve_secret:
            raise ValueError("Resolve tokens need a secret distinct from sessions")
        self._session_secret = session_secret
        self._resolve_secret = resolve_secret
        self.session_ttl = session_ttl
        self.resolve_ttl = resolve_ttl
        self.algorithm = TOKEN_SETTINGS['ALGORITHM']

    @classmethod
    def from_settings(cls, settings) -> 'TokenService':
        return cls(settings.session_secret, settings.resolve_token_secret)

    def _encode(self, payload: Dict[str, Any], secret: str, ttl: int) -> str:
        now = int(time.time())
        return jwt.encode({**payload, 'iat': now, 'exp': now + ttl}, secret, algorithm=self.algorithm)

    def issue_session(self, user: Dict[str, Any]) -> str:
        return self._encode({
            'sub': str(user['id']),
            'username': user.get('username'),
            'global_name': user.get('global_name'),
            'avatar': user.get('avatar'),
        }, self._session_secret, self.session_ttl)

    def read_session(self, token: Optional[str]) -> Optional[Dict[str, Any]]:
        """Decoded session user, or None for a missing, expired or forged token"""
        if not token:
            return None
        try:
            claims = jwt.decode(token, self._session_secret, algorithms=[self.algorithm])
        except jwt.PyJWTError as e:
            logger.debug(f"Rejected session token: {e}")
            return None
        return {
            'id': claims['sub'],
            'username': claims.get('username'),
            'global_name': claims.get('global_name'),
            'avatar': claims.get('avatar'),
        }

    def issue_resolve(self, discord_id: str) -> str:
        return self._encode(
            {'did': str(discord_id), 'purpose': TOKEN_SETTINGS['RESOLVE_PURPOSE']},
            self._resolve_secret,
            self.resolve_ttl,
        )

    def read_resolve(self, token: Optional[str]) -> Optional[str]:
        """Discord ID carried by a valid resolve token, else None"""
        if not token:
            return None
        try:
            claims = jwt.decode(token, self._resolve_secret, algorithms=[self.algorithm])
        except jwt.PyJWTError as e:
            logger.debug(f"Rejected resolve token: {e}")
            return None
        if claims.get('purpose') != TOKEN_SETTINGS['RESOLVE_PURPOSE']:
            return None
        return claims.get('did') or None
