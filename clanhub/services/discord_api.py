"""Discord REST client for the bot account and OAuth2 exchange"""

import asyncio
import json
import logging
import ssl
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import aiohttp
import certifi
from redis.exceptions import RedisError

from clanhub.core.resolver import GuildMember
from clanhub.utils.constants import CACHE_SETTINGS, DISCORD_SETTINGS
from clanhub.utils.errors import ServiceUnavailable

logger = logging.getLogger('ClanHub')

# Discord error codes for "Unknown Member" and "Unknown User"
UNKNOWN_MEMBER_CODES = (10007, 10013)
MAX_RATE_LIMIT_WAIT = 5.0

class DiscordClient:
    """Thin async wrapper over the guild, channel and OAuth2 endpoints"""

    def __init__(self, settings, redis_client=None, ssl_context: Optional[ssl.SSLContext] = None):
        self.settings = settings
        self.redis = redis_client
        self.ssl_context = ssl_context or ssl.create_default_context(cafile=certifi.where())
        self.session: Optional[aiohttp.ClientSession] = None
        self.base_url = settings.discord_api_base.rstrip('/')

    async def start(self) -> None:
        """Open the HTTP session"""
        if self.session and not self.session.closed:
            return
        connector = aiohttp.TCPConnector(
            ssl=self.ssl_context,
            enable_cleanup_closed=True,
            limit=100,
            ttl_dns_cache=300
        )
        timeout = aiohttp.ClientTimeout(
            total=self.settings.request_timeout,
            connect=10,
            sock_read=10
        )
        self.session = aiohttp.ClientSession(
            connector=connector,
            timeout=timeout,
            headers={'User-Agent': DISCORD_SETTINGS['USER_AGENT']}
        )
        logger.info("Discord HTTP session initialized")

    async def close(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()
            logger.info("Discord HTTP session closed")

    def _bot_headers(self) -> Dict[str, str]:
        return {'Authorization': f"Bot {self.settings.discord_bot_token}"}

    async def _request(self, method: str, path: str, *,
                       headers: Optional[Dict[str, str]] = None,
                       **kwargs: Any) -> Tuple[int, Any]:
        """Send one request, retrying once after a short rate-limit wait"""
        if self.session is None:
            await self.start()

        url = f"{self.base_url}{path}"
        for attempt in range(2):
            async with self.session.request(method, url, headers=headers or self._bot_headers(),
                                            **kwargs) as response:
                if response.status == 204:
                    return response.status, None
                try:
                    data = await response.json(content_type=None)
                except (json.JSONDecodeError, aiohttp.ContentTypeError):
                    data = None

                if response.status == 429 and attempt == 0:
                    retry_after = float((data or {}).get('retry_after', 1.0))
                    if retry_after <= MAX_RATE_LIMIT_WAIT:
                        logger.warning(f"Discord rate limited {method} {path}, retrying in {retry_after}s")
                        await asyncio.sleep(retry_after)
                        continue
                return response.status, data
        return 429, None

    async def fetch_member(self, user_id: str) -> Optional[GuildMember]:
        """Current guild member, or None when the user is not in the guild"""
        path = f"/guilds/{self.settings.discord_guild_id}/members/{user_id}"
        try:
            status, data = await self._request('GET', path)
        except aiohttp.ClientError as e:
            logger.error(f"Error fetching guild member {user_id}: {e}")
            raise ServiceUnavailable("Discord API unavailable", code='DISCORD_UNAVAILABLE')

        if status == 200 and data:
            return GuildMember.from_payload(data)
        if status == 404 or (data or {}).get('code') in UNKNOWN_MEMBER_CODES:
            return None

        logger.error(f"Unexpected Discord response {status} fetching member {user_id}")
        raise ServiceUnavailable("Discord API unavailable", code='DISCORD_UNAVAILABLE')

    def _cache_key(self) -> str:
        return f"{CACHE_SETTINGS['KEY_PREFIX']}:guild_members:{self.settings.discord_guild_id}"

    async def _cached_members(self) -> Optional[List[Dict[str, Any]]]:
        if self.redis is None:
            return None
        try:
            cached = await self.redis.get(self._cache_key())
            return json.loads(cached) if cached else None
        except (RedisError, ValueError) as e:
            logger.warning(f"Guild member cache read failed: {e}")
            return None

    async def _store_members(self, payloads: List[Dict[str, Any]]) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.set(
                self._cache_key(), json.dumps(payloads), ex=DISCORD_SETTINGS['GUILD_CACHE_TTL']
            )
        except RedisError as e:
            logger.warning(f"Guild member cache write failed: {e}")

    async def fetch_all_guild_members(self) -> List[GuildMember]:
        """Every guild member, paginated with the ``after`` cursor.

        Returns an empty list when Discord cannot be reached; callers decide
        whether that is fatal.
        """
        payloads = await self._cached_members()
        if payloads is None:
            payloads = []
            after = '0'
            limit = DISCORD_SETTINGS['MEMBER_PAGE_LIMIT']
            path = f"/guilds/{self.settings.discord_guild_id}/members"
            try:
                while True:
                    status, page = await self._request('GET', path, params={'limit': limit, 'after': after})
                    if status != 200 or not isinstance(page, list):
                        logger.error(f"Guild member list request failed with status {status}")
                        return []
                    payloads.extend(page)
                    if len(page) < limit:
                        break
                    after = page[-1]['user']['id']
            except aiohttp.ClientError as e:
                logger.error(f"Error fetching guild member list: {e}")
                return []

            await self._store_members(payloads)
            logger.debug(f"Fetched {len(payloads)} guild members")

        return [GuildMember.from_payload(p) for p in payloads]

    async def _role_request(self, method: str, user_id: str, role_id: str) -> bool:
        path = f"/guilds/{self.settings.discord_guild_id}/members/{user_id}/roles/{role_id}"
        try:
            status, data = await self._request(method, path)
        except aiohttp.ClientError as e:
            logger.error(f"Role {method} {role_id} for {user_id} failed: {e}")
            return False
        if status in (200, 204):
            return True
        logger.error(f"Role {method} {role_id} for {user_id} returned {status}: {data}")
        return False

    async def add_role(self, user_id: str, role_id: str) -> bool:
        return await self._role_request('PUT', user_id, role_id)

    async def remove_role(self, user_id: str, role_id: str) -> bool:
        return await self._role_request('DELETE', user_id, role_id)

    async def post_channel_message(self, channel_id: str, content: str) -> bool:
        """Post a plain message; failure is logged and reported as False"""
        try:
            status, data = await self._request(
                'POST', f"/channels/{channel_id}/messages",
                json={'content': content, 'allowed_mentions': {'parse': ['users', 'roles']}},
            )
        except aiohttp.ClientError as e:
            logger.error(f"Error posting to channel {channel_id}: {e}")
            return False
        if status in (200, 201):
            return True
        logger.error(f"Posting to channel {channel_id} returned {status}: {data}")
        return False

    def authorize_url(self, state: str) -> str:
        query = urlencode({
            'client_id': self.settings.discord_client_id,
            'redirect_uri': self.settings.discord_redirect_uri,
            'response_type': 'code',
            'scope': DISCORD_SETTINGS['OAUTH_SCOPE'],
            'state': state,
            'prompt': 'none',
        })
        return f"{DISCORD_SETTINGS['OAUTH_AUTHORIZE_URL']}?{query}"

    async def exchange_code(self, code: str) -> Optional[Dict[str, Any]]:
        """Trade an OAuth2 code for an access token"""
        try:
            status, data = await self._request(
                'POST', '/oauth2/token',
                headers={'Content-Type': 'application/x-www-form-urlencoded'},
                data={
                    'client_id': self.settings.discord_client_id,
                    'client_secret': self.settings.discord_client_secret,
                    'grant_type': 'authorization_code',
                    'code': code,
                    'redirect_uri': self.settings.discord_redirect_uri,
                },
            )
        except aiohttp.ClientError as e:
            logger.error(f"OAuth code exchange failed: {e}")
            return None
        if status != 200 or not data or 'access_token' not in data:
            logger.warning(f"OAuth code exchange returned {status}")
            return None
        return data

    async def fetch_current_user(self, access_token: str) -> Optional[Dict[str, Any]]:
        try:
            status, data = await self._request(
                'GET', '/users/@me', headers={'Authorization': f"Bearer {access_token}"}
            )
        except aiohttp.ClientError as e:
            logger.error(f"Fetching OAuth user failed: {e}")
            return None
        return data if status == 200 else None
