"""aiohttp application factory, middlewares and request helpers"""

import json
import logging
from datetime import date, datetime
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Tuple

from aiohttp import web

from clanhub.core.access import StaffDirectory, is_staff
from clanhub.core.ranks import RankLadder
from clanhub.core.ratelimit import RateLimiter
from clanhub.core.tokens import TokenService
from clanhub.utils.constants import APP_VERSION, TOKEN_SETTINGS
from clanhub.utils.errors import BadRequest, ClanHubError, Forbidden, Unauthorized
from clanhub.utils.logger import get_logger

logger = logging.getLogger('ClanHub')

def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")

json_dumps = partial(json.dumps, default=_json_default)

def json_response(data: Dict[str, Any], status: int = 200) -> web.Response:
    return web.json_response(data, status=status, dumps=json_dumps)

@web.middleware
async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    """Render ClanHubError as JSON; anything unexpected becomes a logged 500"""
    try:
        return await handler(request)
    except ClanHubError as e:
        if e.status >= 500:
            logger.error(f"{request.method} {request.path} -> {e.status}: {e.message}")
        else:
            logger.info(f"{request.method} {request.path} -> {e.status}: {e.message}")
        return json_response(e.to_dict(), status=e.status)
    except web.HTTPException:
        raise
    except Exception:
        request_logger = get_logger('web', method=request.method, path=request.path)
        request_logger.exception("Unhandled error while handling request")
        return json_response({'error': "Internal server error"}, status=500)

def current_user(request: web.Request) -> Optional[Dict[str, Any]]:
    tokens: TokenService = request.app['tokens']
    return tokens.read_session(request.cookies.get(TOKEN_SETTINGS['SESSION_COOKIE']))

def require_user(request: web.Request) -> Dict[str, Any]:
    user = current_user(request)
    if not user:
        raise Unauthorized()
    return user

async def require_guild_roles(request: web.Request) -> Tuple[Dict[str, Any], Optional[List[str]]]:
    """Signed-in user plus their live guild roles (None when not in the guild)"""
    user = require_user(request)
    member = await request.app['discord'].fetch_member(user['id'])
    return user, list(member.roles) if member else None

async def require_staff(request: web.Request) -> Dict[str, Any]:
    """Signed-in user holding a staff tier or the legacy staff role right now"""
    user, roles = await require_guild_roles(request)
    if roles is None or not is_staff(roles, request.app['settings']):
        raise Forbidden()
    return user

async def read_json(request: web.Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise BadRequest("Invalid JSON")
    if not isinstance(body, dict):
        raise BadRequest("Request body must be a JSON object")
    return body

def int_param(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise BadRequest(f"{name} must be an integer")

def flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or '').strip().lower() in ('1', 'true', 'yes')

async def health(request: web.Request) -> web.Response:
    return json_response({'ok': True, 'version': APP_VERSION})

def create_app(settings, discord, open_repositories,
               limiter: Optional[RateLimiter] = None,
               tokens: Optional[TokenService] = None) -> web.Application:
    """Build the web application.

    ``open_repositories`` is a zero-argument callable returning an async
    context manager that yields a repository bundle for one request.
    """
    from clanhub.web.routes import applications, auth, me, misc, promotions, roster

    app = web.Application(middlewares=[error_middleware])
    app['settings'] = settings
    app['discord'] = discord
    app['open_repositories'] = open_repositories
    app['limiter'] = limiter or RateLimiter()
    app['tokens'] = tokens or TokenService.from_settings(settings)
    app['ladder'] = RankLadder.from_role_ids(settings.rank_role_ids())
    app['staff_directory'] = StaffDirectory(discord, settings)

    app.router.add_get('/health', health)
    for module in (auth, me, applications, roster, promotions, misc):
        module.setup(app)

    logger.info(f"Web application created with {len(app.router.routes())} routes")
    return app
