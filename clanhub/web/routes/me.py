"""Signed-in user's identity, access level and application"""

from aiohttp import web

from clanhub.core.access import resolve_identity
from clanhub.web.app import json_response, require_user

async def get_me(request: web.Request) -> web.Response:
    user = require_user(request)
    async with request.app['open_repositories']() as repos:
        identity = await resolve_identity(
            repos, request.app['discord'], request.app['settings'], user
        )
    return json_response({'ok': True, **identity})

def setup(app: web.Application) -> None:
    app.router.add_get('/api/me', get_me)
