"""Staff directory and ban reports"""

from aiohttp import web

from clanhub.core.applications import BanReportService
from clanhub.utils.constants import RATE_LIMITS
from clanhub.utils.errors import Forbidden
from clanhub.web.app import json_response, read_json, require_guild_roles

async def staff_list(request: web.Request) -> web.Response:
    staff = await request.app['staff_directory'].list_staff()
    return json_response({'ok': True, 'staff': staff})

async def ban_report(request: web.Request) -> web.Response:
    user, roles = await require_guild_roles(request)
    if roles is None:
        raise Forbidden("You must be a member of the Discord server")
    await request.app['limiter'].enforce('ban_report', user['id'], RATE_LIMITS['BAN_REPORT'])
    body = await read_json(request)

    async with request.app['open_repositories']() as repos:
        service = BanReportService(repos, request.app['discord'], request.app['settings'])
        result = await service.submit(user, body)
    return json_response(result)

def setup(app: web.Application) -> None:
    app.router.add_get('/api/staff', staff_list)
    app.router.add_post('/api/ban-report', ban_report)
