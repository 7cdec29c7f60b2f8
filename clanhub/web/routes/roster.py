"""Clan list administration routes (staff only)"""

from aiohttp import web

from clanhub.core.roster import RosterService
from clanhub.utils.constants import RATE_LIMITS
from clanhub.utils.errors import BadRequest
from clanhub.web.app import flag, int_param, json_response, read_json, require_staff

def _service(request: web.Request, repos) -> RosterService:
    app = request.app
    return RosterService(repos, app['discord'], app['ladder'], app['settings'], app['tokens'])

async def list_members(request: web.Request) -> web.Response:
    await require_staff(request)
    query = request.query
    async with request.app['open_repositories']() as repos:
        result = await _service(request, repos).list_members(
            page=int_param(query.get('page', 1), 'page'),
            search=query.get('search'),
            status=query.get('status') or None,
            archived=flag(query.get('archived')),
            eligible_only=flag(query.get('eligible')),
        )
    return json_response(result)

async def save_member(request: web.Request) -> web.Response:
    user = await require_staff(request)
    body = await read_json(request)
    async with request.app['open_repositories']() as repos:
        result = await _service(request, repos).save_member(user['id'], body)
    return json_response(result, status=201 if result.get('created') else 200)

async def delete_member(request: web.Request) -> web.Response:
    user = await require_staff(request)
    if not request.query.get('id'):
        raise BadRequest("id is required")
    member_id = int_param(request.query['id'], 'id')
    async with request.app['open_repositories']() as repos:
        result = await _service(request, repos).delete_member(user['id'], member_id)
    return json_response(result)

async def resolve_member(request: web.Request) -> web.Response:
    user = await require_staff(request)
    body = await read_json(request)
    if not body.get('member_row_id'):
        raise BadRequest("member_row_id is required")
    async with request.app['open_repositories']() as repos:
        result = await _service(request, repos).resolve_member(
            user['id'], int_param(body['member_row_id'], 'member_row_id'), body.get('resolve_token')
        )
    return json_response(result)

async def search_guild(request: web.Request) -> web.Response:
    user = await require_staff(request)
    async with request.app['open_repositories']() as repos:
        result = await _service(request, repos).search_guild(user['id'], request.query.get('q'))
    return json_response(result)

async def bulk_resolve(request: web.Request) -> web.Response:
    user = await require_staff(request)
    async with request.app['open_repositories']() as repos:
        result = await _service(request, repos).bulk_resolve(user['id'])
    return json_response(result)

async def sync_discord(request: web.Request) -> web.Response:
    user = await require_staff(request)
    # One sync at a time across all staff
    await request.app['limiter'].enforce('discord_sync', None, RATE_LIMITS['DISCORD_SYNC'])
    async with request.app['open_repositories']() as repos:
        result = await _service(request, repos).sync_discord(user['id'])
    return json_response(result)

async def import_roster(request: web.Request) -> web.Response:
    user = await require_staff(request)
    body = await read_json(request)
    rows = body.get('rows')
    if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
        raise BadRequest("rows must be a list of objects")

    await request.app['limiter'].enforce('roster_import', user['id'], RATE_LIMITS['ROSTER_IMPORT'])
    async with request.app['open_repositories']() as repos:
        result = await _service(request, repos).import_rows(user['id'], rows, body.get('headers'))
    return json_response(result)

def setup(app: web.Application) -> None:
    app.router.add_get('/api/clan-list/members', list_members)
    app.router.add_post('/api/clan-list/member', save_member)
    app.router.add_delete('/api/clan-list/member', delete_member)
    app.router.add_post('/api/clan-list/member/resolve', resolve_member)
    app.router.add_get('/api/guild-members/search', search_guild)
    app.router.add_post('/api/clan-list/bulk-resolve', bulk_resolve)
    app.router.add_post('/api/clan-list/sync-discord', sync_discord)
    app.router.add_post('/api/clan-list/import', import_roster)
