"""Application submission and staff review tooling"""

from aiohttp import web

from clanhub.core.applications import ApplicationService
from clanhub.utils.constants import RATE_LIMITS
from clanhub.utils.errors import BadRequest, Forbidden
from clanhub.web.app import (
    flag, int_param, json_response, read_json, require_guild_roles, require_staff
)

def _service(request: web.Request, repos) -> ApplicationService:
    return ApplicationService(repos, request.app['discord'], request.app['settings'],
                              request.app['ladder'])

async def submit_application(request: web.Request) -> web.Response:
    user, roles = await require_guild_roles(request)
    if roles is None:
        raise Forbidden("You must be in the Discord server")
    body = await read_json(request)

    async with request.app['open_repositories']() as repos:
        result = await _service(request, repos).submit(user, roles, body)
    return json_response(result, status=201)

async def list_applications(request: web.Request) -> web.Response:
    await require_staff(request)
    async with request.app['open_repositories']() as repos:
        result = await _service(request, repos).list_for_staff(
            status=request.query.get('status') or None,
            show_archived=flag(request.query.get('show_archived')),
        )
    return json_response(result)

async def pending_count(request: web.Request) -> web.Response:
    await require_staff(request)
    async with request.app['open_repositories']() as repos:
        result = await _service(request, repos).pending_count()
    return json_response(result)

async def review_application(request: web.Request) -> web.Response:
    user = await require_staff(request)
    body = await read_json(request)
    if not body.get('application_id'):
        raise BadRequest("application_id and action are required")

    async with request.app['open_repositories']() as repos:
        result = await _service(request, repos).review(
            user['id'],
            int_param(body['application_id'], 'application_id'),
            body.get('action'),
            body.get('note'),
        )
    return json_response(result)

async def archive_application(request: web.Request) -> web.Response:
    user = await require_staff(request)
    body = await read_json(request)
    if not body.get('application_id'):
        raise BadRequest("application_id and action (archive|restore) required")

    async with request.app['open_repositories']() as repos:
        result = await _service(request, repos).archive(
            user['id'],
            int_param(body['application_id'], 'application_id'),
            body.get('action'),
            body.get('reason'),
        )
    return json_response(result)

async def archive_all(request: web.Request) -> web.Response:
    user = await require_staff(request)
    await request.app['limiter'].enforce('archive_all', user['id'], RATE_LIMITS['ARCHIVE_ALL'])
    body = await read_json(request)

    async with request.app['open_repositories']() as repos:
        result = await _service(request, repos).archive_all(user['id'], body.get('reason'))
    return json_response(result)

async def add_note(request: web.Request) -> web.Response:
    user = await require_staff(request)
    body = await read_json(request)
    if not body.get('application_id'):
        raise BadRequest("application_id is required")

    async with request.app['open_repositories']() as repos:
        result = await _service(request, repos).add_note(
            user, int_param(body['application_id'], 'application_id'), body.get('note')
        )
    return json_response(result)

def setup(app: web.Application) -> None:
    app.router.add_post('/api/applications', submit_application)
    app.router.add_get('/api/admin/applications', list_applications)
    app.router.add_get('/api/admin/applications/pending-count', pending_count)
    app.router.add_post('/api/admin/review', review_application)
    app.router.add_post('/api/admin/applications/archive', archive_application)
    app.router.add_post('/api/admin/applications/archive-all', archive_all)
    app.router.add_post('/api/admin/applications/notes', add_note)
