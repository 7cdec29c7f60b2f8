"""Promotion preview, single-shot run and the promotion queue (staff only)"""

from aiohttp import web

from clanhub.core.promotions import PromotionWorkflow
from clanhub.utils.constants import RATE_LIMITS
from clanhub.utils.errors import BadRequest
from clanhub.web.app import flag, int_param, json_response, read_json, require_staff

def _workflow(request: web.Request, repos) -> PromotionWorkflow:
    app = request.app
    return PromotionWorkflow(repos, app['discord'], app['ladder'], app['settings'])

async def preview(request: web.Request) -> web.Response:
    await require_staff(request)
    async with request.app['open_repositories']() as repos:
        result = await _workflow(request, repos).preview()
    return json_response(result)

async def run_promotions(request: web.Request) -> web.Response:
    user = await require_staff(request)
    body = await read_json(request)
    await request.app['limiter'].enforce('promotion_run', user['id'], RATE_LIMITS['PROMOTION_RUN'])
    async with request.app['open_repositories']() as repos:
        result = await _workflow(request, repos).run(user['id'], force=flag(body.get('force')))
    return json_response(result)

async def force_promote(request: web.Request) -> web.Response:
    user = await require_staff(request)
    body = await read_json(request)
    if not body.get('member_id') or not body.get('rank'):
        raise BadRequest("member_id and rank are required")
    async with request.app['open_repositories']() as repos:
        result = await _workflow(request, repos).force_promote(
            user['id'], int_param(body['member_id'], 'member_id'), body['rank']
        )
    return json_response(result)

async def list_queue(request: web.Request) -> web.Response:
    await require_staff(request)
    async with request.app['open_repositories']() as repos:
        result = await _workflow(request, repos).list_queue()
    return json_response(result)

async def build_queue(request: web.Request) -> web.Response:
    user = await require_staff(request)
    async with request.app['open_repositories']() as repos:
        result = await _workflow(request, repos).build(user['id'])
    return json_response(result)

async def confirm_queue(request: web.Request) -> web.Response:
    user = await require_staff(request)
    body = await read_json(request)
    async with request.app['open_repositories']() as repos:
        result = await _workflow(request, repos).confirm(
            user['id'], force=flag(body.get('force')), dry_run=flag(body.get('dry_run'))
        )
    return json_response(result)

async def process_queue(request: web.Request) -> web.Response:
    user = await require_staff(request)
    async with request.app['open_repositories']() as repos:
        result = await _workflow(request, repos).process(user['id'])
    return json_response(result)

async def clear_queue(request: web.Request) -> web.Response:
    user = await require_staff(request)
    async with request.app['open_repositories']() as repos:
        result = await _workflow(request, repos).clear(user['id'])
    return json_response(result)

async def remove_queue_item(request: web.Request) -> web.Response:
    user = await require_staff(request)
    if not request.query.get('id'):
        raise BadRequest("id is required")
    async with request.app['open_repositories']() as repos:
        result = await _workflow(request, repos).remove_item(
            user['id'], int_param(request.query['id'], 'id')
        )
    return json_response(result)

def setup(app: web.Application) -> None:
    app.router.add_get('/api/promotions/preview', preview)
    app.router.add_post('/api/promotions/run', run_promotions)
    app.router.add_post('/api/promotions/force', force_promote)
    app.router.add_get('/api/promotion-queue', list_queue)
    app.router.add_post('/api/promotion-queue/build', build_queue)
    app.router.add_post('/api/promotion-queue/confirm', confirm_queue)
    app.router.add_post('/api/promotion-queue/process', process_queue)
    app.router.add_post('/api/promotion-queue/clear', clear_queue)
    app.router.add_delete('/api/promotion-queue/item', remove_queue_item)
