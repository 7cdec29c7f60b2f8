"""Discord OAuth2 login and logout"""

import logging
import secrets

from aiohttp import web

from clanhub.utils.constants import TOKEN_SETTINGS
from clanhub.web.app import json_response

logger = logging.getLogger('ClanHub')

STATE_COOKIE = 'oauth_state'
STATE_TTL = 600

def _redirect(location: str) -> web.Response:
    return web.Response(status=302, headers={'Location': location})

def _cookie_options(settings, max_age: int) -> dict:
    return {
        'max_age': max_age,
        'httponly': True,
        'secure': settings.is_production,
        'samesite': 'Lax',
        'path': '/',
    }

async def auth_start(request: web.Request) -> web.Response:
    state = secrets.token_urlsafe(24)
    response = _redirect(request.app['discord'].authorize_url(state))
    response.set_cookie(STATE_COOKIE, state, **_cookie_options(request.app['settings'], STATE_TTL))
    return response

async def auth_callback(request: web.Request) -> web.Response:
    settings = request.app['settings']
    discord = request.app['discord']

    code = request.query.get('code')
    state = request.query.get('state')
    expected = request.cookies.get(STATE_COOKIE)
    if not code or not state or not expected or not secrets.compare_digest(state, expected):
        logger.warning("OAuth callback with missing or mismatched state")
        raise web.HTTPFound('/?error=invalid_state')

    token = await discord.exchange_code(code)
    user = await discord.fetch_current_user(token['access_token']) if token else None
    if not user:
        raise web.HTTPFound('/?error=auth_failed')

    session = request.app['tokens'].issue_session(user)
    response = _redirect('/dashboard')
    response.set_cookie(
        TOKEN_SETTINGS['SESSION_COOKIE'], session,
        **_cookie_options(settings, TOKEN_SETTINGS['SESSION_TTL'])
    )
    response.del_cookie(STATE_COOKIE, path='/')
    logger.info(f"User {user.get('id')} signed in")
    return response

async def logout(request: web.Request) -> web.Response:
    response = json_response({'ok': True})
    response.del_cookie(TOKEN_SETTINGS['SESSION_COOKIE'], path='/')
    return response

def setup(app: web.Application) -> None:
    app.router.add_get('/auth/start', auth_start)
    app.router.add_get('/auth/callback', auth_callback)
    app.router.add_post('/auth/logout', logout)
