import jwt
import pytest

from clanhub.core.tokens import TokenService

USER = {'id': '100000000000000001', 'username': 'mike', 'global_name': 'Mike', 'avatar': 'abc'}


def test_session_round_trip(tokens):
    token = tokens.issue_session(USER)
    assert tokens.read_session(token) == USER


def test_session_rejects_garbage_and_missing(tokens):
    assert tokens.read_session(None) is None
    assert tokens.read_session('not-a-token') is None


def test_expired_session_is_rejected():
    service = TokenService('a-secret', 'b-secret', session_ttl=-10)
    assert service.read_session(service.issue_session(USER)) is None


def test_resolve_token_carries_discord_id(tokens):
    token = tokens.issue_resolve('123456789012345678')
    assert tokens.read_resolve(token) == '123456789012345678'


def test_tokens_do_not_cross_over(tokens):
    session = tokens.issue_session(USER)
    resolve = tokens.issue_resolve('123456789012345678')
    assert tokens.read_resolve(session) is None
    assert tokens.read_session(resolve) is None


def test_resolve_token_requires_purpose(settings, tokens):
    forged = jwt.encode({'did': '123456789012345678', 'purpose': 'other'},
                        settings.resolve_token_secret, algorithm='HS256')
    assert tokens.read_resolve(forged) is None


def test_secrets_must_differ():
    with pytest.raises(ValueError):
        TokenService('same', 'same')
    with pytest.raises(ValueError):
        TokenService('', 'other')
