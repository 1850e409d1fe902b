import logging

import pytest

from chanrelay.auth import (
    AlwaysFailAuthProvider,
    AuthProvider,
    AuthResult,
    FixedPasswordAuthProvider,
    LoggingAuthProvider,
    get_auth_provider,
    set_auth_provider,
)


@pytest.fixture(autouse=True)
def _reset_provider():
    set_auth_provider(None)
    yield
    set_auth_provider(None)


def test_base_provider_is_abstract():
    with pytest.raises(TypeError):
        AuthProvider()


def test_logging_provider_without_logger_succeeds():
    provider = LoggingAuthProvider()
    assert provider.do_auth(3, "pit", "lt") is AuthResult.SUCCESSFUL


def test_logging_provider_logs_attempt(caplog):
    logger = logging.getLogger("chanrelay.test.auth")
    provider = LoggingAuthProvider(logger=logger, msg="do auth")
    with caplog.at_level(logging.INFO, logger="chanrelay.test.auth"):
        result = provider.do_auth(7, "pit", "lt")
    assert result is AuthResult.SUCCESSFUL
    assert len(caplog.records) == 1
    record = caplog.records[0]
    assert record.getMessage() == "do auth"
    assert record.conn_id == 7
    assert record.pit == "pit"
    assert record.lt == "lt"


def test_always_fail_provider_rejects():
    provider = AlwaysFailAuthProvider()
    assert provider.do_auth(1, "pit", "lt") is AuthResult.INVALID_PIT


def test_fixed_password_accepts_matching_token():
    password = "password"
    provider = FixedPasswordAuthProvider(password=password)
    assert provider.do_auth(1, "pit", password) is AuthResult.SUCCESSFUL


def test_fixed_password_rejects_other_token():
    password = "password"
    provider = FixedPasswordAuthProvider(password=password)
    wrong_token = "token"
    assert provider.do_auth(1, "pit", wrong_token) is AuthResult.INVALID_LT


def test_provider_defaults_to_none():
    assert get_auth_provider() is None


def test_set_and_get_provider():
    provider = AlwaysFailAuthProvider()
    set_auth_provider(provider)
    assert get_auth_provider() is provider
    set_auth_provider(None)
    assert get_auth_provider() is None