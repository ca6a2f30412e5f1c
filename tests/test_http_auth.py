import pytest

from sqld.http_auth import (
    AlwaysAllowAuthorizer,
    BasicAuthAuthorizer,
    parse_auth,
)


def test_no_config_allows_everything():
    authorizer = parse_auth(None)
    assert isinstance(authorizer, AlwaysAllowAuthorizer)
    assert authorizer.is_authorized({}) is True


def test_always_allows_everything():
    authorizer = parse_auth("always")
    assert authorizer.is_authorized({"Authorization": "Basic token"}) is True
    assert authorizer.is_authorized({}) is True


def test_basic_expected_value_is_lowercased():
    authorizer = parse_auth("basic:TOKEN")
    assert isinstance(authorizer, BasicAuthAuthorizer)
    assert authorizer.expected_auth == "basic token"


def test_basic_accepts_matching_header():
    authorizer = parse_auth("basic:token")
    assert authorizer.is_authorized({"Authorization": "Basic token"}) is True


def test_basic_comparison_ignores_case_of_value_and_name():
    authorizer = parse_auth("basic:token")
    assert authorizer.is_authorized({"authorization": "BASIC TOKEN"}) is True


def test_basic_rejects_wrong_credentials():
    authorizer = parse_auth("basic:token")
    assert authorizer.is_authorized({"Authorization": "Basic secret"}) is False


def test_basic_rejects_missing_header():
    authorizer = parse_auth("basic:token")
    assert authorizer.is_authorized({"Content-Type": "text/plain"}) is False


def test_basic_rejects_non_ascii_header():
    authorizer = BasicAuthAuthorizer("basic tökén")
    assert authorizer.is_authorized({"Authorization": "Basic tökén"}) is False


def test_unsupported_scheme():
    with pytest.raises(ValueError, match="unsupported HTTP auth scheme: bearer"):
        parse_auth("bearer:token")


def test_invalid_config():
    with pytest.raises(ValueError, match="invalid HTTP auth config: nonsense"):
        parse_auth("nonsense")


def test_always_with_parameter_is_an_unsupported_scheme():
    with pytest.raises(ValueError, match="unsupported HTTP auth scheme: always"):
        parse_auth("always:token")