"""Authorization of HTTP requests."""

from __future__ import annotations

import abc
from typing import Mapping, Optional


class Authorizer(abc.ABC):
    """Decides whether an HTTP request may be served."""

    @abc.abstractmethod
    def is_authorized(self, headers: Mapping[str, str]) -> bool:
        """True if a request with these headers is allowed."""


class AlwaysAllowAuthorizer(Authorizer):
    """An authorizer that allows every request."""

    def is_authorized(self, headers: Mapping[str, str]) -> bool:
        return True


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def _is_visible_ascii(value: str) -> bool:
    return all(ch == "\t" or " " <= ch <= "~" for ch in value)


class BasicAuthAuthorizer(Authorizer):
    """Allows requests whose Authorization header matches, ignoring case."""

    def __init__(self, expected_auth: str) -> None:
        self.expected_auth = expected_auth

    def is_authorized(self, headers: Mapping[str, str]) -> bool:
        actual = _header(headers, "Authorization")
        if actual is None or not _is_visible_ascii(actual):
            return False
        return actual.lower() == self.expected_auth


def parse_auth(auth: Optional[str]) -> Authorizer:
    """Build an authorizer from a setting such as 'always' or 'basic:<credentials>'."""
    if auth is None:
        return AlwaysAllowAuthorizer()
    scheme, sep, param = auth.partition(":")
    if not sep:
        if auth == "always":
            return AlwaysAllowAuthorizer()
        raise ValueError(f"invalid HTTP auth config: {auth}")
    if scheme == "basic":
        return BasicAuthAuthorizer(f"Basic {param}".lower())
    raise ValueError(f"unsupported HTTP auth scheme: {scheme}")