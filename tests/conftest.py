"""Shared fixtures for arxiv_linker tests."""

from __future__ import annotations

import logging
from collections.abc import Callable
from urllib.parse import parse_qs, urlparse

import pytest

from arxiv_linker import (
    FetchKind,
    LocalRecord,
    ReportInjector,
    Transport,
    TransientFetchError,
)


class FakeTransport(Transport):
    """Transport that answers from a handler and records every call."""

    def __init__(self, handler: Callable[[str, FetchKind], str] | None = None):
        self.handler = handler
        self.calls: list[tuple[str, FetchKind]] = []
        self.closed = False

    async def fetch(self, url: str, kind: FetchKind) -> str:
        self.calls.append((url, kind))
        if self.handler is None:
            raise TransientFetchError("FakeTransport has no handler")
        return self.handler(url, kind)

    def calls_for(self, kind: FetchKind) -> list[str]:
        return [url for url, k in self.calls if k is kind]

    async def close(self) -> None:
        self.closed = True


class FakeClock:
    """Manually advanced clock (seconds)."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def query_param(url: str, name: str) -> str:
    """Decoded value of a query parameter of ``url``."""
    return parse_qs(urlparse(url).query)[name][0]


def atom_feed(entries: list[tuple[str, str]]) -> str:
    """Minimal arXiv API Atom feed for (id, title) pairs."""
    body = "".join(f"<entry><id>{eid}</id><title>{title}</title></entry>" for eid, title in entries)
    return f'<?xml version="1.0" encoding="UTF-8"?><feed xmlns="http://www.w3.org/2005/Atom">{body}</feed>'


def abs_page(title: str, authors: list[str]) -> str:
    """Minimal arXiv abstract page."""
    links = ", ".join(f'<a href="https://arxiv.org/a/x_{i}">{name}</a>' for i, name in enumerate(authors))
    return (
        "<html><body>"
        f'<h1 class="title mathjax"><span class="descriptor">Title:</span>{title}</h1>'
        f'<div class="authors"><span class="descriptor">Authors:</span>{links}</div>'
        "</body></html>"
    )


@pytest.fixture
def logger():
    """Create a test logger."""
    return logging.getLogger("test")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_transport():
    """Factory fixture for fake transports."""

    def _create(handler: Callable[[str, FetchKind], str] | None = None) -> FakeTransport:
        return FakeTransport(handler)

    return _create


@pytest.fixture
def injector(logger):
    return ReportInjector(logger=logger)


@pytest.fixture
def make_record():
    """Factory fixture for local records; the anchor defaults to the catalog number."""

    def _make_record(**kwargs) -> LocalRecord:
        local_id = kwargs.pop("local_id", "MR1234567")
        record = {
            "title": "Sparse recovery via L1 minimization",
            "authors": ("Jane Doe", "John Smith"),
            "local_id": local_id,
            "anchor": local_id,
        }
        record.update(kwargs)
        return LocalRecord(**record)

    return _make_record
