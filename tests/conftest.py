"""Shared test fixtures."""

from __future__ import annotations

import os

import pytest


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path):
    """Drop queryloop settings and credentials inherited from the developer shell."""
    for name in list(os.environ):
        if name.startswith("QUERYLOOP_") or name == "YQL_TOKEN":
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("QUERYLOOP_WORKDIR", str(tmp_path / "workdir"))


@pytest.fixture()
def query_file(tmp_path):
    """Write a query file and return its path."""

    def _write(name: str, text: str):
        path = tmp_path / name
        path.write_text(text, "utf-8")
        return path

    return _write
