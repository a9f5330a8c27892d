import os
import sys
from datetime import datetime

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import vpn_tester  # noqa: E402
from vpn_tester import RunConfig, make_context  # noqa: E402


@pytest.fixture
def config(tmp_path):
    """Config with every step enabled, writing under tmp_path."""
    return RunConfig(outdir=tmp_path, install_deps=False, show_progress=False)


@pytest.fixture
def ctx(config):
    """Run context with its directory already created."""
    context = make_context(config, now=datetime(2026, 1, 2, 3, 4, 5))
    context.outdir.mkdir(parents=True)
    return context


@pytest.fixture
def as_root(monkeypatch):
    monkeypatch.setattr(vpn_tester.os, 'geteuid', lambda: 0)


@pytest.fixture
def tools(monkeypatch):
    """Call with the tool names that should be found on PATH; everything else is missing."""
    def install(*available):
        monkeypatch.setattr(
            vpn_tester.shutil, 'which',
            lambda name: f'/usr/bin/{name}' if name in available else None,
        )
    return install
