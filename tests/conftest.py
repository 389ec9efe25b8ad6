"""Shared pytest fixtures."""

import pytest
from httpx import AsyncClient, ASGITransport

from claude_analytics.config import Settings
from claude_analytics.services import DashboardService

from factories import FakeLister, user_entry, write_conversation


@pytest.fixture
def fake_lister():
    return FakeLister()


@pytest.fixture
def claude_root(tmp_path):
    """A log root with one project holding one conversation (single user message)."""
    root = tmp_path / "claude"
    write_conversation(
        root / "projects" / "-home-alice-myapp" / "conv-1.jsonl",
        [user_entry("Fix the login bug", "2025-07-01T12:00:00Z", cwd="/home/alice/myapp")],
    )
    return root


@pytest.fixture
def make_settings(tmp_path):
    """Factory for isolated settings (no watcher, no log file, large memory threshold)."""

    def factory(**overrides) -> Settings:
        values = {
            "claude_dir": str(tmp_path / "claude"),
            "enable_file_watcher": False,
            "log_file": "",
            "log_level": "WARNING",
            "health_memory_threshold_mb": 100000,
        }
        values.update(overrides)
        return Settings(**values)

    return factory


@pytest.fixture
async def dashboard(claude_root, make_settings, fake_lister):
    """A started dashboard over ``claude_root``."""
    service = DashboardService(make_settings(claude_dir=str(claude_root)), process_lister=fake_lister)
    await service.start()
    yield service
    await service.stop()


@pytest.fixture
async def client(dashboard):
    """Async HTTP client bound to an app serving ``dashboard``."""
    from claude_analytics.main import create_app

    app = create_app(dashboard)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
