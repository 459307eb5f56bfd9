"""
Tests for the command line entry point, run against a stubbed transport.
"""

import logging

import pytest
from click.testing import CliRunner

from core.api_client import ApiClient
from core.settings_manager import SettingsManager
from main import cli

from samples import ANILIST_PAGE, ANILIST_VIEWER, anilist_entry, anilist_library, http


@pytest.fixture
def settings_path(tmp_path):
    path = str(tmp_path / "anisync.ini")
    settings = SettingsManager(path)
    settings.set_global_setting("library_path", str(tmp_path / "library"))
    settings.set_global_setting("retry/max_attempts", 1)
    settings.sync()
    return path


@pytest.fixture
def served(monkeypatch):
    """Replaces the network with a list of canned responses."""
    calls = []
    responses = []

    def execute(self, request, timeout=None):
        calls.append(request)
        return responses.pop(0)

    monkeypatch.setattr(ApiClient, "execute", execute)
    return calls, responses


@pytest.fixture
def run_cli(qapp, memory_keyring, settings_path):
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level

    def invoke(*args):
        return CliRunner().invoke(cli, ["--settings", settings_path, *args])

    yield invoke
    root.handlers[:] = handlers
    root.setLevel(level)


class TestCli:
    """Commands wired through the full application context."""

    def test_search_lists_results(self, run_cli, served):
        calls, responses = served
        responses.append(http(200, ANILIST_PAGE))

        result = run_cli("search", "fullmetal", "--service", "anilist")

        assert result.exit_code == 0, result.output
        assert "5114" in result.output
        assert "Hagane no Renkinjutsushi" in result.output
        assert "64 eps" in result.output
        assert "--page 2" in result.output
        assert len(calls) == 1

    def test_service_errors_exit_non_zero(self, run_cli, served):
        _, responses = served
        responses.append(http(503, b"Service Unavailable"))

        result = run_cli("search", "fullmetal")

        assert result.exit_code == 1
        assert "Transport" in result.output

    def test_unknown_service_is_a_usage_error(self, run_cli, served):
        result = run_cli("search", "fullmetal", "--service", "crunchyroll")
        assert result.exit_code == 2

    def test_login_then_sync(self, run_cli, served, memory_keyring, settings_path, tmp_path):
        calls, responses = served
        responses.append(http(200, ANILIST_VIEWER))

        result = run_cli("login", "--service", "anilist", "--token", "anilist-token")

        assert result.exit_code == 0, result.output
        assert "Logged in to AniList as yuki" in result.output
        assert ("AniSync", "anilist_credential") in memory_keyring.passwords
        assert SettingsManager(settings_path).get_service_setting("anilist", "username") == "yuki"

        responses.append(http(200, anilist_library(anilist_entry())))
        result = run_cli("sync")

        assert result.exit_code == 0, result.output
        assert "1 remote entries, 1 in the local library" in result.output
        assert calls[-1].headers["Authorization"] == "Bearer anilist-token"
        assert (tmp_path / "library" / "anilist.json").exists()

    def test_sync_without_login_fails(self, run_cli, served):
        _, responses = served

        result = run_cli("sync", "--service", "anilist")

        assert result.exit_code == 1
        assert "requires authentication" in result.output

    def test_logout(self, run_cli, served, memory_keyring):
        memory_keyring.set_password("AniSync", "anilist_credential", '{"access_token": "anilist-token"}')

        result = run_cli("logout", "--service", "anilist")

        assert result.exit_code == 0, result.output
        assert "Logged out of AniList" in result.output
        assert memory_keyring.passwords == {}
