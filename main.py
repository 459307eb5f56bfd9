#!/usr/bin/env python3
"""
AniSync - anime library sync across tracking services.
Headless entry point: wires the core services together and runs one
login, sync or search from the command line.
"""

import logging
import os
import sys
from typing import Callable, Optional

import click
from PyQt6.QtCore import QCoreApplication, QStandardPaths, QTimer

import services
from core import (
    setup_logging,
    SettingsManager,
    SecureStorage,
    ApiClient,
    ServiceRegistry,
    EventBus,
    JsonLibraryStore,
    RetryPolicy,
    SyncOrchestrator,
    ThreadDispatcher,
)
from core.errors import RequestBuildError, SyncError
from core.models import Response
from core.settings_manager import APP_NAME, APP_ORGANIZATION

logger = logging.getLogger("anisync")

IDLE_POLL_MS = 50


class AppContext:
    """
    The core services of one command invocation.
    """
    def __init__(self, settings_path: Optional[str] = None):
        self.app = QCoreApplication.instance() or QCoreApplication(sys.argv[:1])
        self.app.setApplicationName(APP_NAME)
        self.app.setOrganizationName(APP_ORGANIZATION)

        self.settings = SettingsManager(settings_path)
        if not self.settings.has_any_settings():
            logger.info("No settings stored yet, using defaults")
        self.secure_storage = SecureStorage()
        self.api_client = ApiClient(timeout=self.settings.get_global_setting("request_timeout"))
        self.event_bus = EventBus()

        self.registry = ServiceRegistry(self.settings)
        self.registry.discover_services(os.path.dirname(services.__file__))

        self.dispatcher = ThreadDispatcher(RetryPolicy.from_settings(self.settings))
        self.orchestrator = SyncOrchestrator(
            self.registry.get_all_services(),
            self.api_client,
            dispatcher=self.dispatcher,
            event_bus=self.event_bus,
            secure_storage=self.secure_storage,
            library_store=JsonLibraryStore(self._library_path()),
            active_service=self._initial_service(),
        )

    def _library_path(self) -> str:
        path = self.settings.get_global_setting("library_path", "")
        if not path:
            path = os.path.join(
                QStandardPaths.writableLocation(QStandardPaths.StandardLocation.AppDataLocation),
                "library",
            )
        return path

    def _initial_service(self) -> Optional[str]:
        name = self.settings.get_global_setting("active_service")
        if self.registry.get_service_or_none(name) is None:
            return None
        return name

    def use_service(self, name: Optional[str]):
        if not name:
            return
        try:
            service = self.registry.get_service(name)
        except SyncError as e:
            raise click.BadParameter(str(e), param_hint="--service") from e
        self.orchestrator.set_active_service(service.get_name())
        self.settings.set_global_setting("active_service", service.get_name())

    def run(self, start: Callable[[Callable[[Response], None]], object]) -> Response:
        """
        Starts a request inside the event loop and runs the loop until the
        request and everything it triggered (pushes, renewals) have finished.
        """
        outcome = {}

        def finished(response: Response):
            outcome["response"] = response

        def begin():
            try:
                start(finished)
            except RequestBuildError as e:
                outcome["error"] = e

        def quit_when_idle():
            if outcome and self.orchestrator.open_requests == 0:
                self.app.quit()

        timer = QTimer()
        timer.timeout.connect(quit_when_idle)
        timer.start(IDLE_POLL_MS)
        QTimer.singleShot(0, begin)
        self.app.exec()
        timer.stop()

        if "error" in outcome:
            raise click.UsageError(str(outcome["error"]))
        return outcome["response"]

    def close(self):
        self.orchestrator.shutdown()
        self.api_client.close()
        self.settings.sync()


def _fail_on_error(response: Response):
    if not response.ok:
        raise click.ClickException(str(response.error))


@click.group()
@click.option("--settings", "settings_path", type=click.Path(dir_okay=False), default=None,
              help="Use an INI settings file instead of the platform store")
@click.option("--verbose", "-v", is_flag=True, help="Log debug output")
@click.pass_context
def cli(ctx: click.Context, settings_path: Optional[str], verbose: bool):
    """Keep an anime library in sync with AniList, Kitsu or MyAnimeList."""
    setup_logging(level=logging.DEBUG if verbose else logging.INFO)
    app_context = AppContext(settings_path)
    ctx.obj = app_context
    ctx.call_on_close(app_context.close)


@cli.command()
@click.option("--service", "service_name", default=None, help="Service to log in to")
@click.option("--token", default=None, help="Access token (AniList)")
@click.option("--expires-in", type=int, default=None, help="Token lifetime in seconds (AniList)")
@click.option("--username", default=None, help="Account name (Kitsu)")
@click.option("--password", default=None, hide_input=True, help="Account password (Kitsu)")
@click.option("--code", default=None, help="Authorization code (MyAnimeList)")
@click.option("--verifier", default=None, help="PKCE code verifier (MyAnimeList)")
@click.pass_obj
def login(app_context: AppContext, service_name, token, expires_in, username, password, code, verifier):
    """Authenticate with a service and store the credential."""
    app_context.use_service(service_name)
    parameters = {}
    if token:
        parameters["access_token"] = token
        if expires_in:
            parameters["expires_in"] = expires_in
    if username:
        if not password:
            password = click.prompt("Password", hide_input=True)
        parameters["username"] = username
        parameters["password"] = password
    if code:
        parameters["code"] = code
        parameters["code_verifier"] = verifier

    orchestrator = app_context.orchestrator
    response = app_context.run(lambda done: orchestrator.authenticate(done, **parameters))
    _fail_on_error(response)

    user = response.payload
    name = getattr(user, "name", "") or username or ""
    if name:
        app_context.settings.set_service_setting(orchestrator.active_service, "username", name)
    click.echo(f"Logged in to {orchestrator.session.service.get_display_name()} as {name or 'unknown user'}")


@cli.command()
@click.option("--service", "service_name", default=None, help="Service to log out of")
@click.pass_obj
def logout(app_context: AppContext, service_name):
    """Discard the stored credential."""
    app_context.use_service(service_name)
    app_context.orchestrator.logout()
    click.echo(f"Logged out of {app_context.orchestrator.session.service.get_display_name()}")


@cli.command()
@click.option("--service", "service_name", default=None, help="Service to sync with")
@click.pass_obj
def sync(app_context: AppContext, service_name):
    """Fetch the remote library and push local changes."""
    app_context.use_service(service_name)
    orchestrator = app_context.orchestrator
    response = app_context.run(lambda done: orchestrator.refresh_library(done))
    _fail_on_error(response)

    library = orchestrator.library
    click.echo(f"{len(response.payload or [])} remote entries, {len(library)} in the local library")
    if library.pending:
        click.echo(f"{len(library.pending)} entries still waiting to be pushed")


@cli.command()
@click.argument("query")
@click.option("--service", "service_name", default=None, help="Service to search")
@click.option("--page", type=int, default=1, show_default=True)
@click.pass_obj
def search(app_context: AppContext, query, service_name, page):
    """Search titles by name."""
    app_context.use_service(service_name)
    orchestrator = app_context.orchestrator
    response = app_context.run(lambda done: orchestrator.search_title(query, done, page=page))
    _fail_on_error(response)

    for media in response.payload or []:
        details = ", ".join(str(d) for d in (media.media_type, media.season) if d)
        episodes = f"{media.episode_count} eps" if media.episode_count else "? eps"
        click.echo(f"{media.id:>8}  {media.title}  [{episodes}{', ' + details if details else ''}]")
    if response.has_next_page:
        click.echo(f"More results: --page {page + 1}")


def main():
    """
    Application entry point.
    """
    cli(prog_name="anisync")


if __name__ == "__main__":
    main()
