"""Main CLI interface for the Cloudron client."""

import asyncio
import json
import sys
import webbrowser
from pathlib import Path
from typing import Any, Coroutine, Dict, List, Optional, Tuple

import click
import httpx
from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm, Prompt
from rich.table import Table

from cloudron import __version__
from cloudron.api import (
    APIError,
    AppNotFoundError,
    Application,
    CLIModeDisabledError,
    CloudronError,
    OperationError,
    Session,
)
from cloudron.api.apps import (
    ACTION_MESSAGES,
    CONFIGURE,
    CONTAINER_CMD_ERROR,
    UPDATE,
    AppManager,
    choose_install_action,
    format_log_line,
    install_payload,
)
from cloudron.api.client import APIClient, detect_api_endpoint, login as request_token
from cloudron.core.exec import ExecSession
from cloudron.core.poller import ProgressReporter
from cloudron.core.settings import SettingsError, settings
from cloudron.utils.config import Config, ConfigError
from cloudron.utils.log import configure_logging
from cloudron.utils.manifest import (
    MANIFEST_FILE,
    ManifestError,
    default_port_bindings,
    encode_icon,
    load_manifest,
    locate_manifest,
    ports_changed,
)
from cloudron.utils.transfer import TransferError, pull as pull_files, push as push_files


console = Console()

NO_APP_FOUND = (
    "Cannot find a matching app.\n"
    "Apps installed from the store are not picked automatically."
)
MAX_LOGIN_ATTEMPTS = 3

# Errors a command reports as a red one-liner
CLI_ERRORS = (CloudronError, ConfigError, ManifestError, TransferError, httpx.HTTPError)


def run_command(ctx: click.Context, coro: Coroutine[Any, Any, Any]) -> None:
    """Run a command body and turn failures into a message and exit code 1."""
    debug = ctx.obj.get("debug", False)
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(1)
    except CLI_ERRORS as e:
        console.print(f"[red]✗ {escape(str(e))}[/red]")
        if debug:
            console.print_exception()
        sys.exit(1)


def get_session(ctx: click.Context) -> Session:
    return Session.from_config(ctx.obj["config"])


def open_client(ctx: click.Context, session: Session) -> APIClient:
    return APIClient(session, transport=ctx.obj.get("transport"))


def new_manager(client: APIClient) -> AppManager:
    return AppManager(client, reporter=ProgressReporter(console))


def choose_from_list(title: str, rows: List[Tuple[str, ...]], columns: Tuple[str, ...]) -> int:
    """Show a numbered table and return the index the user picked."""
    table = Table(show_header=True, header_style="bold blue")
    table.add_column("#", style="dim", width=3)
    for column in columns:
        table.add_column(column)
    for i, row in enumerate(rows, 1):
        table.add_row(str(i), *row)

    console.print(f"\n[bold]{title}[/bold]")
    console.print(table)

    choice = Prompt.ask(
        "Enter number",
        choices=[str(i) for i in range(1, len(rows) + 1)],
        show_choices=False,
        console=console,
    )
    return int(choice) - 1


async def resolve_app(manager: AppManager, app_id: Optional[str]) -> Tuple[Optional[Application], Optional[Path]]:
    """Find the app a command acts on, and the local manifest if there is one.

    Without an explicit id the app is chosen among the locally installed apps
    whose manifest id matches CloudronManifest.json.
    """
    manifest_path = locate_manifest()

    if app_id:
        return await manager.get_app(app_id), manifest_path

    if manifest_path is None:
        raise ManifestError(f"No {MANIFEST_FILE} found")

    manifest = load_manifest(manifest_path)
    candidates = await manager.find_local_apps(manifest["id"])
    if not candidates:
        return None, manifest_path
    if len(candidates) == 1:
        return candidates[0], manifest_path

    index = choose_from_list(
        f"Available apps of type {escape(manifest['id'])}:",
        [(app.location, app.id) for app in candidates],
        ("Location", "Id"),
    )
    return candidates[index], manifest_path


async def require_app(manager: AppManager, app_id: Optional[str]) -> Application:
    app, _ = await resolve_app(manager, app_id)
    if app is None:
        raise AppNotFoundError(NO_APP_FOUND)
    return app


def query_port_bindings(app: Optional[Application], manifest: Dict[str, Any]) -> Dict[str, Any]:
    """Ask for a host port per declared TCP port. Anything but a number clears it."""
    bindings: Dict[str, Any] = {}
    for env, spec in (manifest.get("tcpPorts") or {}).items():
        spec = spec or {}
        current = (app.port_bindings if app else {}).get(env)
        default = current or spec.get("defaultValue") or ""
        answer = Prompt.ask(
            f"{spec.get('description', env)} (default {env}={default}. \"x\" to disable)",
            default="",
            show_default=False,
            console=console,
        )
        if answer == "":
            bindings[env] = default
        elif answer.isdigit():
            bindings[env] = int(answer)
        else:
            console.print(f"[dim]Cleared {env}[/dim]")
    return bindings


def print_log_line(entry: Dict[str, Any]) -> None:
    console.print(format_log_line(entry), markup=False, highlight=False, soft_wrap=True)


@click.group()
@click.version_option(version=__version__)
@click.option("--debug/--no-debug", default=settings.debug, help="Enable debug mode")
@click.pass_context
def cli(ctx: click.Context, debug: bool) -> None:
    """Cloudron - manage apps on your Cloudron from the command line.

    Log in once, then install, update, inspect and debug apps, run commands
    inside them and copy files in and out.
    """
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    configure_logging(debug)

    try:
        settings.check()
    except SettingsError as e:
        console.print(f"[red]✗ {escape(str(e))}[/red]")
        sys.exit(1)

    if "config" not in ctx.obj:
        try:
            ctx.obj["config"] = Config(settings.config_file)
        except ConfigError as e:
            console.print(f"[red]✗ {escape(str(e))}[/red]")
            sys.exit(1)

    if debug:
        console.print("[dim]Debug mode enabled[/dim]")


@cli.command()
@click.argument("cloudron", required=False)
@click.option("--username", help="Username")
@click.option("--password", help="Password")
@click.pass_context
def login(ctx: click.Context, cloudron: Optional[str], username: Optional[str], password: Optional[str]) -> None:
    """Log into a Cloudron.

    CLOUDRON is the domain of the Cloudron, e.g. example.com. Defaults to
    the Cloudron of the last login.
    """
    config = ctx.obj["config"]
    if not cloudron:
        cloudron = config.cloudron() or Prompt.ask("Cloudron Hostname", console=console)

    run_command(ctx, _login_async(ctx, cloudron, username, password))


async def _login_async(ctx: click.Context, cloudron: str, username: Optional[str], password: Optional[str]) -> None:
    config = ctx.obj["config"]

    detected = await detect_api_endpoint(cloudron, transport=ctx.obj.get("transport"))
    config.unset("token")
    config.set({"cloudron": detected.cloudron, "apiEndpoint": detected.api_endpoint})
    session = get_session(ctx)

    console.print(f"\nEnter credentials for [bold]{escape(session.cloudron)}[/bold]:")
    for attempt in range(1, MAX_LOGIN_ATTEMPTS + 1):
        username = username or Prompt.ask("Username", console=console)
        password = password or Prompt.ask("Password", password=True, console=console)
        try:
            token = await request_token(session, username, password, transport=ctx.obj.get("transport"))
        except CLIModeDisabledError:
            raise
        except APIError as e:
            if attempt == MAX_LOGIN_ATTEMPTS:
                raise
            console.print(f"[red]{escape(e.message)}[/red]")
            username = password = None
            continue

        config.set("token", token)
        console.print("[green]✓ Login successful.[/green]")
        return


@cli.command()
@click.pass_context
def logout(ctx: click.Context) -> None:
    """Log out and forget the stored credentials."""
    try:
        ctx.obj["config"].clear()
    except ConfigError as e:
        console.print(f"[red]✗ {escape(str(e))}[/red]")
        sys.exit(1)
    console.print("Logged out.")


@cli.command(name="open")
@click.option("--app", "app_id", help="App id")
@click.pass_context
def open_app(ctx: click.Context, app_id: Optional[str]) -> None:
    """Open the app in the default browser."""
    run_command(ctx, _open_async(ctx, app_id))


async def _open_async(ctx: click.Context, app_id: Optional[str]) -> None:
    session = get_session(ctx).require_login()
    async with open_client(ctx, session) as client:
        app = await require_app(new_manager(client), app_id)
    webbrowser.open(f"https://{session.app_domain(app.location)}")


@cli.command(name="list")
@click.pass_context
def list_apps(ctx: click.Context) -> None:
    """List installed apps."""
    run_command(ctx, _list_async(ctx))


async def _list_async(ctx: click.Context) -> None:
    session = get_session(ctx).require_login()
    async with open_client(ctx, session) as client:
        apps = await new_manager(client).list_apps()

    if not apps:
        console.print("[yellow]No apps installed.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Id", style="dim")
    table.add_column("Title", style="cyan")
    table.add_column("Location", style="green")
    table.add_column("Version")
    table.add_column("Manifest Id", style="magenta")
    table.add_column("Install state")
    table.add_column("Run state")

    for app in apps:
        table.add_row(
            app.id,
            app.title,
            app.location,
            app.version,
            app.manifest_id if app.app_store_id else f"{app.manifest_id} (local)",
            app.installation_state,
            app.run_state,
        )

    console.print()
    console.print(table)


@cli.command()
@click.option("--app", "app_id", help="App id")
@click.pass_context
def status(ctx: click.Context, app_id: Optional[str]) -> None:
    """Show the state of an app."""
    run_command(ctx, _status_async(ctx, app_id))


async def _status_async(ctx: click.Context, app_id: Optional[str]) -> None:
    session = get_session(ctx).require_login()
    async with open_client(ctx, session) as client:
        app = await require_app(new_manager(client), app_id)

    manifest_id = app.manifest_id if app.app_store_id else f"{app.manifest_id} (local)"
    console.print(f"Id: {app.id}")
    console.print(f"Location: {escape(app.location)}")
    console.print(f"Version: {escape(app.version)}")
    console.print(f"Manifest Id: {escape(manifest_id)}")
    console.print(f"Install state: {app.installation_state}")
    console.print(f"Run state: {app.run_state}")


@cli.command()
@click.option("--pretty", is_flag=True, help="Pretty print")
@click.pass_context
def inspect(ctx: click.Context, pretty: bool) -> None:
    """Dump the login context and all apps as JSON."""
    run_command(ctx, _inspect_async(ctx, pretty))


async def _inspect_async(ctx: click.Context, pretty: bool) -> None:
    session = get_session(ctx).require_login()
    async with open_client(ctx, session) as client:
        apps = await new_manager(client).list_apps_raw()

    click.echo(json.dumps({
        "cloudron": session.cloudron,
        "apiEndpoint": session.api_endpoint,
        "appStoreOrigin": session.app_store_origin,
        "apps": apps,
    }, indent=4 if pretty else None))


@cli.command()
@click.option("--app", "app_id", help="App id")
@click.option("--appstore-id", help="Install an app from the store, as id[@version]")
@click.option("--location", help="Subdomain location")
@click.option("--configure", is_flag=True, help="Ask for all settings, including port bindings")
@click.option("--wait", is_flag=True, help="Wait for the health check to succeed")
@click.option("--force", is_flag=True, help="Update even if the app is in an error state")
@click.option("--new", "new", is_flag=True, help="Install a new instance instead of updating")
@click.option("--image", help="Docker image to install, overrides dockerImage of the manifest")
@click.pass_context
def install(
    ctx: click.Context,
    app_id: Optional[str],
    appstore_id: Optional[str],
    location: Optional[str],
    configure: bool,
    wait: bool,
    force: bool,
    new: bool,
    image: Optional[str],
) -> None:
    """Install or update an app.

    Uses CloudronManifest.json of the current directory. An app already
    installed from this manifest is updated, or reconfigured when its
    location changes.
    """
    run_command(ctx, _install_async(ctx, app_id, appstore_id, location, configure, wait, force, new, image))


async def _install_async(
    ctx: click.Context,
    app_id: Optional[str],
    appstore_id: Optional[str],
    location: Optional[str],
    configure: bool,
    wait: bool,
    force: bool,
    new: bool,
    image: Optional[str],
) -> None:
    session = get_session(ctx).require_login()
    async with open_client(ctx, session) as client:
        manager = new_manager(client)

        if appstore_id:
            manifest = await manager.fetch_store_manifest(appstore_id)
            await _installer(manager, None, manifest, None, appstore_id, configure, wait, location, False)
            return

        app: Optional[Application] = None
        if new:
            manifest_path = locate_manifest()
        else:
            app, manifest_path = await resolve_app(manager, app_id)
        if manifest_path is None:
            raise ManifestError(f"No {MANIFEST_FILE} found")

        if app is not None:
            console.print(f"Reusing app [bold]{app.id}[/bold] installed at [cyan]{escape(app.location)}[/cyan]")

        manifest = load_manifest(manifest_path)
        if manifest.get("developmentMode") and (app is None or not app.manifest.get("developmentMode")):
            console.print("[yellow]Installing in development mode gives your app unlimited CPU and Memory.[/yellow]")
            console.print("[yellow]This might affect your other apps on this Cloudron.[/yellow]")
            if not Confirm.ask("Install anyway?", default=False, console=console):
                return

        if image:
            manifest["dockerImage"] = image
        elif manifest.get("dockerImage"):
            console.print(f"[yellow]Using app image from CloudronManifest[/yellow] [cyan]{escape(manifest['dockerImage'])}[/cyan]")
        else:
            raise ManifestError("No image found, use --image or specify a dockerImage in the CloudronManifest")

        await _installer(manager, app, manifest, manifest_path, None, configure, wait, location, force)


async def _installer(
    manager: AppManager,
    app: Optional[Application],
    manifest: Dict[str, Any],
    manifest_path: Optional[Path],
    appstore_id: Optional[str],
    configure: bool,
    wait: bool,
    location: Optional[str],
    force: bool,
) -> None:
    """Submit an install, configure or update and wait for it to finish."""
    if location is None:
        location = app.location if app else Prompt.ask("Location", default="", console=console)

    access_restriction = app.access_restriction if app else None
    oauth_proxy = app.oauth_proxy if app else False
    port_bindings: Dict[str, Any] = dict(app.port_bindings) if app else {}

    if configure:
        oauth_proxy = Confirm.ask("Use OAuth Proxy?", default=False, console=console)

    if manifest.get("singleUser") and access_restriction is None:
        users = await manager.list_users()
        if not users:
            raise CloudronError("No users available for a single user app")
        index = choose_from_list(
            "Select the user of this app:",
            [(user.get("username") or "", user.get("email") or "") for user in users],
            ("Username", "Email"),
        )
        access_restriction = {"users": [users[index]["id"]]}

    if configure or (app is not None and ports_changed(app.port_bindings, manifest)):
        port_bindings = query_port_bindings(app, manifest)
    elif app is None:
        port_bindings = default_port_bindings(manifest)

    for binding, port in port_bindings.items():
        console.print(f"{binding}: {port}")

    action = choose_install_action(app, configure, location)
    icon = None
    if action != CONFIGURE and not appstore_id:
        icon = encode_icon(manifest, manifest_path)
    # allows updating over errored apps installed from a local manifest
    if action == UPDATE and app is not None and app.is_local:
        force = True

    data = install_payload(
        manifest,
        location,
        port_bindings,
        access_restriction=access_restriction,
        oauth_proxy=oauth_proxy,
        force=force,
        app_store_id=appstore_id,
        app_id=app.id if app else None,
        icon=icon,
    )
    installed_id = await manager.submit_install(action, data, app.id if app else None)

    message = ACTION_MESSAGES[action]
    console.print(f"App is being [bold]{message}[/bold] with id: [bold]{installed_id}[/bold]")

    try:
        await manager.wait_for_installation(installed_id, wait_for_health=wait)
    except OperationError as e:
        if CONTAINER_CMD_ERROR in e.message:
            console.print(f"\n\n[red]App installation error: {escape(e.message)}[/red]")
            raise OperationError("Is your CMD from the Dockerfile executable?")
        raise OperationError(f"App installation error: {e.message}")

    console.print(f"\n\n[green]✓ App is {message}.[/green]")


@cli.command()
@click.option("--app", "app_id", help="App id")
@click.option("--location", help="Subdomain location")
@click.pass_context
def configure(ctx: click.Context, app_id: Optional[str], location: Optional[str]) -> None:
    """Change the location, port bindings and OAuth proxy of an app."""
    run_command(ctx, _configure_async(ctx, app_id, location))


async def _configure_async(ctx: click.Context, app_id: Optional[str], location: Optional[str]) -> None:
    session = get_session(ctx).require_login()
    async with open_client(ctx, session) as client:
        manager = new_manager(client)
        app = await require_app(manager, app_id)
        await _installer(manager, app, app.manifest, None, app.app_store_id, True, False, location, False)


@cli.command()
@click.option("--app", "app_id", help="App id")
@click.pass_context
def uninstall(ctx: click.Context, app_id: Optional[str]) -> None:
    """Uninstall an app."""
    run_command(ctx, _uninstall_async(ctx, app_id))


async def _uninstall_async(ctx: click.Context, app_id: Optional[str]) -> None:
    session = get_session(ctx).require_login()
    async with open_client(ctx, session) as client:
        manager = new_manager(client)
        app = await require_app(manager, app_id)

        console.print(f"Will uninstall app at location [bold yellow]{escape(app.location)}[/bold yellow]")
        await manager.uninstall(app.id)
        await manager.wait_for_uninstall(app.id)

    console.print(f"\n\n[green]✓ App [bold]{app.id}[/bold] successfully uninstalled.[/green]")


@cli.command()
@click.option("--app", "app_id", help="App id")
@click.pass_context
def restart(ctx: click.Context, app_id: Optional[str]) -> None:
    """Restart an app and wait until it is healthy."""
    run_command(ctx, _restart_async(ctx, app_id))


async def _restart_async(ctx: click.Context, app_id: Optional[str]) -> None:
    session = get_session(ctx).require_login()
    async with open_client(ctx, session) as client:
        manager = new_manager(client)
        app = await require_app(manager, app_id)
        try:
            await manager.restart(app.id)
        except OperationError as e:
            raise OperationError(f"App restart error: {e.message}")

    console.print("\n\n[green]✓ App restarted[/green]")


@cli.command()
@click.option("--app", "app_id", help="App id")
@click.option("--lines", default=500, show_default=True, help="Number of log lines")
@click.option("-f", "--tail", is_flag=True, help="Follow the logs")
@click.pass_context
def logs(ctx: click.Context, app_id: Optional[str], lines: int, tail: bool) -> None:
    """Show the logs of an app."""
    run_command(ctx, _logs_async(ctx, app_id, lines, tail))


async def _logs_async(ctx: click.Context, app_id: Optional[str], lines: int, tail: bool) -> None:
    session = get_session(ctx).require_login()
    async with open_client(ctx, session) as client:
        manager = new_manager(client)
        app = await require_app(manager, app_id)

        entries = manager.tail_logs(app.id) if tail else manager.logs(app.id, lines=lines)
        async for entry in entries:
            print_log_line(entry)


@cli.command(name="exec", context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False})
@click.option("--app", "app_id", help="App id")
@click.option("-t", "--tty", is_flag=True, help="Allocate a terminal")
@click.argument("cmd", nargs=-1, type=click.UNPROCESSED)
@click.pass_context
def exec_command(ctx: click.Context, app_id: Optional[str], tty: bool, cmd: Tuple[str, ...]) -> None:
    """Run a command inside the app container.

    Without a command an interactive shell is opened. Use -- to pass
    options to the command, e.g. cloudron exec -- ls -l /app/data
    """
    run_command(ctx, _exec_async(ctx, app_id, tty, list(cmd)))


async def _exec_async(ctx: click.Context, app_id: Optional[str], tty: bool, cmd: List[str]) -> None:
    session = get_session(ctx).require_login()
    async with open_client(ctx, session) as client:
        app = await require_app(new_manager(client), app_id)

    await ExecSession(session, app.id, cmd, tty=tty, transport=ctx.obj.get("transport")).run()


@cli.command()
@click.option("--app", "app_id", help="App id")
@click.argument("local")
@click.argument("remote")
@click.pass_context
def push(ctx: click.Context, app_id: Optional[str], local: str, remote: str) -> None:
    """Copy a local file or directory into the app.

    LOCAL may be - to read from stdin. A REMOTE ending in / is a directory.
    """
    run_command(ctx, _push_async(ctx, app_id, local, remote))


async def _push_async(ctx: click.Context, app_id: Optional[str], local: str, remote: str) -> None:
    session = get_session(ctx).require_login()
    async with open_client(ctx, session) as client:
        app = await require_app(new_manager(client), app_id)

    await push_files(session, app.id, local, remote, console=Console(stderr=True), transport=ctx.obj.get("transport"))


@cli.command()
@click.option("--app", "app_id", help="App id")
@click.argument("remote")
@click.argument("local", default=".")
@click.pass_context
def pull(ctx: click.Context, app_id: Optional[str], remote: str, local: str) -> None:
    """Copy a file or directory out of the app.

    A REMOTE ending in / is copied as a directory. LOCAL may be - for stdout.
    """
    run_command(ctx, _pull_async(ctx, app_id, remote, local))


async def _pull_async(ctx: click.Context, app_id: Optional[str], remote: str, local: str) -> None:
    session = get_session(ctx).require_login()
    async with open_client(ctx, session) as client:
        app = await require_app(new_manager(client), app_id)

    await pull_files(session, app.id, remote, local, transport=ctx.obj.get("transport"))


@cli.group()
def backup() -> None:
    """Manage app backups."""
    pass


@backup.command(name="create")
@click.option("--app", "app_id", help="App id")
@click.pass_context
def backup_create(ctx: click.Context, app_id: Optional[str]) -> None:
    """Back up an app."""
    run_command(ctx, _backup_create_async(ctx, app_id))


async def _backup_create_async(ctx: click.Context, app_id: Optional[str]) -> None:
    session = get_session(ctx).require_login()
    async with open_client(ctx, session) as client:
        manager = new_manager(client)
        app = await require_app(manager, app_id)

        await manager.backup(app.id)
        try:
            await manager.wait_for_installation(app.id, wait_for_health=True)
        except OperationError as e:
            raise OperationError(f"App backup error: {e.message}")

    console.print("\n\n[green]✓ App is backed up[/green]")


@backup.command(name="list")
@click.option("--app", "app_id", help="App id")
@click.pass_context
def backup_list(ctx: click.Context, app_id: Optional[str]) -> None:
    """List the backups of an app."""
    run_command(ctx, _backup_list_async(ctx, app_id))


async def _backup_list_async(ctx: click.Context, app_id: Optional[str]) -> None:
    session = get_session(ctx).require_login()
    async with open_client(ctx, session) as client:
        manager = new_manager(client)
        app = await require_app(manager, app_id)
        backups = await manager.list_backups(app.id)

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Id", style="cyan")
    table.add_column("Creation Time", style="dim")
    table.add_column("Version", style="green")
    for entry in backups:
        table.add_row(entry.get("id", ""), entry.get("creationTime", ""), entry.get("version", ""))

    console.print()
    console.print(table)


@cli.command()
@click.option("--app", "app_id", help="App id")
@click.option("--backup", "backup_id", help="Backup id, defaults to the last backup")
@click.pass_context
def restore(ctx: click.Context, app_id: Optional[str], backup_id: Optional[str]) -> None:
    """Restore an app from a backup."""
    run_command(ctx, _restore_async(ctx, app_id, backup_id))


async def _restore_async(ctx: click.Context, app_id: Optional[str], backup_id: Optional[str]) -> None:
    session = get_session(ctx).require_login()
    async with open_client(ctx, session) as client:
        manager = new_manager(client)
        app = await require_app(manager, app_id)

        await manager.restore(app.id, backup_id or app.last_backup_id)
        try:
            await manager.wait_for_installation(app.id, wait_for_health=True)
        except OperationError as e:
            raise OperationError(f"App restore error: {e.message}")

    console.print("\n\n[green]✓ App is restored[/green]")


@cli.command()
@click.option("--app", "app_id", help="App id")
@click.option("--backup", "backup_id", help="Backup id, defaults to the last backup")
@click.option("--location", help="Subdomain location of the clone")
@click.pass_context
def clone(ctx: click.Context, app_id: Optional[str], backup_id: Optional[str], location: Optional[str]) -> None:
    """Clone an app from one of its backups to a new location."""
    run_command(ctx, _clone_async(ctx, app_id, backup_id, location))


async def _clone_async(
    ctx: click.Context,
    app_id: Optional[str],
    backup_id: Optional[str],
    location: Optional[str],
) -> None:
    session = get_session(ctx).require_login()
    async with open_client(ctx, session) as client:
        manager = new_manager(client)
        app = await require_app(manager, app_id)

        backup_id = backup_id or app.last_backup_id
        if not backup_id:
            raise CloudronError("No previous backup found to clone from. Create a backup first.")

        location = location or Prompt.ask("Location", console=console)
        port_bindings = query_port_bindings(app, app.manifest)

        new_id = await manager.clone(app.id, backup_id, location, port_bindings)
        console.print(f"App cloned as id [bold]{new_id}[/bold]")
        try:
            await manager.wait_for_installation(new_id, wait_for_health=True)
        except OperationError as e:
            raise OperationError(f"App clone error: {e.message}")

    console.print("\n\n[green]✓ App is cloned[/green]")


@cli.command(name="box-backup")
@click.pass_context
def box_backup(ctx: click.Context) -> None:
    """Back up the whole Cloudron."""
    run_command(ctx, _box_backup_async(ctx))


async def _box_backup_async(ctx: click.Context) -> None:
    session = get_session(ctx).require_login()
    async with open_client(ctx, session) as client:
        manager = new_manager(client)
        await manager.create_box_backup()
        await manager.wait_for_box_backup()

    console.print("\n\n[green]✓ Backup successful[/green]")


@cli.command()
@click.option("--redirect-uri", help="Redirect URI of the app under development")
@click.option("--scope", default="profile", show_default=True, help="OAuth scope")
@click.option("--shell", is_flag=True, help="Print as shell variable assignments")
@click.pass_context
def oauth(ctx: click.Context, redirect_uri: Optional[str], scope: str, shell: bool) -> None:
    """Create OAuth app credentials for local development."""
    run_command(ctx, _oauth_async(ctx, redirect_uri, scope, shell))


async def _oauth_async(ctx: click.Context, redirect_uri: Optional[str], scope: str, shell: bool) -> None:
    session = get_session(ctx).require_login()
    if not redirect_uri:
        redirect_uri = Prompt.ask("RedirectURI")

    async with open_client(ctx, session) as client:
        credentials = await new_manager(client).create_oauth_credentials(redirect_uri, scope)

    if shell:
        click.echo(
            f'CLOUDRON_CLIENT_ID="{credentials["id"]}"; '
            f'CLOUDRON_CLIENT_SECRET="{credentials["clientSecret"]}"; '
            f'CLOUDRON_REDIRECT_URI="{credentials["redirectURI"]}"'
        )
        return

    console.print("\nNew oauth app credentials")
    console.print(f"ClientId:     [cyan]{escape(credentials['id'])}[/cyan]")
    console.print(f"ClientSecret: [cyan]{escape(credentials['clientSecret'])}[/cyan]")
    console.print(f"RedirectURI:  [cyan]{escape(credentials['redirectURI'])}[/cyan]\n")
    console.print(f"apiOrigin: {session.base_url}")
    console.print(f"authorizationURL: {session.base_url}/api/v1/oauth/dialog/authorize")
    console.print(f"tokenURL:         {session.base_url}/api/v1/oauth/token")


if __name__ == "__main__":
    cli()
