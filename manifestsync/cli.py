"""CLI interface for manifestsync."""

import logging
from pathlib import Path
from typing import Any, Optional

import click

from .api import SyncClient
from .cli_progress import SyncProgressDisplay
from .config import config
from .exceptions import ManifestSyncError
from .models import AttachmentState, RowAttachments, ScopeOutcome
from .output import OutputFormatter
from .sync import AppLayout, JsonSyncStateStore, SyncEngine
from .sync.protocols import ProgressReporter

logger = logging.getLogger(__name__)


@click.group()
@click.option(
    "--server",
    "-s",
    envvar="MANIFESTSYNC_SERVER_URL",
    help="Base URL of the sync server",
)
@click.option(
    "--api-key", "-k", envvar="MANIFESTSYNC_API_KEY", help="Bearer token for the server"
)
@click.option("--app", "-a", "app_name", envvar="MANIFESTSYNC_APP_NAME", help="Application name")
@click.option(
    "--root",
    "-r",
    envvar="MANIFESTSYNC_ROOT",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory containing the application folders",
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", is_flag=True, help="Output in JSON format")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.version_option()
@click.pass_context
def main(
    ctx: Any,
    server: Optional[str],
    api_key: Optional[str],
    app_name: Optional[str],
    root: Optional[Path],
    quiet: bool,
    json: bool,
    verbose: bool,
) -> None:
    """manifestsync - Reconcile application files with a manifest sync server."""
    ctx.ensure_object(dict)
    ctx.obj["server"] = server
    ctx.obj["api_key"] = api_key
    ctx.obj["app_name"] = app_name
    ctx.obj["root"] = root
    ctx.obj["out"] = OutputFormatter(json_output=json, quiet=quiet)

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("manifestsync").setLevel(logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)


def _app_name(ctx: Any) -> str:
    return ctx.obj.get("app_name") or config.app_name


def _create_client(ctx: Any) -> SyncClient:
    return SyncClient(
        server_url=ctx.obj.get("server"),
        app_name=_app_name(ctx),
        api_key=ctx.obj.get("api_key"),
    )


def _create_layout(ctx: Any) -> AppLayout:
    root = ctx.obj.get("root") or config.root
    return AppLayout.from_root(root, _app_name(ctx))


def _create_store(ctx: Any, layout: AppLayout) -> JsonSyncStateStore:
    """State store of the application folder as synced against the server."""
    server_url = ctx.obj.get("server") or config.server_url
    return JsonSyncStateStore(
        _app_name(ctx), app_dir=layout.app_dir, server_url=server_url
    )


def _create_engine(ctx: Any, client: SyncClient) -> SyncEngine:
    layout = _create_layout(ctx)
    logger.debug(f"Application folder: {layout.app_dir}")
    store = _create_store(ctx, layout)
    return SyncEngine(client, client, store, layout)


def _show_progress(out: OutputFormatter) -> bool:
    return not out.quiet and not out.json_output


def _run_with_progress(out: OutputFormatter, action: Any) -> Any:
    """Call ``action(reporter)`` inside a progress display when appropriate."""
    if not _show_progress(out):
        return action(None)
    with SyncProgressDisplay() as display:
        return action(display)


def _report_scope_outcome(out: OutputFormatter, outcome: ScopeOutcome) -> None:
    if out.json_output:
        out.output_json(
            {
                "scope": outcome.scope.describe(),
                "manifest_changed": outcome.manifest_changed,
                "entirely_match": outcome.entirely_match,
                "uploaded": outcome.uploaded,
                "downloaded": outcome.downloaded,
                "deleted_remote": outcome.deleted_remote,
                "deleted_local": outcome.deleted_local,
                "failed_local_deletes": outcome.failed_local_deletes,
            }
        )
        return

    if not outcome.manifest_changed:
        out.success(f"{outcome.scope.describe()}: no changes on server")
        return

    out.print_summary(
        f"Sync of {outcome.scope.describe()}",
        [
            ("Uploaded", str(len(outcome.uploaded))),
            ("Downloaded", str(len(outcome.downloaded))),
            ("Deleted on server", str(len(outcome.deleted_remote))),
            ("Deleted locally", str(len(outcome.deleted_local))),
        ],
    )
    for path in outcome.failed_local_deletes:
        out.warning(f"Could not delete {path}; it will be retried on the next sync")
    if outcome.entirely_match:
        out.success("Device and server match")
    else:
        out.warning("Device and server do not fully match yet")


@main.command()
@click.option("--server", "-s", prompt="Sync server URL", help="Base URL of the sync server")
@click.option(
    "--app",
    "-a",
    "app_name",
    default=lambda: config.app_name,
    prompt="Application name",
    help="Application name",
)
@click.option(
    "--root",
    "-r",
    default=lambda: str(config.root),
    prompt="Application root directory",
    help="Directory containing the application folders",
)
@click.option("--api-key", "-k", default=None, help="Bearer token for the server")
@click.pass_context
def init(
    ctx: Any, server: str, app_name: str, root: str, api_key: Optional[str]
) -> None:
    """Store the server, application and root folder in the config file.

    The settings are written to ~/.config/manifestsync/config.json.
    """
    out: OutputFormatter = ctx.obj["out"]
    try:
        config_path = config.save(
            server_url=server.rstrip("/"),
            app_name=app_name,
            root=str(Path(root).expanduser()),
            api_key=api_key,
        )
    except ManifestSyncError as e:
        out.error(str(e))
        ctx.exit(1)
        return

    if out.json_output:
        out.output_json({"config_path": str(config_path)})
    else:
        out.success(f"Configuration saved to {config_path}")


@main.command()
@click.option(
    "--push/--pull",
    default=False,
    help="Push device files to the server (default: pull from the server)",
)
@click.pass_context
def app(ctx: Any, push: bool) -> None:
    """Synchronize the application-wide config files."""
    out: OutputFormatter = ctx.obj["out"]
    try:
        with _create_client(ctx) as client:
            engine = _create_engine(ctx, client)
            outcome = _run_with_progress(
                out,
                lambda reporter: engine.sync_app_level_files(push, reporter=reporter),
            )
    except ManifestSyncError as e:
        out.error(str(e))
        ctx.exit(1)
        return

    _report_scope_outcome(out, outcome)


@main.command()
@click.argument("table_id")
@click.option(
    "--push/--pull",
    default=False,
    help="Push device files to the server (default: pull from the server)",
)
@click.pass_context
def table(ctx: Any, table_id: str, push: bool) -> None:
    """Synchronize the config files of TABLE_ID."""
    out: OutputFormatter = ctx.obj["out"]
    changed_tables: list[str] = []

    def sync_table(reporter: Optional[ProgressReporter]) -> ScopeOutcome:
        return engine.sync_table_level_files(
            table_id,
            push,
            reporter=reporter,
            on_table_properties_changed=changed_tables.append,
        )

    try:
        with _create_client(ctx) as client:
            engine = _create_engine(ctx, client)
            outcome = _run_with_progress(out, sync_table)
    except ManifestSyncError as e:
        out.error(str(e))
        ctx.exit(1)
        return

    for changed in changed_tables:
        out.info(f"Table properties of '{changed}' changed")
    _report_scope_outcome(out, outcome)


@main.command()
@click.argument("table_id")
@click.argument("row_id")
@click.option(
    "--attachment",
    "-a",
    "attachments",
    multiple=True,
    required=True,
    help="Attachment referenced by the row (repeatable)",
)
@click.option(
    "--state",
    "state",
    type=click.Choice([s.value for s in AttachmentState], case_sensitive=False),
    default=AttachmentState.SYNC.value,
    show_default=True,
    help="Permitted transfer directions",
)
@click.pass_context
def row(
    ctx: Any, table_id: str, row_id: str, attachments: tuple[str, ...], state: str
) -> None:
    """Synchronize the attachments of ROW_ID in TABLE_ID.

    Examples:
        manifestsync row geotagger uuid:1 -a photo.jpg -a audio.m4a
        manifestsync row geotagger uuid:1 -a photo.jpg --state upload
    """
    out: OutputFormatter = ctx.obj["out"]
    row_attachments = RowAttachments(table_id, row_id, list(attachments))
    attachment_state = AttachmentState(state.lower())

    try:
        with _create_client(ctx) as client:
            engine = _create_engine(ctx, client)
            outcome = _run_with_progress(
                out,
                lambda reporter: engine.sync_row_attachments(
                    row_attachments, attachment_state, reporter=reporter
                ),
            )
    except ManifestSyncError as e:
        out.error(str(e))
        ctx.exit(1)
        return

    if out.json_output:
        out.output_json(
            {
                "table_id": table_id,
                "row_id": row_id,
                "uploads": outcome.uploads.value,
                "downloads": outcome.downloads.value,
                "fully_synced": outcome.fully_synced,
            }
        )
        return

    out.print_summary(
        f"Attachments of row {row_id}",
        [("Uploads", outcome.uploads.value), ("Downloads", outcome.downloads.value)],
    )
    if outcome.fully_synced:
        out.success("Row attachments are synchronized")
    else:
        out.warning("Row attachments are still pending")


@main.command()
@click.pass_context
def reset(ctx: Any) -> None:
    """Forget the stored ETags and file tags of the application.

    Only the state of the current root folder and server is removed. The
    next sync compares every file again.
    """
    out: OutputFormatter = ctx.obj["out"]
    store = _create_store(ctx, _create_layout(ctx))
    if store.clear():
        out.success(f"Cleared sync state of '{store.app_name}'")
    else:
        out.info(f"No sync state stored for '{store.app_name}'")


if __name__ == "__main__":
    main()
