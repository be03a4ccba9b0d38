# cli.py
import logging
import os
import threading
from datetime import timedelta

import click
import pydantic

from config import TUNABLES, Settings
from errors import ConfigError, ValidationError
from models import DEAD, to_iso, utcnow
from storage import Storage
from worker import build_worker


def open_db(ctx):
    return Storage(ctx.obj["db_path"])


@click.group()
@click.option("--db", "db_path", default="queue.db", envvar="QUEUE_DB", show_default=True,
              help="SQLite database file")
@click.pass_context
def cli(ctx, db_path):
    """postqueue - schedule Instagram image posts"""
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path


# ---------------- Enqueue ----------------
@cli.command()
@click.option("--image-url", required=True, help="Public URL of the image to publish")
@click.option("--caption", required=True, help="Post caption")
@click.option("--publish-at", required=True, help="ISO timestamp (UTC) or +seconds delay")
@click.pass_context
def enqueue(ctx, image_url, caption, publish_at):
    """Schedule a post (repeating the same post is a no-op)"""
    db = open_db(ctx)

    # Parse publish_at: either ISO timestamp or +N seconds
    if publish_at.startswith("+"):
        try:
            delay = int(publish_at[1:])
        except ValueError:
            raise click.ClickException(f"❌ Invalid --publish-at value: {publish_at}")
        publish_at = to_iso(utcnow() + timedelta(seconds=delay))

    try:
        result = db.enqueue(image_url, caption, publish_at)
    except ValidationError as e:
        raise click.ClickException(f"❌ {e}")

    if result.queued:
        click.echo(f"✅ Job {result.key} queued (publish_at={publish_at}).")
    else:
        click.echo(f"↩️ Job {result.key} already scheduled, nothing queued.")


# ---------------- List Jobs ----------------
@cli.command(name="list")
@click.option("--status", default=None, help="Filter jobs by status (queued, publishing, done, dead)")
@click.pass_context
def list_jobs(ctx, status):
    """List scheduled jobs"""
    jobs = open_db(ctx).list_jobs(status=status)
    if not jobs:
        click.echo("No jobs found.")
        return
    for job in jobs:
        click.echo(f"{job.key[:12]} | {job.artifact_ref} | status={job.status} | "
                   f"attempts={job.attempts} | publish_at={job.publish_at}")


# ---------------- Status ----------------
@cli.command()
@click.pass_context
def status(ctx):
    """Show summary of job states"""
    counts = open_db(ctx).counts()
    if not any(counts.values()):
        click.echo("No jobs in the system yet.")
        return
    click.echo("📊 Job Status Summary:")
    for state, count in counts.items():
        click.echo(f"  {state}: {count}")


@cli.command()
@click.argument("key")
@click.pass_context
def show(ctx, key):
    """Show details of a single job"""
    job = open_db(ctx).get(key)
    if job is None:
        raise click.ClickException(f"❌ Job {key} not found.")

    click.echo(f"🔎 Job {job.key}")
    click.echo(f"  Image: {job.artifact_ref}")
    click.echo(f"  Caption: {job.caption}")
    click.echo(f"  Status: {job.status}")
    click.echo(f"  Attempts: {job.attempts}")
    click.echo(f"  Publish at: {job.publish_at}")
    click.echo(f"  Created: {job.created_at}")
    click.echo(f"  Updated: {job.updated_at}")
    click.echo(f"  Lease until: {job.lease_until or '-'}")
    click.echo(f"  Published id: {job.published_id or '-'}")
    click.echo(f"  Error: {job.last_error or '-'}")


# ---------------- Worker ----------------
def _settings_error(e):
    return "; ".join(f"{'.'.join(map(str, err['loc'])) or 'settings'}: {err['msg']}"
                     for err in e.errors())


def _worker_from(ctx, **overrides):
    db = open_db(ctx)
    try:
        settings = Settings.load(db, **overrides)
        return build_worker(db, settings), settings
    except pydantic.ValidationError as e:
        raise click.ClickException(f"❌ Invalid settings: {_settings_error(e)}")
    except ConfigError as e:
        raise click.ClickException(f"❌ {e}")


@cli.command()
@click.option("--batch-size", default=None, type=int, help="Max jobs claimed per tick (uses config if set)")
@click.option("--concurrency", default=None, type=int, help="Jobs published in parallel (uses config if set)")
@click.pass_context
def run(ctx, batch_size, concurrency):
    """Run a single tick: claim due jobs and publish them"""
    w, _ = _worker_from(ctx, batch_size=batch_size, concurrency=concurrency)
    result = w.run()
    click.echo(f"📬 processed={result.processed} published={result.published} failed={result.failed}")


@cli.command()
@click.option("--interval", default=None, type=float, help="Seconds between ticks (uses config if set)")
@click.option("--batch-size", default=None, type=int, help="Max jobs claimed per tick (uses config if set)")
@click.option("--concurrency", default=None, type=int, help="Jobs published in parallel (uses config if set)")
@click.pass_context
def worker(ctx, interval, batch_size, concurrency):
    """Tick periodically until Ctrl+C"""
    w, settings = _worker_from(ctx, tick_interval=interval, batch_size=batch_size,
                               concurrency=concurrency)
    stop_event = threading.Event()
    t = threading.Thread(target=w.loop, args=(stop_event, settings.tick_interval),
                         name="scheduler", daemon=True)
    click.echo(f"🚀 Starting scheduler (interval={settings.tick_interval}s, "
               f"batch={settings.batch_size}, concurrency={settings.concurrency})")
    t.start()
    click.echo("Press Ctrl+C to stop gracefully.")

    try:
        while t.is_alive():
            t.join(timeout=0.5)
    except KeyboardInterrupt:
        click.echo("\n🛑 Stopping scheduler ...")
        stop_event.set()
        t.join(timeout=30.0)
        click.echo("✅ Scheduler stopped cleanly.")


# ---------------- Dead Letter Queue ----------------
@cli.group()
def dlq():
    """Dead Letter Queue operations"""


@dlq.command("list")
@click.pass_context
def dlq_list(ctx):
    """List jobs in DLQ"""
    jobs = open_db(ctx).list_jobs(status=DEAD)
    if not jobs:
        click.echo("No jobs in DLQ.")
        return
    for job in jobs:
        click.echo(f"{job.key} | {job.artifact_ref} | attempts={job.attempts} | error={job.last_error}")


@dlq.command("retry")
@click.argument("key")
@click.pass_context
def dlq_retry(ctx, key):
    """Move a DLQ job back to queued"""
    if open_db(ctx).retry_dead(key):
        click.echo(f"♻️ Job {key} moved back to queued.")
    else:
        raise click.ClickException(f"❌ Job {key} is not in the DLQ.")


# ---------------- Config management ----------------
@cli.group()
def config():
    """Runtime configuration for the scheduler"""


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx, key, value):
    """Set a config key to a value"""
    if key not in TUNABLES:
        raise click.ClickException(f"❌ Unknown config key '{key}'. Known: {', '.join(TUNABLES)}")
    db = open_db(ctx)
    # validated together with the rest of the table so cross-field checks apply
    try:
        Settings.load(db, **{key: value})
    except pydantic.ValidationError as e:
        raise click.ClickException(f"❌ Rejected '{key}={value}': {_settings_error(e)}")
    db.set_config(key, value)
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")


@config.command("get")
@click.argument("key")
@click.pass_context
def config_get(ctx, key):
    """Get a config key (falls back to the built-in default)"""
    value = open_db(ctx).get_config(key)
    if value is not None:
        click.echo(f"{key}={value}")
    elif key in TUNABLES:
        click.echo(f"{key}={getattr(Settings(), key)} (default)")
    else:
        click.echo(f"{key} not set")


@config.command("list")
@click.pass_context
def config_list(ctx):
    """List all config keys"""
    rows = open_db(ctx).list_config()
    if not rows:
        click.echo("No config keys set.")
        return
    for row in rows:
        click.echo(f"{row['key']}={row['value']} (updated_at={row['updated_at']})")


# ---------------- Rescue operations ----------------
@cli.group()
def rescue():
    """Recovery tools for stuck jobs"""


@rescue.command("leases")
@click.option("--older-than-seconds", default=0, help="Only leases expired more than N seconds ago")
@click.pass_context
def rescue_leases(ctx, older_than_seconds):
    """Return jobs with expired leases to queued"""
    keys = open_db(ctx).release_expired(grace_seconds=older_than_seconds)
    if not keys:
        click.echo("No expired leases found.")
        return
    click.echo(f"🔧 Returned {len(keys)} job(s) to queued: {', '.join(k[:12] for k in keys)}")


@cli.command()
@click.pass_context
def purge(ctx):
    """Delete jobs past their retention horizon"""
    deleted = open_db(ctx).purge_expired()
    click.echo(f"🧹 Purged {deleted} expired job(s).")


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()
