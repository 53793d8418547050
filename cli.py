# cli.py
import logging
import os
import threading
import time
from datetime import datetime, timedelta, timezone

import click

from models import FeePreset, RepeatInterval
from service import PaymentService
from storage import Storage

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def _service(ctx):
    return PaymentService.from_storage(ctx.obj["db"])


def _parse_when(value):
    """ISO timestamp (UTC when no offset is given) or +seconds delay."""
    if value.startswith("+"):
        return datetime.now(timezone.utc) + timedelta(seconds=int(value[1:]))
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _check(ctx, result):
    if not result.ok:
        click.echo(f"❌ {result.error}")
        ctx.exit(1)
    return result.value


def _fmt(dt):
    return dt.strftime("%Y-%m-%d %H:%M:%S%z") if dt else "-"


def _schedule_line(p):
    limit = f"{p.current_executions}/{p.max_executions}" if p.bounded else f"{p.current_executions}"
    state = p.status.value + (" (paused)" if p.paused else "")
    return (f"{p.id} | {p.amount} {p.token} → {p.recipient_name or p.recipient_address} | "
            f"repeat={p.repeat_interval.value} | executions={limit} | state={state} | "
            f"next={_fmt(p.next_execution_date)}" + (f" | reason={p.failure_reason}" if p.failure_reason else ""))


@click.group()
@click.option("--db", "db_path", default=None, envvar="PAYCTL_DB", help="Path to the sqlite database")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, db_path, verbose):
    """payctl - scheduled payments and transaction outbox"""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT,
                        datefmt="%Y-%m-%d %H:%M:%S")
    ctx.ensure_object(dict)
    ctx.obj["db"] = Storage(db_path)


# ---------------- Schedules ----------------
@cli.group()
def schedule():
    """Scheduled and recurring payments"""
    pass


@schedule.command("create")
@click.option("--to", "recipient", required=True, help="Recipient address")
@click.option("--amount", required=True, help="Amount to send")
@click.option("--token", default="SOL", show_default=True, help="Token symbol")
@click.option("--memo", default=None, help="Optional memo")
@click.option("--name", default=None, help="Recipient display name")
@click.option("--start", default=None, help="ISO timestamp (UTC) or +seconds delay; default now")
@click.option("--repeat", type=click.Choice([i.value for i in RepeatInterval]), default="none", show_default=True)
@click.option("--max-executions", default=None, type=int, help="Stop after this many successful payments")
@click.pass_context
def schedule_create(ctx, recipient, amount, token, memo, name, start, repeat, max_executions):
    """Create a scheduled payment"""
    try:
        start_date = _parse_when(start) if start else None
    except ValueError as e:
        click.echo(f"❌ Invalid --start value: {start} ({e})")
        ctx.exit(1)
    payment = _check(ctx, _service(ctx).create_scheduled_payment(
        recipient, amount, token, memo=memo, start_date=start_date,
        repeat_interval=repeat, max_executions=max_executions, recipient_name=name,
    ))
    click.echo(f"✅ Schedule {payment.id} created (first run {_fmt(payment.next_execution_date)}).")


@schedule.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include completed and cancelled schedules")
@click.pass_context
def schedule_list(ctx, show_all):
    """List active schedules"""
    payments = _check(ctx, _service(ctx).list_schedules(include_all=show_all))
    if not payments:
        click.echo("No schedules found.")
        return
    for p in payments:
        click.echo(_schedule_line(p))


@schedule.command("show")
@click.argument("schedule_id")
@click.pass_context
def schedule_show(ctx, schedule_id):
    """Show details of a single schedule"""
    p = _check(ctx, _service(ctx).get_schedule(schedule_id))
    click.echo(f"🔎 Schedule {p.id}")
    click.echo(f"  Recipient: {p.recipient_address}" + (f" ({p.recipient_name})" if p.recipient_name else ""))
    click.echo(f"  Amount: {p.amount} {p.token}")
    click.echo(f"  Memo: {p.memo or '-'}")
    click.echo(f"  Repeat: {p.repeat_interval.value}")
    click.echo(f"  Executions: {p.current_executions}/{p.max_executions if p.bounded else '∞'}")
    click.echo(f"  State: {p.status.value}" + (f" (paused: {p.paused_reason})" if p.paused else ""))
    click.echo(f"  Start: {_fmt(p.start_date)}")
    click.echo(f"  Next: {_fmt(p.next_execution_date)}")
    click.echo(f"  Last executed: {_fmt(p.last_executed_at)}")
    click.echo(f"  Created: {_fmt(p.created_at)}")
    click.echo(f"  Failure: {p.failure_reason or '-'}")


@schedule.command("cancel")
@click.argument("schedule_id")
@click.pass_context
def schedule_cancel(ctx, schedule_id):
    """Cancel a schedule"""
    _check(ctx, _service(ctx).cancel_payment(schedule_id))
    click.echo(f"🛑 Schedule {schedule_id} cancelled.")


@schedule.command("pause")
@click.argument("schedule_id")
@click.pass_context
def schedule_pause(ctx, schedule_id):
    """Pause a schedule without cancelling it"""
    _check(ctx, _service(ctx).pause_payment(schedule_id))
    click.echo(f"⏸ Schedule {schedule_id} paused.")


@schedule.command("resume")
@click.argument("schedule_id")
@click.pass_context
def schedule_resume(ctx, schedule_id):
    """Resume a paused schedule"""
    p = _check(ctx, _service(ctx).resume_payment(schedule_id))
    click.echo(f"▶️ Schedule {schedule_id} resumed (next run {_fmt(p.next_execution_date)}).")


@schedule.command("dismiss")
@click.argument("schedule_id")
@click.pass_context
def schedule_dismiss(ctx, schedule_id):
    """Hide a failed schedule from the active list"""
    _check(ctx, _service(ctx).dismiss_payment(schedule_id))
    click.echo(f"🧹 Schedule {schedule_id} dismissed.")


# ---------------- Outbox ----------------
@cli.group()
def outbox():
    """Transfers waiting to reach the network"""
    pass


def _outbox_options(f):
    f = click.option("--token", default="SOL", show_default=True, help="Token symbol")(f)
    f = click.option("--fee", type=click.Choice([p.name.lower() for p in FeePreset]), default="normal",
                     show_default=True, help="Fee preset")(f)
    f = click.option("--memo", default=None, help="Optional memo")(f)
    f = click.option("--amount", required=True, help="Amount to send")(f)
    f = click.option("--to", "to_address", required=True, help="Destination address")(f)
    return f


@outbox.command("enqueue")
@_outbox_options
@click.pass_context
def outbox_enqueue(ctx, to_address, amount, memo, fee, token):
    """Queue a transfer for delivery"""
    tx_id = _check(ctx, _service(ctx).enqueue_outbox_transaction(to_address, amount, memo, fee, token))
    click.echo(f"✅ Outbox entry {tx_id} enqueued.")


@outbox.command("send")
@_outbox_options
@click.pass_context
def outbox_send(ctx, to_address, amount, memo, fee, token):
    """Send now, falling back to the outbox when the network is unavailable"""
    outcome = _check(ctx, _service(ctx).send_or_queue(to_address, amount, memo, fee, token))
    if outcome["status"] == "sent":
        click.echo(f"✅ Sent ({outcome['confirmation']}).")
    else:
        click.echo(f"📮 Network unavailable, queued as {outcome['outbox_id']}.")


@outbox.command("list")
@click.pass_context
def outbox_list(ctx):
    """List queued transfers, oldest first"""
    entries = _check(ctx, _service(ctx).list_outbox())
    if not entries:
        click.echo("Outbox is empty.")
        return
    for tx in entries:
        click.echo(f"{tx.id} | {tx.amount} {tx.token} → {tx.to_address} | fee={tx.fee_preset.name.lower()} | "
                   f"retries={tx.retries} | created={_fmt(tx.created_at)} | error={tx.last_error or '-'}")


@outbox.command("remove")
@click.argument("tx_id")
@click.pass_context
def outbox_remove(ctx, tx_id):
    """Drop a queued transfer"""
    _check(ctx, _service(ctx).remove_outbox_transaction(tx_id))
    click.echo(f"🗑 Outbox entry {tx_id} removed.")


@outbox.command("drain")
@click.pass_context
def outbox_drain(ctx):
    """Try to submit every queued transfer once"""
    report = _check(ctx, _service(ctx).drain_outbox())
    click.echo(f"📤 Drain: sent={len(report.sent)} failed={len(report.failed)} stuck={len(report.stuck)}")
    if report.auth_required:
        click.echo("🔐 Wallet authorization required; drain stopped.")
    for tx_id in report.stuck:
        click.echo(f"  ⚠️ {tx_id} needs manual action")


# ---------------- Jobs ----------------
@cli.command()
@click.pass_context
def jobs(ctx):
    """List pending jobs"""
    pending = _service(ctx).dispatcher.list_pending()
    if not pending:
        click.echo("No pending jobs.")
        return
    for job in pending:
        lease = f" | leased by {job.worker_id} until {_fmt(job.lease_until)}" if job.lease_until else ""
        click.echo(f"{job.name} | kind={job.kind} | run_at={_fmt(job.run_at)} | attempt={job.attempt}{lease}")


@cli.command()
@click.pass_context
def rearm(ctx):
    """Give every runnable schedule a pending job again"""
    armed = _service(ctx).rearm_missing_jobs()
    click.echo(f"🔧 Re-armed {armed} job(s).")


# ---------------- Worker ----------------
@cli.command()
@click.option("--count", default=1, help="Number of workers to start")
@click.option("--lease-seconds", default=None, type=int, help="Lease duration to prevent double-claims (uses config if set)")
@click.option("--poll-interval", default=None, type=float, help="Idle polling interval (seconds) (uses config if set)")
@click.pass_context
def worker(ctx, count, lease_seconds, poll_interval):
    """Start background workers with leases and graceful shutdown"""
    from worker import NetworkProbe, Worker

    db = ctx.obj["db"]
    svc = _service(ctx)
    if svc.submitter is None:
        click.echo("❌ No submit_command configured. Use: payctl config set submit_command '<cmd>'")
        ctx.exit(1)

    # Load config defaults if args are not provided
    if lease_seconds is None:
        lease_seconds = int(db.get_config("lease_seconds", default="30"))
    if poll_interval is None:
        poll_interval = float(db.get_config("poll_interval", default="1.0"))

    svc.rearm_missing_jobs()
    probe = NetworkProbe.from_config(db)
    stop_event = threading.Event()
    workers = []

    for i in range(count):
        w = Worker(svc,
                   worker_id=f"worker-{i+1}",
                   lease_seconds=lease_seconds,
                   poll_interval=poll_interval,
                   stop_event=stop_event,
                   probe=probe)
        t = threading.Thread(target=w.run, name=f"worker-thread-{i+1}", daemon=True)
        workers.append((w, t))
        click.echo(f"🚀 Starting {w.worker_id} (lease={lease_seconds}s, poll={poll_interval}s)")
        t.start()

    click.echo("Press Ctrl+C to stop workers gracefully.")

    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        click.echo("\n🛑 Stopping workers ...")
        stop_event.set()
        for _, t in workers:
            t.join(timeout=5.0)
        click.echo("✅ Workers stopped cleanly.")


# ---------------- Dashboard ----------------
@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.pass_context
def dashboard(ctx, host, port):
    """Serve the read-only web dashboard"""
    import uvicorn

    os.environ["PAYCTL_DB"] = ctx.obj["db"].db_path

    uvicorn.run("dashboard:create_app", factory=True, host=host, port=port)


# ---------------- Config management ----------------
@cli.group()
def config():
    """Runtime configuration for workers and defaults"""
    pass


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx, key, value):
    """Set a config key to a value"""
    ctx.obj["db"].set_config(key, value)
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")


@config.command("get")
@click.argument("key")
@click.option("--default", default=None, help="Fallback if key not set")
@click.pass_context
def config_get(ctx, key, default):
    """Get a config key"""
    value = ctx.obj["db"].get_config(key)
    if value is None:
        if default is not None:
            click.echo(f"{key}={default} (default)")
        else:
            click.echo(f"{key} not set")
        return
    click.echo(f"{key}={value}")


@config.command("list")
@click.pass_context
def config_list(ctx):
    """List all config keys"""
    rows = ctx.obj["db"].list_config()
    if not rows:
        click.echo("No config keys set.")
        return
    for row in rows:
        click.echo(f"{row['key']}={row['value']} (updated_at={row['updated_at']})")


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()
