import re

import pytest
from click.testing import CliRunner

from cli import cli


@pytest.fixture
def run(tmp_path):
    runner = CliRunner()
    db_path = str(tmp_path / "cli.db")

    def invoke(*args):
        return runner.invoke(cli, ["--db", db_path, *args])

    return invoke


def _created_id(output):
    line = next(l for l in output.splitlines() if l.startswith("✅ Schedule"))
    return line.split()[2]


def test_schedule_lifecycle(run):
    result = run("schedule", "create", "--to", "dest-wallet", "--amount", "2.5", "--repeat", "weekly",
                 "--max-executions", "3", "--name", "Rent")
    assert result.exit_code == 0, result.output
    schedule_id = _created_id(result.output)

    listed = run("schedule", "list")
    assert schedule_id in listed.output
    assert "executions=0/3" in listed.output
    assert "Rent" in listed.output

    shown = run("schedule", "show", schedule_id)
    assert "Amount: 2.5 SOL" in shown.output
    assert "Repeat: weekly" in shown.output

    assert f"schedule:{schedule_id}" in run("jobs").output

    cancelled = run("schedule", "cancel", schedule_id)
    assert cancelled.exit_code == 0
    assert "No schedules found." in run("schedule", "list").output
    assert "state=cancelled" in run("schedule", "list", "--all").output
    assert "No pending jobs." in run("jobs").output


def test_invalid_schedule_is_rejected(run):
    result = run("schedule", "create", "--to", "dest", "--amount", "1", "--max-executions", "0")
    assert result.exit_code == 1
    assert "max executions must be at least 1" in result.output

    result = run("schedule", "create", "--to", "dest", "--amount=-4")
    assert result.exit_code == 1

    result = run("schedule", "create", "--to", "dest", "--amount", "1", "--start", "next tuesday")
    assert result.exit_code == 1
    assert "Invalid --start" in result.output


def test_pause_and_resume(run):
    schedule_id = _created_id(run("schedule", "create", "--to", "dest", "--amount", "1", "--start", "+3600").output)
    run("schedule", "pause", schedule_id)
    assert "(paused)" in run("schedule", "list").output
    assert "No pending jobs." in run("jobs").output

    assert run("schedule", "resume", schedule_id).exit_code == 0
    assert f"schedule:{schedule_id}" in run("jobs").output


def test_unknown_schedule(run):
    result = run("schedule", "show", "nope")
    assert result.exit_code == 1
    assert "not found" in result.output


def test_outbox_enqueue_and_drain(run):
    assert run("outbox", "drain").exit_code == 1

    run("config", "set", "submit_command", "echo sig")
    enqueued = run("outbox", "enqueue", "--to", "dest", "--amount", "0.1", "--fee", "fast")
    assert enqueued.exit_code == 0, enqueued.output
    listed = run("outbox", "list")
    assert "fee=fast" in listed.output
    assert "retries=0" in listed.output

    drained = run("outbox", "drain")
    assert "sent=1 failed=0 stuck=0" in drained.output
    assert "Outbox is empty." in run("outbox", "list").output


def test_outbox_send_queues_on_transient_failure(run):
    run("config", "set", "submit_command", "echo node unreachable >&2; exit 75")
    result = run("outbox", "send", "--to", "dest", "--amount", "1")
    assert result.exit_code == 0
    assert "queued as" in result.output

    tx_id = re.search(r"queued as (\S+)\.", result.output).group(1)
    assert run("outbox", "remove", tx_id).exit_code == 0
    assert run("outbox", "remove", tx_id).exit_code == 1


def test_config_commands(run):
    assert "max_retries not set" in run("config", "get", "max_retries").output
    assert "max_retries=3 (default)" in run("config", "get", "max_retries", "--default", "3").output
    run("config", "set", "max_retries", "5")
    assert "max_retries=5" in run("config", "get", "max_retries").output
    assert "max_retries=5" in run("config", "list").output


def test_worker_requires_submit_command(run):
    result = run("worker")
    assert result.exit_code == 1
    assert "No submit_command configured" in result.output
