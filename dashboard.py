# dashboard.py
from html import escape

from fastapi import FastAPI
from fastapi.responses import HTMLResponse, JSONResponse

from service import PaymentService
from storage import Storage

# ---------- Shared UI ----------
BASE_STYLE = """
  body { font-family: Arial, sans-serif; margin: 0; background: #f9f9f9; color: #333; }
  h1 { background: #2196F3; color: white; padding: 15px; margin: 0; }
  h2 { margin-top: 30px; color: #2196F3; }
  .container { padding: 20px; }
  .navbar { background: #1976D2; padding: 10px 20px; display: flex; gap: 20px; }
  .navbar a { color: white; text-decoration: none; font-weight: bold; }
  .navbar a:hover { text-decoration: underline; }
  table { border-collapse: collapse; width: 100%; margin-top: 10px; background: white; }
  th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
  th { background-color: #2196F3; color: white; }
  tr:nth-child(even) { background-color: #f2f2f2; }
  tr:hover { background-color: #e0f7fa; }
  canvas { margin-top: 20px; display: block; max-width: 800px; }
  a { color: #1976D2; }
  .cards { display: grid; grid-template-columns: repeat(auto-fit,minmax(220px,1fr)); gap: 16px; margin-top: 20px; }
  .card { background: white; border: 1px solid #ddd; border-radius: 6px; padding: 12px; }
  .muted { color: #555; }
  .failed { color: #F44336; font-weight: bold; }
"""


def page(title: str, body_html: str, include_chart_js: bool = False) -> str:
    script_tag = '<script src="https://cdn.jsdelivr.net/npm/chart.js"></script>' if include_chart_js else ''
    return f"""
    <html>
    <head>
      <title>{title}</title>
      {script_tag}
      <style>{BASE_STYLE}</style>
    </head>
    <body>
      <h1>{title}</h1>
      <div class="navbar">
        <a href="/">🏠 Schedules</a>
        <a href="/outbox">📮 Outbox</a>
        <a href="/jobs">⏱ Jobs</a>
        <a href="/config">⚙ Config</a>
      </div>
      <div class="container">
        {body_html}
      </div>
    </body>
    </html>
    """


def _fmt(dt):
    return dt.strftime("%Y-%m-%d %H:%M:%S") if dt else "-"


def create_app(db=None) -> FastAPI:
    db = db or Storage()
    service = PaymentService.from_storage(db)
    app = FastAPI(title="payctl dashboard")

    # ---------- Home ----------
    @app.get("/", response_class=HTMLResponse)
    def home():
        payments = service.list_active_schedules().value

        table_html = """
        <h2>Active schedules</h2>
        <table>
          <tr><th>ID</th><th>Recipient</th><th>Amount</th><th>Repeat</th><th>Executions</th><th>State</th><th>Next run</th></tr>
        """
        for p in payments:
            limit = f"{p.current_executions}/{p.max_executions}" if p.bounded else str(p.current_executions)
            state = p.status.value + (" (paused)" if p.paused else "")
            css = " class='failed'" if p.failure_reason else ""
            table_html += (
                f"<tr><td><a href='/schedule/{p.id}'>{p.id}</a></td>"
                f"<td>{escape(p.recipient_name or p.recipient_address)}</td>"
                f"<td>{p.amount} {escape(p.token)}</td><td>{p.repeat_interval.value}</td><td>{limit}</td>"
                f"<td{css}>{state}</td><td>{_fmt(p.next_execution_date)}</td></tr>"
            )
        table_html += "</table>"
        if not payments:
            table_html += "<p class='muted'>No active schedules.</p>"

        charts_html = """
          <h2>Schedules by state</h2>
          <canvas id="stateChart"></canvas>

          <script>
            async function loadCharts() {
              const res = await fetch('/metrics/json');
              const data = await res.json();

              new Chart(document.getElementById('stateChart'), {
                type: 'pie',
                data: {
                  labels: ['Pending', 'Completed', 'Cancelled', 'Failed'],
                  datasets: [{
                    data: [data.pending, data.completed, data.cancelled, data.failed],
                    backgroundColor: ['#2196F3', '#4CAF50', '#9E9E9E', '#F44336']
                  }]
                }
              });
            }
            loadCharts();
          </script>
        """
        return page("💸 Scheduled Payments", table_html + charts_html, include_chart_js=True)

    # ---------- Metrics (JSON API for charts) ----------
    @app.get("/metrics/json", response_class=JSONResponse)
    def metrics_json():
        cur = db.conn.cursor()
        cur.execute("SELECT status, COUNT(*) AS c FROM scheduled_payments GROUP BY status")
        counts = {row["status"]: row["c"] for row in cur.fetchall()}
        cur.execute("SELECT COUNT(*) AS c, COALESCE(MAX(retries), 0) AS max_retries FROM outbox")
        outbox_row = cur.fetchone()
        return {
            "pending": counts.get("pending", 0),
            "completed": counts.get("completed", 0),
            "cancelled": counts.get("cancelled", 0),
            "failed": counts.get("failed", 0),
            "outbox": outbox_row["c"],
            "outbox_max_retries": outbox_row["max_retries"],
        }

    # ---------- Outbox ----------
    @app.get("/outbox", response_class=HTMLResponse)
    def outbox_page():
        entries = service.list_outbox().value
        body = """
          <h2>Queued transfers</h2>
          <table>
            <tr><th>ID</th><th>To</th><th>Amount</th><th>Fee</th><th>Retries</th><th>Last error</th><th>Created</th></tr>
        """
        if not entries:
            body += "</table><p class='muted'>Outbox is empty.</p>"
        else:
            for tx in entries:
                body += (
                    f"<tr><td>{tx.id}</td><td>{escape(tx.to_address)}</td><td>{tx.amount} {escape(tx.token)}</td>"
                    f"<td>{tx.fee_preset.name.lower()}</td><td>{tx.retries}</td>"
                    f"<td>{escape(tx.last_error or '-')}</td><td>{_fmt(tx.created_at)}</td></tr>"
                )
            body += "</table><p class='muted'>Use CLI outbox commands to drain or remove entries.</p>"
        return page("📮 Outbox", body)

    # ---------- Jobs ----------
    @app.get("/jobs", response_class=HTMLResponse)
    def jobs_page():
        pending = service.dispatcher.list_pending()
        body = """
          <h2>Pending jobs</h2>
          <table>
            <tr><th>Name</th><th>Kind</th><th>Run at</th><th>Attempt</th><th>Worker</th><th>Lease until</th></tr>
        """
        if not pending:
            body += "</table><p class='muted'>No pending jobs.</p>"
        else:
            for job in pending:
                body += (
                    f"<tr><td>{job.name}</td><td>{job.kind}</td><td>{_fmt(job.run_at)}</td>"
                    f"<td>{job.attempt}</td><td>{job.worker_id or '-'}</td><td>{_fmt(job.lease_until)}</td></tr>"
                )
            body += "</table>"
        return page("⏱ Jobs", body)

    # ---------- Config ----------
    @app.get("/config", response_class=HTMLResponse)
    def config_page():
        rows = db.list_config()

        body = """
          <h2>Runtime configuration</h2>
          <table>
            <tr><th>Key</th><th>Value</th><th>Updated</th></tr>
        """
        if not rows:
            body += "</table><p class='muted'>No config entries found.</p>"
        else:
            for r in rows:
                body += f"<tr><td>{escape(r['key'])}</td><td>{escape(r['value'])}</td><td>{r['updated_at']}</td></tr>"
            body += "</table><p class='muted'>Use CLI config set/get to manage values.</p>"

        return page("⚙ Config", body)

    # ---------- Schedule detail ----------
    @app.get("/schedule/{schedule_id}", response_class=HTMLResponse)
    def schedule_detail(schedule_id: str):
        result = service.get_schedule(schedule_id)
        if not result.ok:
            return HTMLResponse(page("❌ Schedule not found", f"<p>Schedule {escape(schedule_id)} not found.</p>"),
                                status_code=404)
        p = result.value
        limit = f"{p.current_executions}/{p.max_executions}" if p.bounded else f"{p.current_executions}/∞"
        body = f"""
          <h2>Schedule {p.id}</h2>
          <div class="cards">
            <div class="card"><b>State</b><p>{p.status.value}{" (paused: " + escape(p.paused_reason or "") + ")" if p.paused else ""}</p></div>
            <div class="card"><b>Executions</b><p>{limit}</p></div>
            <div class="card"><b>Amount</b><p>{p.amount} {escape(p.token)}</p></div>
            <div class="card"><b>Repeat</b><p>{p.repeat_interval.value}</p></div>
          </div>

          <h3>Recipient</h3>
          <p class="muted">{escape(p.recipient_address)}{" (" + escape(p.recipient_name) + ")" if p.recipient_name else ""}</p>

          <h3>Timestamps</h3>
          <table>
            <tr><th>Created</th><td>{_fmt(p.created_at)}</td></tr>
            <tr><th>Start</th><td>{_fmt(p.start_date)}</td></tr>
            <tr><th>Next run</th><td>{_fmt(p.next_execution_date)}</td></tr>
            <tr><th>Last executed</th><td>{_fmt(p.last_executed_at)}</td></tr>
            <tr><th>Updated</th><td>{_fmt(p.updated_at)}</td></tr>
          </table>

          <h3>Memo</h3>
          <pre>{escape(p.memo or "-")}</pre>

          <h3>Failure</h3>
          <pre>{escape(p.failure_reason or "-")}</pre>
        """
        return page(f"🔎 Schedule {p.id}", body)

    return app
