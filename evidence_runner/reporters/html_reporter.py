# evidence_runner/reporters/html_reporter.py
"""
HTML Reporter

Renders <evidence_dir>/execution-report.html from the RunReport with a
single self-contained jinja2 template (no external assets).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from jinja2 import BaseLoader, Environment, select_autoescape

from evidence_runner.plugins import BaseReporter
from evidence_runner.types import RunReport, utc_now

logger = logging.getLogger(__name__)

# ==================== Template ====================

_HTML_TEMPLATE = """<!doctype html>
<html lang="en" data-theme="light">
<head>
<meta charset="utf-8">
<title>Evidence Report - {{ report.run_id }}</title>
<meta name="viewport" content="width=device-width,initial-scale=1"/>
<style>
  :root {
    --bg:#f7fafc; --fg:#111; --muted:#666; --card:#fff; --accent:#0b5fff;
    --ok:#1a7f37; --bad:#d00000; --warn:#f59e0b;
  }
  [data-theme="dark"] { --bg:#1a1a1a; --fg:#e5e5e5; --card:#2a2a2a; --muted:#999; }
  * { box-sizing: border-box; }
  body { font-family: Inter, 'Segoe UI', Roboto, sans-serif; background: var(--bg); color: var(--fg); margin: 0; padding: 20px; }
  .wrap { max-width: 1100px; margin: 0 auto; }
  .header { display: flex; justify-content: space-between; align-items: center; margin-bottom: 20px; }
  .card { background: var(--card); border-radius: 12px; box-shadow: 0 4px 12px rgba(0,0,0,0.08); padding: 20px; margin-bottom: 16px; }
  h1,h2,h3 { margin: 0 0 12px 0; }
  .muted { color: var(--muted); font-size: 13px; }
  .badge { display: inline-block; padding: 4px 12px; border-radius: 6px; font-size: 12px; font-weight: 600; text-transform: uppercase; color: #fff; }
  .badge.PASSED { background: var(--ok); }
  .badge.FAILED { background: var(--bad); }
  .badge.SKIPPED, .badge.PENDING, .badge.RUNNING { background: var(--warn); }
  .stats { display: flex; gap: 24px; }
  table { width: 100%; border-collapse: collapse; font-size: 14px; }
  th, td { padding: 8px 10px; border-bottom: 1px solid #eee; text-align: left; vertical-align: top; }
  th { background: #eef4ff; font-weight: 600; }
  pre { background: #f0f3f7; padding: 10px; border-radius: 8px; overflow: auto; font-size: 12px; margin: 0; }
  .ok { color: var(--ok); } .bad { color: var(--bad); }
  button { background: var(--accent); color: #fff; border: none; padding: 8px 16px; border-radius: 6px; cursor: pointer; }
  footer { margin-top: 30px; text-align: center; color: var(--muted); font-size: 12px; }
</style>
</head>
<body>
<div class="wrap">
  <div class="header">
    <div>
      <h1>🧪 Test Execution Report</h1>
      <div class="muted"><strong>{{ report.run_id }}</strong> • {{ report.spec_path }} • {{ generated }}</div>
    </div>
    <button onclick="toggleTheme()">🌓 Theme</button>
  </div>

  <div class="card">
    <h2>📊 Summary</h2>
    <div class="stats">
      <div><div class="muted">Total</div><strong>{{ summary.total }}</strong></div>
      <div><div class="muted">Passed</div><strong class="ok">{{ summary.passed }}</strong></div>
      <div><div class="muted">Failed</div><strong class="bad">{{ summary.failed }}</strong></div>
      <div><div class="muted">Skipped</div><strong>{{ summary.skipped }}</strong></div>
      <div><div class="muted">Duration</div><strong>{{ '%.2f' % (report.duration_ms / 1000) }}s</strong></div>
    </div>
    {% if report.fatal_error %}<p class="bad">💥 {{ report.fatal_error }}</p>{% endif %}
  </div>

  {% for task in report.tasks.values() %}
  <div class="card">
    <h3>{{ task.task_id }}: {{ task.title }} <span class="badge {{ task.status.value }}">{{ task.status.value }}</span></h3>
    {% if task.failure_reason %}<p class="bad">{{ task.failure_reason }}</p>{% endif %}

    {% if task.steps %}
    <table>
      <tr><th>Phase</th><th>Action</th><th>Type</th><th>Result</th><th>Duration</th><th>Evidence</th></tr>
      {% for step in task.steps %}
      <tr>
        <td>{{ step.phase.value }}</td>
        <td>{{ step.action_id }}<div class="muted">{{ step.action.description }}</div></td>
        <td>{{ step.action.type }}</td>
        <td>{% if step.success %}<span class="ok">✅</span>{% else %}<span class="bad">❌ {{ step.error }}</span>{% endif %}</td>
        <td>{{ '%.0f' % step.duration_ms }}ms</td>
        <td>{% if step.evidence_file %}<a href="{{ relative(step.evidence_file) }}">{{ step.evidence_file.split('/')[-1] }}</a>{% endif %}</td>
      </tr>
      {% endfor %}
    </table>
    {% endif %}

    {% if task.validation and task.validation.evaluations %}
    <h4>Validation</h4>
    <table>
      <tr><th></th><th>Criterion</th><th>Condition</th><th>Detail</th></tr>
      {% for ev in task.validation.evaluations %}
      <tr>
        <td>{{ '✅' if ev.passed else '❌' }}</td>
        <td>{{ ev.description }}</td>
        <td><pre>{{ ev.condition }}</pre></td>
        <td>{{ ev.error or '' }}</td>
      </tr>
      {% endfor %}
    </table>
    {% endif %}

    {% set findings = task.failure_analysis if task.failure_analysis else task.technical_debt %}
    {% if findings %}
    <h4>{{ 'Failure Analysis' if task.failure_analysis else 'Technical Debt' }}</h4>
    <table>
      <tr><th>Severity</th><th>Category</th><th>Description</th><th>Suggested fix</th></tr>
      {% for f in findings %}
      <tr><td>{{ f.severity.value }}</td><td>{{ f.category }}</td><td>{{ f.description }}</td><td>{{ f.suggested_fix }}</td></tr>
      {% endfor %}
    </table>
    {% endif %}
  </div>
  {% endfor %}

  <footer>Generated by evidence-runner</footer>
</div>
<script>
  function toggleTheme() {
    const html = document.documentElement;
    const next = html.getAttribute('data-theme') === 'dark' ? 'light' : 'dark';
    html.setAttribute('data-theme', next);
    localStorage.setItem('theme', next);
  }
  const saved = localStorage.getItem('theme');
  if (saved) document.documentElement.setAttribute('data-theme', saved);
</script>
</body>
</html>
"""

_env = Environment(
    loader=BaseLoader(),
    autoescape=select_autoescape(enabled_extensions=("html", "xml"), default_for_string=True),
)


class HtmlReporter(BaseReporter):
    name = "html-reporter"
    format = "html"

    async def generate(self, report: RunReport, evidence_dir: str) -> Optional[str]:
        out_dir = Path(evidence_dir)
        path = out_dir / "execution-report.html"

        def relative(evidence_file: str) -> str:
            try:
                return Path(evidence_file).resolve().relative_to(out_dir.resolve()).as_posix()
            except ValueError:
                return Path(evidence_file).as_posix()

        html = _env.from_string(_HTML_TEMPLATE).render(
            report=report,
            summary=report.summary,
            generated=utc_now(),
            relative=relative,
        )
        out_dir.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(html, encoding="utf-8")
        tmp.replace(path)
        return str(path)
