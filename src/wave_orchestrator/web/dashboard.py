"""Dashboard HTML with inline CSS and vanilla JS."""


def get_dashboard_html() -> str:
    return """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Wave Orchestrator</title>
<style>
  :root {
    --bg: #0d1117; --surface: #161b22; --border: #30363d;
    --text: #e6edf3; --text-muted: #8b949e; --text-dim: #6e7681;
    --ready: #8b949e; --in_progress: #58a6ff; --closed: #3fb950; --blocked: #f85149;
    --warning: #d29922;
  }
  * { margin: 0; padding: 0; box-sizing: border-box; }
  body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Helvetica, Arial, sans-serif;
         background: var(--bg); color: var(--text); line-height: 1.5; }
  .container { max-width: 1100px; margin: 0 auto; padding: 24px 16px; }

  header { display: flex; justify-content: space-between; align-items: center;
           padding-bottom: 16px; border-bottom: 1px solid var(--border); margin-bottom: 24px; }
  header h1 { font-size: 20px; font-weight: 600; }
  header button { background: var(--surface); color: var(--text-muted); border: 1px solid var(--border);
                  padding: 4px 10px; border-radius: 4px; cursor: pointer; font-size: 12px; }

  .grid { display: grid; grid-template-columns: 2fr 1fr; gap: 20px; }
  section h2 { font-size: 14px; color: var(--text-muted); text-transform: uppercase;
               letter-spacing: 0.5px; margin-bottom: 8px; }
  section { margin-bottom: 24px; }

  .card { background: var(--surface); border: 1px solid var(--border);
          border-radius: 8px; padding: 10px 14px; margin-bottom: 4px; }
  .card-header { display: flex; align-items: center; gap: 10px; }
  .badge { display: inline-block; padding: 2px 10px; border-radius: 12px; font-size: 11px;
           font-weight: 600; text-transform: uppercase; letter-spacing: 0.5px; }
  .badge.ready { background: rgba(139,148,158,0.15); color: var(--ready); }
  .badge.in_progress { background: rgba(88,166,255,0.15); color: var(--in_progress); }
  .badge.closed { background: rgba(63,185,80,0.15); color: var(--closed); }
  .badge.blocked { background: rgba(248,81,73,0.15); color: var(--blocked); }
  .title { font-weight: 600; font-size: 14px; }
  .id { font-size: 12px; color: var(--text-dim); font-family: monospace; }
  .details { margin-top: 4px; font-size: 12px; color: var(--text-muted); }
  .details code { background: var(--bg); padding: 1px 5px; border-radius: 3px; }

  .alert { border-left: 3px solid var(--warning); }
  .alert.critical { border-left-color: var(--blocked); }
  .empty { padding: 16px; color: var(--text-muted); font-size: 13px; }
</style>
</head>
<body>
<div class="container">
  <header>
    <h1>Wave Orchestrator</h1>
    <button onclick="loadDashboard()">Refresh</button>
  </header>
  <div class="grid">
    <div>
      <section><h2>Batches</h2><div id="batches"></div></section>
      <section><h2>Items</h2><div id="items"></div></section>
    </div>
    <div>
      <section><h2>Alerts</h2><div id="alerts"></div></section>
      <section><h2>Workers</h2><div id="workers"></div></section>
    </div>
  </div>
</div>

<script>
let refreshTimer = null;

async function fetchJSON(path) {
  const res = await fetch(path);
  if (!res.ok) return null;
  return res.json();
}

function esc(s) {
  if (s === null || s === undefined) return '';
  const d = document.createElement('div');
  d.textContent = String(s);
  return d.innerHTML;
}

function renderItem(item) {
  let details = '';
  if (item.labels.length) details += `Labels: ${item.labels.map(l => `<code>${esc(l)}</code>`).join(' ')} `;
  if (item.depends_on.length) details += `Depends on: ${item.depends_on.map(d => `<code>${esc(d)}</code>`).join(', ')}`;
  return `<div class="card">
    <div class="card-header">
      <span class="badge ${esc(item.status)}">${esc(item.status)}</span>
      <span class="title">${esc(item.title)}</span>
      <span class="id">${esc(item.id)}</span>
    </div>
    ${details ? `<div class="details">${details}</div>` : ''}
  </div>`;
}

function renderWorker(w) {
  const ctx = w.context !== null ? ` [${w.context}%]` : '';
  const tool = w.tool ? ` &middot; ${esc(w.tool)}` : '';
  return `<div class="card">
    <div class="card-header"><span class="id">${esc(w.session)}</span>${w.item_id ? `<span class="title">${esc(w.item_id)}</span>` : ''}</div>
    <div class="details">${esc(w.status)}${ctx}${tool}</div>
  </div>`;
}

async function loadDashboard() {
  const [items, batches, workers] = await Promise.all([
    fetchJSON('/api/items'),
    fetchJSON('/api/batches'),
    fetchJSON('/api/workers'),
  ]);

  document.getElementById('items').innerHTML = items && items.length
    ? items.map(renderItem).join('')
    : '<div class="empty">No items. Create one with <code>wave item add</code>.</div>';

  document.getElementById('batches').innerHTML = batches && batches.length
    ? batches.map(b => `<div class="card"><span class="id">${esc(b.id)}</span>
        <div class="details">${b.items.map(i => `<code>${esc(i)}</code>`).join(' &rarr; ')}</div></div>`).join('')
    : '<div class="empty">No planned batches. Run <code>wave plan</code>.</div>';

  const status = workers ? workers.worker_status : [];
  document.getElementById('workers').innerHTML = status.length
    ? status.map(renderWorker).join('')
    : '<div class="empty">No worker sessions.</div>';

  const alerts = workers ? workers.alerts : [];
  document.getElementById('alerts').innerHTML = alerts.length
    ? alerts.map(a => `<div class="card alert ${esc(a.type)}"><span class="id">${esc(a.session)}</span>
        <div class="details">${esc(a.message)}</div></div>`).join('')
    : '<div class="empty">No alerts.</div>';
}

function startAutoRefresh() {
  if (refreshTimer) clearInterval(refreshTimer);
  refreshTimer = setInterval(loadDashboard, 30000);
}

loadDashboard();
startAutoRefresh();
</script>
</body>
</html>"""
