"""HTML templates for the terminal surface.

- generate_terminal_html: one session rendered with xterm.js over SSE
- generate_index_html: list of live sessions
"""

from __future__ import annotations

import html

from .colors import ANSI, COLORS

__all__ = [
    "generate_terminal_html",
    "generate_index_html",
]

XTERM_CDN = "https://cdn.jsdelivr.net/npm/xterm@5.3.0"
XTERM_FIT_CDN = "https://cdn.jsdelivr.net/npm/xterm-addon-fit@0.8.0"


def generate_terminal_html(session_id: int, *, title: str = "Terminal Output") -> str:
    """Build the terminal page for one session.

    The page connects to ``/sse/<id>``; the first message is a catch-up
    snapshot, then live ``output`` and ``complete`` messages follow.
    Keystrokes are posted to ``/input/<id>``.

    Args:
        session_id: Session to render
        title: Window title

    Returns:
        Complete HTML string
    """
    title = html.escape(title)

    return f'''<!DOCTYPE html>
<html>
<head>
<meta charset="UTF-8">
<title>{title}</title>
<link rel="stylesheet" href="{XTERM_CDN}/css/xterm.css" />
<script src="{XTERM_CDN}/lib/xterm.js"></script>
<script src="{XTERM_FIT_CDN}/lib/xterm-addon-fit.js"></script>
<style>
* {{ margin: 0; padding: 0; box-sizing: border-box; }}
body {{
    background: {COLORS["bg"]};
    color: {COLORS["fg"]};
    font-family: Monaco, Menlo, Consolas, 'Courier New', monospace;
    height: 100vh;
    display: flex;
    flex-direction: column;
    overflow: hidden;
}}
#terminal-container {{ flex: 1; margin: 0 4px; background: {COLORS["bg"]}; overflow: hidden; position: relative; }}
.terminal-footer {{
    background: {COLORS["bg_secondary"]};
    padding: 10px 16px;
    border-top: 1px solid {COLORS["border"]};
    display: flex;
    justify-content: flex-end;
    gap: 10px;
    flex-shrink: 0;
}}
.terminal-footer button {{
    background: {COLORS["button"]};
    color: white;
    border: none;
    padding: 6px 14px;
    border-radius: 3px;
    cursor: pointer;
    font-size: 12px;
}}
.terminal-footer button:hover {{ background: {COLORS["button_hover"]}; }}
#killBtn {{ background: {COLORS["danger"]}; }}
#killBtn:hover {{ background: {COLORS["danger_hover"]}; }}
#status {{ margin-right: auto; font-size: 11px; color: {COLORS["fg_muted"]}; align-self: center; }}
</style>
</head>
<body>
<div id="terminal-container"></div>
<div class="terminal-footer">
    <span id="status">Connecting...</span>
    <button id="killBtn">Stop Execution</button>
    <button id="closeBtn">Close</button>
</div>
<script>
const sessionId = {int(session_id)};
const term = new Terminal({{
    cursorBlink: true,
    convertEol: true,
    fontSize: 13,
    theme: {{ background: '{COLORS["bg"]}' }}
}});
const fitAddon = new FitAddon.FitAddon();
term.loadAddon(fitAddon);
term.open(document.getElementById('terminal-container'));
fitAddon.fit();
window.addEventListener('resize', () => fitAddon.fit());

const statusEl = document.getElementById('status');
let completed = false;
let evtSource = null;

function post(action, body) {{
    return fetch(`/${{action}}/${{sessionId}}`, {{ method: 'POST', body: body || '' }});
}}

// Completion can arrive through the snapshot or live; render it once
function handleCompletion(result) {{
    if (completed || !result) return;
    completed = true;

    if (result.error) {{
        term.write('{ANSI["stderr"]}' + result.error + '{ANSI["reset"]}\\r\\n');
    }}
    const isSuccess = result.exitCode === 0 && !result.wasInterrupted && !result.error;
    const color = isSuccess ? '{ANSI["success"]}' : '{ANSI["error"]}';
    const exitValue = result.wasInterrupted ? 'null' : result.exitCode;
    term.write('\\r\\n' + color + 'Exit code: ' + exitValue + '{ANSI["reset"]}');

    term.options.cursorBlink = false;
    term.write('{ANSI["hide_cursor"]}');
    document.getElementById('killBtn').style.display = 'none';
    statusEl.textContent = 'Finished';
}}

term.onData(data => {{ if (!completed) post('input', data); }});

document.getElementById('killBtn').addEventListener('click', () => post('interrupt'));
document.getElementById('closeBtn').addEventListener('click', () => {{
    post('close').finally(() => window.close());
}});
document.addEventListener('keydown', e => {{
    if (e.key === 'Escape') post('close').finally(() => window.close());
}});

function connect() {{
    evtSource = new EventSource(`/sse/${{sessionId}}`);

    evtSource.onmessage = function(e) {{
        let msg;
        try {{
            msg = JSON.parse(e.data);
        }} catch (err) {{
            console.error('SSE parse error:', err);
            return;
        }}
        if (msg.kind === 'snapshot') {{
            term.reset();
            term.write(msg.buffer || '');
            statusEl.textContent = msg.isComplete ? 'Finished' : 'Running';
            if (msg.isComplete) handleCompletion(msg.lastResult);
        }} else if (msg.kind === 'output') {{
            term.write(msg.data);
        }} else if (msg.kind === 'complete') {{
            handleCompletion(msg.result);
        }} else if (msg.kind === 'closed') {{
            statusEl.textContent = 'Session closed';
            evtSource.close();
        }}
    }};

    evtSource.onerror = function() {{
        statusEl.textContent = 'Disconnected';
        evtSource.close();
    }};
}}

connect();
window.addEventListener('beforeunload', () => {{ if (evtSource) evtSource.close(); }});
</script>
</body>
</html>'''


def generate_index_html(*, title: str = "Execution Sessions") -> str:
    """Build the session index page (polls ``/sessions``)."""
    title = html.escape(title)

    return f'''<!DOCTYPE html>
<html>
<head>
<meta charset="UTF-8">
<title>{title}</title>
<style>
body {{
    background: {COLORS["bg"]};
    color: {COLORS["fg"]};
    font-family: Monaco, Menlo, Consolas, 'Courier New', monospace;
    font-size: 12px;
    padding: 12px;
}}
a {{ color: {COLORS["running"]}; }}
table {{ border-collapse: collapse; width: 100%; }}
td, th {{ padding: 4px 8px; border-bottom: 1px solid {COLORS["border"]}; text-align: left; }}
.completed {{ color: {COLORS["success"]}; }}
.failed {{ color: {COLORS["error"]}; }}
.running {{ color: {COLORS["running"]}; }}
</style>
</head>
<body>
<h3>{title}</h3>
<table>
<thead><tr><th>#</th><th>Language</th><th>State</th><th>Created</th></tr></thead>
<tbody id="rows"></tbody>
</table>
<script>
async function refresh() {{
    try {{
        const resp = await fetch('/sessions');
        const sessions = await resp.json();
        const rows = document.getElementById('rows');
        rows.innerHTML = '';
        for (const s of sessions) {{
            const tr = document.createElement('tr');
            const link = document.createElement('a');
            link.href = `/session/${{s.sessionId}}`;
            link.textContent = s.sessionId;
            const cells = [link, s.language, s.state, s.createdAt];
            cells.forEach((value, i) => {{
                const td = document.createElement('td');
                if (i === 0) td.appendChild(value); else td.textContent = value;
                if (i === 2) td.className = s.state;
                tr.appendChild(td);
            }});
            rows.appendChild(tr);
        }}
    }} catch (err) {{
        console.error('refresh failed:', err);
    }}
}}
refresh();
setInterval(refresh, 2000);
</script>
</body>
</html>'''
