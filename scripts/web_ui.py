"""管理页面（单文件 HTML，通过 /api/* 接口操作）"""

WEB_UI_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>Sing-box Manager</title>
  <style>
    body { font-family: system-ui, sans-serif; background: #1a1a2e; color: #eee; margin: 0; padding: 20px; }
    .container { max-width: 820px; margin: 0 auto; }
    .card { background: #16213e; border-radius: 10px; padding: 18px; margin-bottom: 18px; }
    h1 { text-align: center; color: #00d9ff; }
    h2 { margin-top: 0; color: #00d9ff; font-size: 1.1em; }
    input { padding: 8px; border-radius: 6px; border: 1px solid #0f3460; background: #0f3460; color: #eee; }
    button { padding: 8px 14px; border: none; border-radius: 6px; background: #00d9ff; color: #1a1a2e; cursor: pointer; }
    button.danger { background: #e94560; color: #fff; }
    .user { display: flex; justify-content: space-between; align-items: center; padding: 10px 0; border-bottom: 1px solid #0f3460; }
    .user .meta { color: #888; font-size: 0.85em; }
    .uri { word-break: break-all; background: #0f3460; padding: 10px; border-radius: 6px; font-family: monospace; font-size: 0.85em; }
    #config img { display: block; margin: 12px auto; background: #fff; }
    #server { color: #888; font-size: 0.9em; }
  </style>
</head>
<body>
<div class="container">
  <h1>Sing-box Manager</h1>
  <div class="card">
    <h2>Server</h2>
    <div id="server">Loading...</div>
    <p><button class="danger" onclick="resetServer()">Reset server</button></p>
  </div>
  <div class="card">
    <h2>Add user</h2>
    <form id="add-form">
      <input id="name" placeholder="Name" required>
      <input id="days" type="number" min="1" placeholder="Expires in days (optional)">
      <button type="submit">Add</button>
    </form>
  </div>
  <div class="card" id="config-card" hidden>
    <h2>Connection link</h2>
    <div id="config"></div>
  </div>
  <div class="card">
    <h2>Users</h2>
    <div id="users"></div>
  </div>
</div>
<script>
  async function api(path, options) {
    const res = await fetch(path, options);
    const body = (res.headers.get("content-type") || "").includes('json') ? await res.json() : null;
    if (!res.ok) throw new Error(body && body.error ? body.error : res.statusText);
    return body;
  }

  function el(tag, text, cls) {
    const node = document.createElement(tag);
    if (text !== undefined) node.textContent = text;
    if (cls) node.className = cls;
    return node;
  }

  async function loadServer() {
    const info = await api('/api/server');
    document.getElementById('server').textContent =
      info.host + ':' + info.port + '  publicKey ' + info.publicKey;
  }

  async function loadUsers() {
    const data = await api('/api/users');
    const list = document.getElementById('users');
    list.replaceChildren();
    if (!data.users.length) {
      list.appendChild(el('p', 'No users yet', 'meta'));
      return;
    }
    for (const u of data.users) {
      const row = el('div', undefined, 'user');
      const left = el('div');
      left.appendChild(el('strong', u.name));
      const status = u.enabled ? (u.expired ? 'expired' : 'active') : 'disabled';
      left.appendChild(el('div', status + (u.expiresAt ? ' until ' + u.expiresAt.slice(0, 10) : ''), 'meta'));
      const right = el('div');
      const show = el('button', 'Show link');
      show.onclick = () => showConfig(u.id);
      const del = el('button', 'Delete', 'danger');
      del.onclick = () => deleteUser(u.id, u.name);
      right.append(show, ' ', del);
      row.append(left, right);
      list.appendChild(row);
    }
  }

  function renderConfig(userId, name, uri) {
    const box = document.getElementById('config');
    box.replaceChildren();
    box.appendChild(el('p', name));
    box.appendChild(el('div', uri, 'uri'));
    const img = document.createElement('img');
    img.src = '/api/users/' + encodeURIComponent(userId) + '/qrcode';
    img.alt = 'QR code';
    img.width = 220;
    box.appendChild(img);
    const copy = el('button', 'Copy link');
    copy.onclick = () => navigator.clipboard.writeText(uri);
    box.appendChild(copy);
    document.getElementById('config-card').hidden = false;
  }

  async function showConfig(userId) {
    try {
      const data = await api('/api/users/' + encodeURIComponent(userId) + '/config');
      renderConfig(data.user.id, data.user.name, data.configs[0].uri);
    } catch (e) { alert(e.message); }
  }

  async function deleteUser(userId, name) {
    if (!confirm('Delete user "' + name + '"?')) return;
    try {
      await api('/api/users/' + encodeURIComponent(userId), { method: 'DELETE' });
      document.getElementById('config-card').hidden = true;
      await loadUsers();
    } catch (e) { alert(e.message); }
  }

  async function resetServer() {
    if (!confirm('Reset generates new keys and deletes ALL users. Continue?')) return;
    try {
      await api('/api/reset', { method: 'POST' });
      document.getElementById('config-card').hidden = true;
      await Promise.all([loadServer(), loadUsers()]);
    } catch (e) { alert(e.message); }
  }

  document.getElementById('add-form').addEventListener('submit', async (event) => {
    event.preventDefault();
    const body = { name: document.getElementById('name').value.trim() };
    const days = parseInt(document.getElementById('days').value, 10);
    if (days > 0) body.expiresInDays = days;
    try {
      const data = await api('/api/users', {
        method: 'POST',
        headers: { 'Content-Type': 'application/json' },
        body: JSON.stringify(body),
      });
      event.target.reset();
      renderConfig(data.user.id, data.user.name, data.configs[0].uri);
      await loadUsers();
    } catch (e) { alert(e.message); }
  });

  loadServer().catch((e) => { document.getElementById('server').textContent = e.message; });
  loadUsers().catch((e) => alert(e.message));
</script>
</body>
</html>
"""
