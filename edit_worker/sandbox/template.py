"""
Starter application seeded into empty sandbox workspaces.

A small Express server on port 3001 with a JSON health endpoint and a static
home page. The agent edits these files; the preview serves them.
"""

import json
from typing import Dict


PACKAGE_JSON = json.dumps(
    {
        "name": "preview-app",
        "version": "1.0.0",
        "private": True,
        "main": "server.js",
        "scripts": {"start": "node --watch server.js"},
        "dependencies": {"express": "^4.19.2"},
    },
    indent=2,
) + "\n"

SERVER_JS = """const express = require("express");
const path = require("path");

const app = express();
const PORT = process.env.PORT || 3001;

app.use(express.urlencoded({ extended: true }));
app.use(express.json());
app.use(express.static(path.join(__dirname, "public")));

let counter = 0;

app.get("/health", (req, res) => {
  res.json({ status: "ok", timestamp: new Date().toISOString() });
});

app.post("/api/counter/increment", (req, res) => {
  counter++;
  res.send(`<div id="counter-display" class="counter-value">${counter}</div>`);
});

app.post("/api/counter/reset", (req, res) => {
  counter = 0;
  res.send(`<div id="counter-display" class="counter-value">${counter}</div>`);
});

app.listen(PORT, "0.0.0.0", () => {
  console.log(`Server running on http://0.0.0.0:${PORT}`);
});
"""

INDEX_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>Preview App</title>
  <script src="https://unpkg.com/htmx.org@1.9.12"></script>
  <style>
    body { font-family: system-ui, sans-serif; max-width: 40rem; margin: 4rem auto; color: #222; }
    .counter-value { font-size: 2rem; font-weight: 700; margin: 1rem 0; }
    button { padding: 0.5rem 1rem; margin-right: 0.5rem; }
  </style>
</head>
<body>
  <h1>Hello from your sandbox</h1>
  <p>Ask the assistant to change anything on this page.</p>
  <div id="counter-display" class="counter-value">0</div>
  <button hx-post="/api/counter/increment" hx-target="#counter-display" hx-swap="outerHTML">+1</button>
  <button hx-post="/api/counter/reset" hx-target="#counter-display" hx-swap="outerHTML">Reset</button>
</body>
</html>
"""


def starter_files() -> Dict[str, str]:
    """Files of the starter app, relative to the app directory."""
    return {
        "package.json": PACKAGE_JSON,
        "server.js": SERVER_JS,
        "public/index.html": INDEX_HTML,
    }


INSTALL_COMMAND = "npm install --silent --no-audit --no-fund"
