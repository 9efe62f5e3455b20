from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal

TemplateId = Literal["vite_react", "vite_react_tailwind"]

DEFAULT_TEMPLATE_ID: TemplateId = "vite_react"

_VITE_CONFIG = """import { defineConfig } from 'vite';
import react from '@vitejs/plugin-react';

export default defineConfig({
  plugins: [react()],
  server: { port: 3000 },
});
"""

_INDEX_HTML = """<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>AiCoder</title>
  </head>
  <body>
    <div id="root"></div>
    <script type="module" src="/src/main.tsx"></script>
  </body>
</html>
"""

_MAIN_TSX = """import React from 'react';
import ReactDOM from 'react-dom/client';
import App from './App';

ReactDOM.createRoot(document.getElementById('root')!).render(
  <React.StrictMode>
    <App />
  </React.StrictMode>
);
"""

_APP_TSX = """import React from 'react';

export default function App() {
  return (
    <div className="p-8 font-sans">
      <h1 className="text-3xl font-bold text-blue-600">AiCoder Ready!</h1>
      <p className="mt-4 text-gray-600">Start building with AI.</p>
    </div>
  );
}
"""

_TSCONFIG = {
    "compilerOptions": {
        "target": "ES2022",
        "module": "ESNext",
        "moduleResolution": "bundler",
        "jsx": "react-jsx",
        "strict": True,
        "esModuleInterop": True,
        "skipLibCheck": True,
        "forceConsistentCasingInFileNames": True,
    }
}

_TAILWIND_CONFIG = """/** @type {import('tailwindcss').Config} */
export default {
  content: ['./index.html', './src/**/*.{js,ts,jsx,tsx}'],
  theme: { extend: {} },
  plugins: [],
};
"""

_POSTCSS_CONFIG = """export default {
  plugins: { tailwindcss: {}, autoprefixer: {} },
};
"""

_INDEX_CSS = """@tailwind base;
@tailwind components;
@tailwind utilities;

body {
  margin: 0;
  font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
}
"""


def _package_json(*, tailwind: bool) -> str:
    pkg: dict[str, Any] = {
        "name": "aicoder-app",
        "private": True,
        "type": "module",
        "scripts": {"dev": "vite", "build": "vite build", "preview": "vite preview"},
        "dependencies": {"react": "^18.3.1", "react-dom": "^18.3.1"},
        "devDependencies": {
            "@types/react": "^18.3.0",
            "@types/react-dom": "^18.3.0",
            "@vitejs/plugin-react": "^4.3.2",
            "typescript": "^5.5.4",
            "vite": "^5.4.8",
        },
    }
    if tailwind:
        pkg["devDependencies"].update(
            {"tailwindcss": "^3.4.0", "autoprefixer": "^10.4.0", "postcss": "^8.4.0"}
        )
    return json.dumps(pkg, indent=2) + "\n"


@dataclass(frozen=True)
class TemplateSpec:
    template_id: TemplateId
    label: str
    files: dict[str, str]
    install_cmd: tuple[str, ...] = ("npm", "install")
    dev_cmd: tuple[str, ...] = ("npm", "run", "dev", "--", "--host")
    # Directory that relative AI filenames are rooted under.
    source_dir: str = "/src"
    context_exclude: frozenset[str] = field(
        default_factory=lambda: frozenset({"/package-lock.json"})
    )


_DEFAULT_SPECS: dict[TemplateId, TemplateSpec] = {
    "vite_react": TemplateSpec(
        template_id="vite_react",
        label="Single-Page App (React + Vite)",
        files={
            "/package.json": _package_json(tailwind=False),
            "/vite.config.ts": _VITE_CONFIG,
            "/tsconfig.json": json.dumps(_TSCONFIG, indent=2) + "\n",
            "/index.html": _INDEX_HTML,
            "/src/main.tsx": _MAIN_TSX,
            "/src/App.tsx": _APP_TSX,
        },
    ),
    "vite_react_tailwind": TemplateSpec(
        template_id="vite_react_tailwind",
        label="Single-Page App (React + Vite + Tailwind)",
        files={
            "/package.json": _package_json(tailwind=True),
            "/vite.config.ts": _VITE_CONFIG,
            "/tsconfig.json": json.dumps(_TSCONFIG, indent=2) + "\n",
            "/tailwind.config.js": _TAILWIND_CONFIG,
            "/postcss.config.js": _POSTCSS_CONFIG,
            "/index.html": _INDEX_HTML,
            "/src/main.tsx": _MAIN_TSX.replace(
                "import App from './App';", "import App from './App';\nimport './index.css';"
            ),
            "/src/App.tsx": _APP_TSX,
            "/src/index.css": _INDEX_CSS,
        },
    ),
}


def parse_template_id(raw: Any) -> TemplateId | None:
    v = str(raw or "").strip()
    if v in _DEFAULT_SPECS:
        return v  # type: ignore[return-value]
    return None


def default_template_id() -> TemplateId:
    return DEFAULT_TEMPLATE_ID


def template_spec(template_id: str | None) -> TemplateSpec:
    tid = parse_template_id(template_id) or DEFAULT_TEMPLATE_ID
    return _DEFAULT_SPECS[tid]


def list_templates() -> list[dict[str, str]]:
    return [{"id": s.template_id, "label": s.label} for s in _DEFAULT_SPECS.values()]
