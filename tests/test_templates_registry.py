import json

from aicoder.templates.registry import (
    default_template_id,
    list_templates,
    parse_template_id,
    template_spec,
)


def test_parse_template_id_supports_vite_react() -> None:
    assert parse_template_id("vite_react") == "vite_react"


def test_parse_template_id_supports_tailwind() -> None:
    assert parse_template_id(" vite_react_tailwind ") == "vite_react_tailwind"


def test_parse_template_id_rejects_unknown() -> None:
    assert parse_template_id("flutter") is None
    assert parse_template_id(None) is None


def test_unknown_template_falls_back_to_default() -> None:
    assert template_spec("nope").template_id == default_template_id()


def test_template_spec_for_vite_react() -> None:
    spec = template_spec("vite_react")
    assert set(spec.files) == {
        "/package.json",
        "/vite.config.ts",
        "/tsconfig.json",
        "/index.html",
        "/src/main.tsx",
        "/src/App.tsx",
    }
    pkg = json.loads(spec.files["/package.json"])
    assert "dev" in pkg["scripts"]
    assert spec.install_cmd == ("npm", "install")
    assert spec.source_dir == "/src"


def test_template_spec_for_tailwind_imports_css() -> None:
    spec = template_spec("vite_react_tailwind")
    assert "/src/index.css" in spec.files
    assert "import './index.css';" in spec.files["/src/main.tsx"]
    pkg = json.loads(spec.files["/package.json"])
    assert "tailwindcss" in pkg["devDependencies"]


def test_list_templates() -> None:
    ids = [t["id"] for t in list_templates()]
    assert ids == ["vite_react", "vite_react_tailwind"]
