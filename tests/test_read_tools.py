"""Tests for the read-only file, structure and manifest tools."""

import json
from unittest.mock import patch

import pytest

from atelier.core.session import EditSession
from atelier.tools.project import build_project_tools, summarize_manifest
from atelier.tools.read import build_read_tools
from atelier.tools.structure import MAX_RECURSIVE_ENTRIES, build_structure_tools


@pytest.fixture
def session(tmp_path):
    (tmp_path / "main.py").write_text("line1\nline2\nline3\nline4\n")
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.ts").write_text("export const x = 1;\n")
    (tmp_path / "src" / "app.ts.backup").write_text("old")
    (tmp_path / ".hidden").write_text("secret")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "dep.js").write_text("module.exports = {}")
    return EditSession(tmp_path)


@pytest.fixture
def tools(session):
    return {
        t.name: t
        for t in [
            *build_read_tools(session),
            *build_structure_tools(session),
            *build_project_tools(session),
        ]
    }


class TestReadFile:
    def test_reads_content(self, tools):
        result = tools["read_file"].invoke({"file_path": "main.py"})
        assert result["success"] is True
        assert result["content"].startswith("line1")
        assert result["total_lines"] == 5
        assert result["truncated"] is False

    def test_large_content_is_truncated(self, session, tools):
        (session.project_root / "big.txt").write_text("x" * 500)
        with patch("atelier.tools._common.get_settings") as ms:
            ms.return_value.max_output_chars = 100
            result = tools["read_file"].invoke({"file_path": "big.txt"})
        assert result["truncated"] is True
        assert "truncated" in result["content"]

    def test_missing_file(self, tools):
        result = tools["read_file"].invoke({"file_path": "nope.py"})
        assert result["success"] is False

    def test_utf8_bom_is_stripped(self, session, tools):
        (session.project_root / "bom.txt").write_bytes(b"\xef\xbb\xbfhello")
        result = tools["read_file"].invoke({"file_path": "bom.txt"})
        assert result["content"] == "hello"


class TestLineRange:
    def test_inclusive_one_indexed(self, tools):
        result = tools["get_line_range"].invoke({"file_path": "main.py", "start_line": 2, "end_line": 3})
        assert result["content"] == "line2\nline3"
        assert result["total_lines"] == 5

    def test_range_past_end(self, tools):
        result = tools["get_line_range"].invoke({"file_path": "main.py", "start_line": 4, "end_line": 99})
        assert result["content"] == "line4\n"


class TestFileInfo:
    def test_metadata(self, tools):
        result = tools["get_file_info"].invoke({"file_path": "main.py"})
        assert result["success"] is True
        assert result["extension"] == ".py"
        assert result["line_count"] == 5
        assert result["size"] == len("line1\nline2\nline3\nline4\n")
        assert result["is_large_file"] is False
        assert "T" in result["last_modified"]


class TestListFiles:
    def test_hides_dot_entries_node_modules_and_sidecars(self, tools):
        result = tools["list_files"].invoke({"directory": "."})
        names = [e["name"] for e in result["entries"]]
        assert names == ["src", "main.py"]

        nested = tools["list_files"].invoke({"directory": "src"})
        assert [e["name"] for e in nested["entries"]] == ["app.ts"]

    def test_recursive(self, tools):
        result = tools["list_files"].invoke({"directory": ".", "recursive": True})
        paths = {e["path"] for e in result["entries"]}
        assert {"main.py", "src/app.ts"} <= paths
        assert "node_modules/dep.js" not in paths
        assert "src/app.ts.backup" not in paths

    def test_recursive_is_capped(self, session, tools):
        many = session.project_root / "many"
        many.mkdir()
        for i in range(MAX_RECURSIVE_ENTRIES + 20):
            (many / f"f{i:03d}.txt").write_text("")
        result = tools["list_files"].invoke({"directory": "many", "recursive": True})
        assert result["count"] == MAX_RECURSIVE_ENTRIES

    def test_not_a_directory(self, tools):
        result = tools["list_files"].invoke({"directory": "main.py"})
        assert result["success"] is False


class TestProjectStructure:
    def test_tree(self, tools):
        result = tools["get_project_structure"].invoke({})
        assert result["tree"] == {"main.py": "file", "src": {"app.ts": "file"}}
        assert result["total_files"] == 2

    def test_depth_limit(self, tools):
        result = tools["get_project_structure"].invoke({"max_depth": 1})
        assert result["tree"] == {"main.py": "file"}


class TestPackageInfo:
    def test_package_json(self, session, tools):
        (session.project_root / "package.json").write_text(json.dumps({
            "name": "demo",
            "version": "1.2.3",
            "scripts": {"test": "vitest"},
            "dependencies": {"react": "^18"},
            "devDependencies": {"vitest": "^1"},
        }))
        result = tools["get_package_info"].invoke({})
        assert result["manifest"] == "package.json"
        assert result["name"] == "demo"
        assert result["dependencies"] == ["react"]
        assert result["dev_dependencies"] == ["vitest"]

    def test_pyproject_fallback(self, session):
        (session.project_root / "pyproject.toml").write_text(
            '[project]\nname = "demo"\nversion = "0.1"\ndependencies = ["httpx"]\n'
            '[project.optional-dependencies]\ntest = ["pytest"]\n'
        )
        result = summarize_manifest(session)
        assert result["manifest"] == "pyproject.toml"
        assert result["dependencies"] == ["httpx"]
        assert result["dev_dependencies"] == ["pytest"]

    def test_no_manifest(self, tools):
        result = tools["get_package_info"].invoke({})
        assert result["success"] is False
