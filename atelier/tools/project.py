"""Project manifest summary (package.json, or pyproject.toml as a fallback)."""

from __future__ import annotations

import json
import tomllib

from langchain_core.tools import BaseTool, tool
from pydantic import BaseModel

from atelier.core.logging import get_logger
from atelier.core.session import EditSession

from ._common import fail, guarded, ok, read_text

logger = get_logger("tools.project")


class NoArgs(BaseModel):
    pass


def summarize_manifest(session: EditSession) -> dict:
    package_json = session.project_root / "package.json"
    if package_json.is_file():
        try:
            pkg = json.loads(read_text(package_json))
        except json.JSONDecodeError as exc:
            return fail(f"Invalid package.json: {exc}")
        return ok(
            manifest="package.json",
            name=pkg.get("name"),
            version=pkg.get("version"),
            scripts=pkg.get("scripts") or {},
            dependencies=sorted((pkg.get("dependencies") or {}).keys()),
            dev_dependencies=sorted((pkg.get("devDependencies") or {}).keys()),
        )

    pyproject = session.project_root / "pyproject.toml"
    if pyproject.is_file():
        try:
            data = tomllib.loads(read_text(pyproject))
        except tomllib.TOMLDecodeError as exc:
            return fail(f"Invalid pyproject.toml: {exc}")
        project = data.get("project", {})
        optional = project.get("optional-dependencies", {})
        return ok(
            manifest="pyproject.toml",
            name=project.get("name"),
            version=project.get("version"),
            scripts=project.get("scripts", {}),
            dependencies=list(project.get("dependencies", [])),
            dev_dependencies=sorted({dep for deps in optional.values() for dep in deps}),
        )

    return fail("No package.json or pyproject.toml found at the project root.")


def build_project_tools(session: EditSession) -> list[BaseTool]:

    @tool("get_package_info", args_schema=NoArgs)
    @guarded
    def get_package_info() -> dict:
        """Read the project manifest to understand dependencies and scripts."""
        result = summarize_manifest(session)
        logger.info("pkg_info   | %s", result.get("manifest") or result.get("error"))
        return result

    return [get_package_info]
