"""
Resolves which external fix tool to run for a (language, task) pair.

Priority order:
1. Commands configured under ``autofix.commands``
2. Native tool defaults, each gated on the executable being available
"""

import os
import shlex
import shutil
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

logger = structlog.get_logger()

FILES_PLACEHOLDER = "{files}"

# Manifest / lock files by ecosystem
MANIFEST_LANGUAGES = {
    "package.json": "javascript",
    "package-lock.json": "javascript",
    "yarn.lock": "javascript",
    "pnpm-lock.yaml": "javascript",
    "requirements.txt": "python",
    "poetry.lock": "python",
    "pipfile.lock": "python",
    "pyproject.toml": "python",
    "go.mod": "go",
    "go.sum": "go",
    "cargo.toml": "rust",
    "cargo.lock": "rust",
}

EXTENSION_LANGUAGES = {
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".py": "python",
    ".pyi": "python",
    ".go": "go",
    ".rs": "rust",
}

# (executable to look up, argv template)
DEFAULT_COMMANDS: Dict[Tuple[str, str], List[Tuple[str, List[str]]]] = {
    ("python", "lint"): [("ruff", ["ruff", "check", "--fix", FILES_PLACEHOLDER])],
    ("python", "format"): [
        ("black", ["black", FILES_PLACEHOLDER]),
        ("ruff", ["ruff", "format", FILES_PLACEHOLDER]),
    ],
    ("python", "audit"): [("pip-audit", ["pip-audit", "--fix", "-r", "requirements.txt"])],
    ("javascript", "lint"): [("eslint", ["npx", "eslint", "--fix", FILES_PLACEHOLDER])],
    ("javascript", "format"): [("prettier", ["npx", "prettier", "--write", FILES_PLACEHOLDER])],
    ("javascript", "audit"): [("npm", ["npm", "audit", "fix"])],
    ("go", "lint"): [("golangci-lint", ["golangci-lint", "run", "--fix"])],
    ("go", "format"): [
        ("gofmt", ["gofmt", "-w", FILES_PLACEHOLDER]),
        ("go", ["go", "fmt", "./..."]),
    ],
    ("rust", "lint"): [("cargo", ["cargo", "clippy", "--fix", "--allow-dirty", "--allow-staged"])],
    ("rust", "format"): [("cargo", ["cargo", "fmt"])],
}

# Marker files used when a failure names no files
PROJECT_MARKERS = [
    ("package.json", "javascript"),
    ("pyproject.toml", "python"),
    ("setup.py", "python"),
    ("requirements.txt", "python"),
    ("go.mod", "go"),
    ("Cargo.toml", "rust"),
]


@dataclass
class ToolCommand:
    """A concrete command line to run in the working tree."""
    args: List[str]
    language: str
    task: str
    source: str  # "config" or "native"

    def __str__(self) -> str:
        return shlex.join(self.args)


def detect_language(files: Sequence[str]) -> str:
    """Infer the ecosystem from file names; TypeScript wins over JavaScript."""
    languages = []
    for path in files:
        base = os.path.basename(path).lower()
        if base in MANIFEST_LANGUAGES:
            languages.append(MANIFEST_LANGUAGES[base])
            continue
        ext = os.path.splitext(base)[1]
        if ext in EXTENSION_LANGUAGES:
            languages.append(EXTENSION_LANGUAGES[ext])

    if not languages:
        return "unknown"
    if "typescript" in languages:
        return "typescript"
    return languages[0]


class ToolResolver:
    """Maps (language, task) to a runnable ToolCommand."""

    def __init__(
        self,
        workdir: str = ".",
        overrides: Optional[Dict[str, Dict[str, str]]] = None,
        which=shutil.which,
    ):
        self.workdir = workdir
        self.overrides = overrides or {}
        self._which = which

    def detect_project_language(self) -> str:
        for marker, language in PROJECT_MARKERS:
            if os.path.exists(os.path.join(self.workdir, marker)):
                return language
        return "unknown"

    def resolve(self, language: str, task: str, files: Sequence[str] = ()) -> Optional[ToolCommand]:
        """
        Resolve the command for a task.

        Args:
            language: Detected language (typescript is treated as javascript)
            task: One of lint, format, audit
            files: Files to pass to tools that accept paths

        Returns:
            ToolCommand, or None when no tool is configured or installed
        """
        if language == "unknown":
            language = self.detect_project_language()
        if language == "typescript":
            language = "javascript"

        configured = self.overrides.get(language, {}).get(task)
        if configured:
            command = ToolCommand(
                args=self._expand(shlex.split(configured), files),
                language=language,
                task=task,
                source="config",
            )
            logger.debug("tool_resolved", command=str(command), source="config")
            return command

        for executable, template in DEFAULT_COMMANDS.get((language, task), []):
            if not self._is_available(executable):
                continue
            command = ToolCommand(
                args=self._expand(template, files),
                language=language,
                task=task,
                source="native",
            )
            logger.debug("tool_resolved", command=str(command), source="native")
            return command

        logger.info("no_tool_available", language=language, task=task)
        return None

    def _is_available(self, executable: str) -> bool:
        local_bin = os.path.join(self.workdir, "node_modules", ".bin", executable)
        return bool(self._which(executable)) or os.path.exists(local_bin)

    @staticmethod
    def _expand(template: Sequence[str], files: Sequence[str]) -> List[str]:
        args: List[str] = []
        for arg in template:
            if arg == FILES_PLACEHOLDER:
                args.extend(files or ["."])
            else:
                args.append(arg)
        return args
