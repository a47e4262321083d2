"""
Failure Classifier.

Maps failing check runs to an ErrorKind using ordered pattern rules.
Pure: no I/O, same input always gives the same kind.
"""

import re
from typing import Iterable, List, Optional, Sequence, Tuple

import structlog

from ci_autofix.models.state import CheckStatus, ErrorKind, FailureDetail

logger = structlog.get_logger()

LOG_EXCERPT_LIMIT = 2000


class FailureClassifier:
    """Classifies CI failures into error kinds."""

    # Ordered: first matching rule wins. Audit and format come before lint so
    # that "npm audit" or "ruff format" are not taken for generic lint jobs.
    RULES: List[Tuple[ErrorKind, List[str]]] = [
        (ErrorKind.DEPENDENCY_VULNERABILITY, [
            r"\b(?:npm|yarn|pnpm|pip|cargo|bundler?|composer|security)[- ]audit\b",
            r"^audit$",
            r"vulnerab",
            r"\bcve-\d{4}-\d+",
            r"\bghsa-",
            r"dependabot",
            r"\bsnyk\b",
            r"\bsafety (?:check|scan)\b",
            r"dependency[- ]review",
            r"osv-scanner",
        ]),
        (ErrorKind.FORMAT, [
            r"\bformat",
            r"prettier",
            r"\bblack\b",
            r"autopep8",
            r"\bisort\b",
            r"gofmt",
            r"rustfmt",
            r"cargo fmt",
            r"would reformat",
            r"code style issues",
        ]),
        (ErrorKind.LINT, [
            r"lint",
            r"\bruff\b",
            r"flake8",
            r"pylint",
            r"clippy",
            r"static analysis",
            r"stylelint",
            r"\bvet\b",
        ]),
        (ErrorKind.TYPE_ERROR, [
            r"type[- ]?check",
            r"\bmypy\b",
            r"pyright",
            r"\btsc\b",
            r"error ts\d+",
            r"type error",
            r"incompatible types?",
        ]),
        (ErrorKind.TEST_FAILURE, [
            r"\btests?\b",
            r"\bspec\b",
            r"pytest",
            r"\bjest\b",
            r"\bmocha\b",
            r"unittest",
            r"vitest",
            r"\d+ failed",
            r"assertion(error)?",
        ]),
        (ErrorKind.BUILD_ERROR, [
            r"\bbuild\b",
            r"compil",
            r"webpack",
            r"\bbabel\b",
            r"rollup",
            r"\bvite\b",
            r"\bmake\b",
            r"gradle",
            r"maven",
        ]),
    ]

    # Paths mentioned in tool output
    FILE_PATTERNS = [
        # pytest: tests/test_auth.py::test_login FAILED
        r"([A-Za-z0-9_\-/.]+\.(?:py|ts|tsx|js|jsx|go|rs))::",
        # TypeScript: src/components/Button.tsx(45,12): error TS2322
        r"([A-Za-z0-9_\-/.]+\.(?:py|ts|tsx|js|jsx|go|rs))\(\d+,\d+\)",
        # Python traceback: File "app/models/user.py", line 123
        r'File "([A-Za-z0-9_\-/.]+\.(?:py|ts|tsx|js|jsx|go|rs))"',
        # ruff / flake8 / eslint compact: src/app.py:12:5: E501
        r"(?:^|\s)([A-Za-z0-9_\-/.]+\.(?:py|ts|tsx|js|jsx|go|rs)):\d+",
        # black: would reformat src/app.py
        r"would reformat ([A-Za-z0-9_\-/.]+)",
        # lock and manifest files
        r"(?:^|[\s/])((?:package(?:-lock)?\.json|yarn\.lock|pnpm-lock\.yaml|requirements\.txt|"
        r"poetry\.lock|Pipfile\.lock|Cargo\.lock|go\.sum|go\.mod))\b",
    ]

    def __init__(self):
        self._rules = [
            (kind, [re.compile(p, re.IGNORECASE) for p in patterns])
            for kind, patterns in self.RULES
        ]
        self._file_patterns = [re.compile(p, re.MULTILINE) for p in self.FILE_PATTERNS]

    def classify(
        self,
        check_name: str,
        summary: str = "",
        text: str = "",
        affected_files: Sequence[str] = (),
    ) -> ErrorKind:
        """
        Classify a failing check.

        The check name is matched against every rule first since job names
        are the most reliable signal; the output text is the fallback.

        Args:
            check_name: Name of the failed check
            summary: Title and summary text reported by the check
            text: Log/output text
            affected_files: Files associated with the failure

        Returns:
            ErrorKind, UNKNOWN when nothing matches
        """
        kind = self._match(check_name)
        if kind is None:
            kind = self._match(f"{summary}\n{text}")
        if kind is None and affected_files and all(is_manifest_file(f) for f in affected_files):
            if re.search(r"vulnerab|advisor|insecure", f"{summary} {text}", re.IGNORECASE):
                kind = ErrorKind.DEPENDENCY_VULNERABILITY
        return kind or ErrorKind.UNKNOWN

    def _match(self, text: str) -> Optional[ErrorKind]:
        if not text or not text.strip():
            return None
        for kind, patterns in self._rules:
            if any(p.search(text) for p in patterns):
                return kind
        return None

    def extract_files(self, output: str) -> List[str]:
        """Extract file paths from check output, in order of first appearance."""
        found = []
        for pattern in self._file_patterns:
            for match in pattern.finditer(output or ""):
                found.append((match.start(1), match.group(1).lstrip("/")))
        files: List[str] = []
        for _, path in sorted(found):
            if path not in files:
                files.append(path)
        return files

    def build_failure(self, check: CheckStatus) -> FailureDetail:
        """Turn a failing check into a classified, immutable FailureDetail."""
        summary = check.summary or check.title or "No summary available"
        affected_files = self.extract_files(f"{check.summary}\n{check.text}")
        kind = self.classify(
            check.name,
            summary=f"{check.title}\n{check.summary}",
            text=check.text,
            affected_files=affected_files,
        )
        excerpt = (check.text or check.summary or "")[-LOG_EXCERPT_LIMIT:]

        logger.debug(
            "failure_classified",
            check=check.name,
            error_kind=kind.value,
            files=len(affected_files),
        )
        return FailureDetail(
            check_name=check.name,
            summary=summary,
            error_kind=kind,
            affected_files=tuple(affected_files),
            log_excerpt=excerpt,
            url=check.url,
        )

    def build_failures(self, checks: Iterable[CheckStatus]) -> List[FailureDetail]:
        return [self.build_failure(c) for c in checks if c.state.is_failing]


MANIFEST_FILES = {
    "package.json",
    "package-lock.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "requirements.txt",
    "poetry.lock",
    "pipfile.lock",
    "cargo.lock",
    "go.sum",
    "go.mod",
}


def is_manifest_file(path: str) -> bool:
    """True for dependency manifests and lock files."""
    return path.rsplit("/", 1)[-1].lower() in MANIFEST_FILES
