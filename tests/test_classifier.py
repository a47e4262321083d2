"""
Failure classifier tests.
"""

import pytest

from ci_autofix.agents.classifier import LOG_EXCERPT_LIMIT, FailureClassifier, is_manifest_file
from ci_autofix.models.state import CheckState, ErrorKind

from conftest import check


@pytest.fixture
def classifier():
    return FailureClassifier()


@pytest.mark.parametrize("name,text,expected", [
    ("ESLint", "", ErrorKind.LINT),
    ("ruff", "", ErrorKind.LINT),
    ("Prettier check", "", ErrorKind.FORMAT),
    ("npm audit", "", ErrorKind.DEPENDENCY_VULNERABILITY),
    ("mypy", "", ErrorKind.TYPE_ERROR),
    ("Type Check", "", ErrorKind.TYPE_ERROR),
    ("pytest", "", ErrorKind.TEST_FAILURE),
    ("unit tests", "", ErrorKind.TEST_FAILURE),
    ("build", "", ErrorKind.BUILD_ERROR),
    ("ci", "src/app.py:12:5: E501 line too long (ruff)", ErrorKind.LINT),
    ("ci", "would reformat src/app.py", ErrorKind.FORMAT),
    ("ci", "found 3 vulnerabilities (1 high)", ErrorKind.DEPENDENCY_VULNERABILITY),
    ("audit", "", ErrorKind.DEPENDENCY_VULNERABILITY),
    ("pip-audit", "", ErrorKind.DEPENDENCY_VULNERABILITY),
    ("Safety scan", "", ErrorKind.DEPENDENCY_VULNERABILITY),
    ("ci", "type safety: incompatible types in assignment", ErrorKind.TYPE_ERROR),
    ("ci", "audit log write failed in 2 tests", ErrorKind.TEST_FAILURE),
    ("deploy", "something odd happened", ErrorKind.UNKNOWN),
])
def test_classify(classifier, name, text, expected):
    assert classifier.classify(name, text=text) == expected


def test_check_name_wins_over_text(classifier):
    """A job called 'lint' stays lint even when its log mentions tests."""
    assert classifier.classify("lint", text="3 failed, 10 passed") == ErrorKind.LINT


def test_classification_is_deterministic(classifier):
    kinds = {classifier.classify("Prettier", text="would reformat a.js") for _ in range(5)}
    assert kinds == {ErrorKind.FORMAT}


def test_extract_files_in_order_of_appearance(classifier):
    output = (
        "tests/test_auth.py::test_login FAILED\n"
        "src/components/Button.tsx(45,12): error TS2322\n"
        'File "app/models/user.py", line 123\n'
        "tests/test_auth.py::test_logout FAILED\n"
    )
    assert classifier.extract_files(output) == [
        "tests/test_auth.py",
        "src/components/Button.tsx",
        "app/models/user.py",
    ]


def test_extract_manifest_files(classifier):
    assert classifier.extract_files("npm audit: package-lock.json needs update") == ["package-lock.json"]


def test_build_failure_truncates_excerpt(classifier):
    text = "x" * 4000 + "\nsrc/app.py:1:1: F401"
    detail = classifier.build_failure(check("lint", CheckState.FAILURE, title="Lint", text=text))

    assert detail.error_kind == ErrorKind.LINT
    assert detail.summary == "Lint"
    assert len(detail.log_excerpt) == LOG_EXCERPT_LIMIT
    assert detail.log_excerpt.endswith("F401")


def test_build_failure_without_summary(classifier):
    detail = classifier.build_failure(check("deploy", CheckState.FAILURE))
    assert detail.summary == "No summary available"
    assert detail.error_kind == ErrorKind.UNKNOWN


def test_build_failures_skips_passing_checks(classifier):
    failures = classifier.build_failures([
        check("lint", CheckState.FAILURE),
        check("tests", CheckState.SUCCESS),
        check("e2e", CheckState.TIMED_OUT),
        check("docs", CheckState.SKIPPED),
    ])
    assert [f.check_name for f in failures] == ["lint", "e2e"]


def test_is_manifest_file():
    assert is_manifest_file("frontend/package-lock.json")
    assert is_manifest_file("Cargo.lock")
    assert not is_manifest_file("src/app.py")
