import nox

PYTHONS = ["3.10", "3.11", "3.12"]

# Paths checked by the dead code scan
LOCATIONS = [
    "src/shopx_messaging",
    "tests",
]


@nox.session(python=PYTHONS)
def tests(session: nox.Session) -> None:
    """Unit tests and the in-memory broker suite."""
    session.install("-e", ".[test]")
    session.run("pytest", "-m", "not integration", *session.posargs)


@nox.session(python=PYTHONS[-1])
def integration(session: nox.Session) -> None:
    """Tests against a RabbitMQ container (needs Docker)."""
    session.install("-e", ".[test,integration]")
    session.run("pytest", "-m", "integration", *session.posargs)


@nox.session(python=PYTHONS[-1])
def autoformat(session: nox.Session) -> None:
    """Apply ruff fixes and formatting in place."""
    session.install("ruff")
    session.run("ruff", "check", "--fix", ".")
    session.run("ruff", "format", ".")


@nox.session(python=PYTHONS)
def lint(session: nox.Session) -> None:
    """Fail on ruff findings or unformatted files."""
    session.install("ruff")
    session.run("ruff", "check", ".")
    session.run("ruff", "format", "--check", ".")


@nox.session(python=PYTHONS)
def type_check(session: nox.Session) -> None:
    """mypy over the package."""
    session.install("-e", ".[dev]")
    session.run("mypy")


@nox.session(python=PYTHONS)
def arch_check(session: nox.Session) -> None:
    """Import boundary rules (pytest-archon)."""
    session.install("-e", ".[test]")
    session.run("pytest", "tests/architecture", *session.posargs)


@nox.session(python=PYTHONS[-1])
def dead_code(session: nox.Session) -> None:
    """Unused code scan with vulture."""
    session.install("vulture")
    session.run("vulture", "--exclude", ".nox", *LOCATIONS)
