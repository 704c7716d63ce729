import nox

nox.options.sessions = ["tests"]

PYTHONS = ["3.11", "3.12", "3.13", "3.14"]


@nox.session(python=PYTHONS, venv_backend="uv")
def tests(session):
    """Unit and server tests. The TypeScript server is mocked out."""
    session.install(".[dev]")
    session.run("pytest", "tests", *session.posargs)


@nox.session(python=PYTHONS[-1], venv_backend="uv")
def smoke(session):
    """Check the console script imports and the server object is built."""
    session.install(".")
    session.run(
        "python",
        "-c",
        "from vue_class_language_server.server import server; print(server.name, server.version)",
    )
