import tomllib
from pathlib import Path

ROOT = Path(__file__).parent.parent


def test_project_metadata() -> None:
    with open(ROOT / "pyproject.toml", "rb") as f:
        pyproject = tomllib.load(f)

    project = pyproject["project"]
    assert project["scripts"]["pkgledger"] == "pkgledger.cli:main"
    # Design notes are not the package description.
    assert project.get("readme") != "DESIGN.md"
    # Migration scripts ride along with the package directory.
    assert pyproject["tool"]["hatch"]["build"]["targets"]["wheel"]["packages"] == ["pkgledger"]
    assert (ROOT / "pkgledger" / "alembic" / "versions" / "0001_initial.py").is_file()
