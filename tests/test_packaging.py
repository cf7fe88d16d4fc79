import tomllib
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]


def test_project_readme_is_shipped() -> None:
    project = tomllib.loads((PROJECT_ROOT / "pyproject.toml").read_text(encoding="utf-8"))["project"]

    readme = PROJECT_ROOT / project["readme"]
    assert readme.name == "README.md"
    assert readme.is_file()
