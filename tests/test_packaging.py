import re
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent

# import name -> distribution name on the index
DISTRIBUTIONS = {
    "fastapi": "fastapi",
    "starlette": "starlette",
    "pydantic": "pydantic",
    "pymongo": "pymongo",
    "bson": "pymongo",
    "jwt": "PyJWT",
    "passlib": "passlib",
    "requests": "requests",
    "uvicorn": "uvicorn",
}


def declared_dependencies():
    text = (ROOT / "pyproject.toml").read_text()
    block = re.search(r"^dependencies = \[(.*?)^\]", text, re.S | re.M).group(1)
    return {re.split(r"[\[<>=~!]", d.strip().strip('",'))[0].lower() for d in block.splitlines() if d.strip()}


def imported_libraries():
    found = set()
    for module in ROOT.glob("*.py"):
        for line in module.read_text().splitlines():
            match = re.match(r"(?:from|import) (\w+)", line)
            if match and match.group(1) in DISTRIBUTIONS:
                found.add(match.group(1))
    return found


@pytest.mark.parametrize("name", sorted(DISTRIBUTIONS))
def test_direct_imports_are_declared(name):
    if name not in imported_libraries():
        pytest.skip(f"{name} is not imported directly")
    assert DISTRIBUTIONS[name].lower() in declared_dependencies()
