from pathlib import Path


def package_root() -> Path:
    return Path(__file__).resolve().parents[1]


def contracts_root() -> Path:
    return package_root() / "contracts"


def catalog_path() -> Path:
    return contracts_root() / "agent-catalog.v1.json"
