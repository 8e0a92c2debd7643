from pathlib import Path
from setuptools import find_packages, setup


ROOT = Path(__file__).parent


def read_version() -> str:
    """Read ``__version__`` from the package without importing it."""
    init = ROOT / "solwatch" / "__init__.py"
    for line in init.read_text(encoding="utf-8").splitlines():
        if line.startswith("__version__"):
            return line.split("=", 1)[1].strip().strip("\"'")
    return "0.0.0"


setup(
    name="solwatch",
    version=read_version(),
    description="Solana holdings cache with provider refresh and a replayable event stream",
    python_requires=">=3.10",
    packages=find_packages(include=["solwatch", "solwatch.*"]),
    install_requires=[
        "aiohttp>=3.9",
        "orjson>=3.9",
        "pydantic>=2.5",
        "SQLAlchemy[asyncio]>=2.0",
        "aiosqlite>=0.19",
        "prometheus-client>=0.17",
    ],
    extras_require={
        "test": ["pytest>=7"],
    },
    entry_points={
        "console_scripts": ["solwatch=solwatch.main:main"],
    },
)
