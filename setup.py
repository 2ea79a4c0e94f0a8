from pathlib import Path
import re

from setuptools import find_packages, setup


ROOT = Path(__file__).parent


def read_version(root: Path) -> str:
    """Return ``__version__`` from the package without importing it."""
    text = (root / "memefeed" / "__init__.py").read_text(encoding="utf-8")
    match = re.search(r'^__version__ = "([^"]+)"', text, re.M)
    if not match:
        raise RuntimeError("unable to find __version__")
    return match.group(1)


setup(
    name="memefeed",
    version=read_version(ROOT),
    description="Snapshot cache and SSE fan-out for Solana meme-coin token feeds",
    python_requires=">=3.11",
    packages=find_packages(exclude=("tests", "tests.*")),
    install_requires=[
        "aiohttp>=3.9",
        "cachetools>=5.3",
        "flask>=3.0",
        "orjson>=3.9",
        "pydantic>=2.5",
        "werkzeug>=3.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "memefeed-server=memefeed.server:main",
            "memefeed-watch=memefeed.client.subscription:main",
        ],
    },
)
