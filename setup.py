from pathlib import Path
from setuptools import find_packages, setup


def read_version(root: Path) -> str:
    """Return ``__version__`` from the package without importing it."""
    for line in (root / "forum_launcher" / "__init__.py").read_text().splitlines():
        if line.startswith("__version__"):
            return line.split("=", 1)[1].strip().strip("\"'")
    raise RuntimeError("__version__ not found")


ROOT = Path(__file__).parent

setup(
    name="forum-launcher",
    version=read_version(ROOT),
    description="Launch orchestrator and process supervisor for a containerised NodeBB forum",
    packages=find_packages(include=["forum_launcher", "forum_launcher.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2",
        "requests",
        "rich",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "forum-launch=forum_launcher.cli:main",
        ],
    },
)
