"""
Keeps mongo_realtime's version variables in sync with pyproject.toml.

    python release.py           rewrite version_major/minor/patch from the toml
    python release.py --check   exit 1 if they disagree
"""

import argparse
import re
import sys
from pathlib import Path
from typing import Optional


TOML_PATH = Path(Path(__file__).parent, "pyproject.toml")
PACKAGE_PATH = Path(Path(__file__).parent, "mongo_realtime/__init__.py")

_VERSION_NAMES = ("version_major", "version_minor", "version_patch")


def parse_version(version_str: str) -> tuple[int, int, int]:
    """Parse a version string into major, minor, patch tuple."""
    match = re.match(r"^(\d+)\.(\d+)\.(\d+)$", version_str.strip("\"'"))
    if not match:
        raise ValueError(f"Invalid version format: {version_str}")
    return int(match.group(1)), int(match.group(2)), int(match.group(3))


def read_toml_version(path: Path = TOML_PATH) -> tuple[int, int, int]:
    """Version declared in the [project] table."""
    content = path.read_text(encoding="utf-8")
    match = re.search(r'^version\s*=\s*["\'](\d+\.\d+\.\d+)["\']', content, re.M)
    if not match:
        raise ValueError(f"No version field found in {path}")
    return parse_version(match.group(1))


def read_package_version(path: Path = PACKAGE_PATH) -> tuple[int, int, int]:
    """Version held by the package's version_* variables."""
    content = path.read_text(encoding="utf-8")
    parts = []
    for name in _VERSION_NAMES:
        match = re.search(rf"^{name}\s*=\s*(\d+)", content, re.M)
        if not match:
            raise ValueError(f"{name} not found in {path}")
        parts.append(int(match.group(1)))
    return parts[0], parts[1], parts[2]


def write_package_version(
    version: tuple[int, int, int], path: Path = PACKAGE_PATH
) -> None:
    """Rewrite the package's version_* variables."""
    content = path.read_text(encoding="utf-8")
    for name, value in zip(_VERSION_NAMES, version):
        content, count = re.subn(
            rf"^{name}\s*=\s*\d+", f"{name} = {value}", content, flags=re.M
        )
        if count == 0:
            raise ValueError(f"{name} not found in {path}")
    path.write_text(content, encoding="utf-8")


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--check", action="store_true", help="only compare")
    args = parser.parse_args(argv)

    wanted = read_toml_version(TOML_PATH)
    current = read_package_version(PACKAGE_PATH)
    if args.check:
        if wanted != current:
            print(f"{PACKAGE_PATH} is at {current}, {TOML_PATH} at {wanted}")
            return 1
        return 0

    write_package_version(wanted, PACKAGE_PATH)
    print("Updated {}: {}.{}.{}".format(PACKAGE_PATH, *wanted))
    return 0


if __name__ == "__main__":
    sys.exit(main())
