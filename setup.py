from setuptools import setup

from ultimapatcher.version import __version__

setup(
    name="ultimapatcher",
    version=__version__,
    description=(
        "Patch MS-DOS executables with overlays (e.g. Ultima VII's U7.EXE)"
        " while keeping relocation tables and overlay layout consistent"
    ),
    license="GPL-3.0",
    python_requires=">=3.10",
    install_requires=[
        "mrcrowbar >= 1.0.0rc2",
        "iced_x86 >= 1.21.0",
    ],
    extras_require={
        "test": ["pytest"],
    },
    packages=["ultimapatcher"],
    entry_points={
        "console_scripts": [
            "ultimapatcher = ultimapatcher.cli:main",
        ],
    },
)
