import pathlib

import pytest

from mz_test_utils import default_executable_bytes

from ultimapatcher.executable import Executable


@pytest.fixture
def exe_bytes() -> bytes:
    """Bytes of the default two-segment, two-overlay test executable."""
    return default_executable_bytes()


@pytest.fixture
def executable(exe_bytes: bytes) -> Executable:
    return Executable.parse(exe_bytes)


@pytest.fixture
def exe_path(exe_bytes: bytes, tmp_path: pathlib.Path) -> pathlib.Path:
    """Write the default test executable to a temporary U7.EXE."""
    path = tmp_path / "U7.EXE"
    path.write_bytes(exe_bytes)
    return path
