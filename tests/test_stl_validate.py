import struct
from pathlib import Path

import pytest

from stl_core import (
    MSG_ASCII_HEADER,
    MSG_BINARY_CORRUPTED,
    MSG_EXTENSION,
    MSG_TOO_LARGE,
    ValidationResult,
    validate,
    validate_file,
)

FIXTURES_DIR = Path(__file__).resolve().parent / "fixtures"


def _binary_stl(n: int, count: int | None = None, header: bytes = b"") -> bytes:
    data = bytearray(header[:80].ljust(80, b"\0"))
    data.extend(struct.pack("<I", n if count is None else count))
    for _ in range(n):
        data.extend(struct.pack("<12fH", 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0))
    return bytes(data)


def test_valid_binary_counts_from_header():
    result = validate("part.stl", _binary_stl(5))
    assert result == ValidationResult(is_valid=True, face_count=5, vertex_count=15)
    assert result.error_message is None


def test_extension_check_is_case_insensitive():
    assert validate("PART.STL", _binary_stl(1)).is_valid
    assert validate("part.Stl", _binary_stl(1)).is_valid


@pytest.mark.parametrize("name", ["part.obj", "part.stl.txt", "stl", ""])
def test_wrong_extension_rejected_before_content(name):
    result = validate(name, _binary_stl(1))
    assert not result.is_valid
    assert result.error_message == MSG_EXTENSION
    assert result.error_code == "extension_mismatch"
    assert result.face_count == 0 and result.vertex_count == 0


def test_size_limit_default_boundary():
    limit = 104_857_600
    too_big = bytes(limit + 1)
    result = validate("big.stl", too_big)
    assert not result.is_valid
    assert result.error_message == MSG_TOO_LARGE
    assert result.error_code == "size_limit_exceeded"


def test_size_limit_rejects_even_valid_content():
    data = _binary_stl(2)
    result = validate("ok.stl", data, {"max_file_bytes": len(data) - 1})
    assert result.error_code == "size_limit_exceeded"
    assert validate("ok.stl", data, {"max_file_bytes": len(data)}).is_valid


def test_binary_truncated_is_corrupted():
    result = validate("t.stl", _binary_stl(1, count=2))
    assert not result.is_valid
    assert result.error_message == MSG_BINARY_CORRUPTED
    assert result.error_code == "truncated_file"


def test_binary_shorter_than_header_is_corrupted():
    result = validate("tiny.stl", b"\x01\x02\x03")
    assert result.error_message == MSG_BINARY_CORRUPTED


def test_binary_extra_bytes_still_valid():
    result = validate("tail.stl", _binary_stl(3) + b"\0" * 17)
    assert result.is_valid
    assert result.face_count == 3


def test_ascii_header_checked_and_counts_estimated():
    data = (FIXTURES_DIR / "cube_ascii.stl").read_bytes()
    result = validate("cube_ascii.stl", data)
    assert result.is_valid
    assert result.face_count == len(data) // 400
    assert result.vertex_count == 3 * result.face_count


def test_ascii_header_without_name_separator_rejected():
    result = validate("bare.stl", b"solid")
    assert not result.is_valid
    assert result.error_message == MSG_ASCII_HEADER
    assert result.error_code == "format_error"


def test_ascii_header_newline_counts_as_separator():
    assert validate("nl.stl", b"solid\nendsolid\n").is_valid


def test_ascii_counts_use_configured_bytes_per_facet():
    data = b"solid x\n" + b" " * 92
    result = validate("x.stl", data, {"ascii_bytes_per_facet": 10})
    assert result.face_count == 10
    assert result.vertex_count == 30


def test_binary_with_solid_header_goes_through_ascii_gate():
    data = _binary_stl(1, header=b"solid binary header")
    result = validate("s.stl", data)
    assert result.is_valid
    assert result.face_count == len(data) // 400


def test_validate_never_raises_on_odd_input():
    for data in (b"", b"solid", b"\xff" * 83, bytearray(b"solid \xff\xfe"), memoryview(_binary_stl(1))):
        result = validate("odd.stl", data)
        assert isinstance(result, ValidationResult)


def test_validate_file_matches_in_memory_gate(tmp_path: Path):
    cases = {
        "good.stl": _binary_stl(4),
        "trunc.stl": _binary_stl(1, count=9),
        "cube.stl": (FIXTURES_DIR / "cube_ascii.stl").read_bytes(),
        "wrong.obj": _binary_stl(1),
    }
    for name, data in cases.items():
        path = tmp_path / name
        path.write_bytes(data)
        assert validate_file(str(path)) == validate(name, data)


def test_validate_file_size_limit_without_full_read(tmp_path: Path):
    path = tmp_path / "big.stl"
    path.write_bytes(_binary_stl(10))
    result = validate_file(str(path), settings={"limits": {"max_file_bytes": 100}})
    assert result.error_code == "size_limit_exceeded"


def test_validate_file_missing_file_is_invalid_result(tmp_path: Path):
    result = validate_file(str(tmp_path / "missing.stl"))
    assert not result.is_valid
    assert result.error_code == "io_error"
    assert "Failed to read STL file" in result.error_message


def test_to_dict_contract():
    assert validate("a.obj", b"").to_dict() == {
        "is_valid": False,
        "face_count": 0,
        "vertex_count": 0,
        "error_message": MSG_EXTENSION,
        "error_code": "extension_mismatch",
    }


@pytest.mark.parametrize("bad_limit", ["abc", float("nan"), float("inf"), None])
def test_validate_file_and_gate_agree_on_unusable_size_limit(tmp_path: Path, bad_limit):
    data = _binary_stl(0)
    path = tmp_path / "empty.stl"
    path.write_bytes(data)

    from_file = validate_file(str(path), settings={"limits": {"max_file_bytes": bad_limit}})
    in_memory = validate("empty.stl", data, {"max_file_bytes": bad_limit})

    assert from_file == in_memory
    assert from_file.is_valid


def test_non_positive_limits_fall_back_to_defaults():
    data = b"solid x\n" + b" " * 1192
    result = validate("x.stl", data, {"ascii_bytes_per_facet": -400, "ascii_probe_bytes": 0, "max_file_bytes": -1})
    assert result.is_valid
    assert result.face_count == len(data) // 400
    assert result.vertex_count == 3 * result.face_count


def test_max_file_bytes_helper():
    from stl_core import max_file_bytes

    assert max_file_bytes({"max_file_bytes": 10}) == 10
    assert max_file_bytes({"max_file_bytes": "abc"}) == 104_857_600
    assert max_file_bytes({"max_file_bytes": 0}) == 104_857_600
    assert max_file_bytes(None) == 104_857_600
