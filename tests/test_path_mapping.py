"""Tests for source -> destination path mapping and root validation."""

import pytest
from pathlib import Path

from fs_replicator import (
    PathMappingError,
    ValidationError,
    to_destination,
    to_source,
    validate_root,
)


class TestToDestination:
    """Tests for to_destination()."""

    def test_maps_nested_file(self, tmp_path):
        src = tmp_path / "src"
        dst = tmp_path / "dst"

        assert to_destination(src / "a" / "b.txt", src, dst) == dst / "a" / "b.txt"

    def test_accepts_strings(self, tmp_path):
        src = tmp_path / "src"
        dst = tmp_path / "dst"

        result = to_destination(str(src / "f.txt"), str(src), str(dst))

        assert result == dst / "f.txt"
        assert isinstance(result, Path)

    def test_root_maps_to_destination_root(self, tmp_path):
        src = tmp_path / "src"
        dst = tmp_path / "dst"

        assert to_destination(src, src, dst) == dst

    def test_path_does_not_need_to_exist(self, tmp_path):
        src = tmp_path / "src"
        dst = tmp_path / "dst"

        assert to_destination(src / "gone" / "x.txt", src, dst) == dst / "gone" / "x.txt"

    def test_parent_segments_are_collapsed(self, tmp_path):
        src = tmp_path / "src"
        dst = tmp_path / "dst"

        assert to_destination(src / "a" / ".." / "b.txt", src, dst) == dst / "b.txt"

    def test_outside_root_raises(self, tmp_path):
        with pytest.raises(PathMappingError):
            to_destination(tmp_path / "other" / "x.txt", tmp_path / "src", tmp_path / "dst")

    def test_sibling_with_common_prefix_is_outside(self, tmp_path):
        with pytest.raises(PathMappingError):
            to_destination(tmp_path / "src2" / "x.txt", tmp_path / "src", tmp_path / "dst")

    def test_mapping_error_is_value_error(self, tmp_path):
        with pytest.raises(ValueError):
            to_destination(tmp_path / "elsewhere", tmp_path / "src", tmp_path / "dst")

    @pytest.mark.parametrize(
        "name",
        [
            "with space.txt",
            "100%.txt",
            "%20not-escaped.txt",
            "a+b c.txt",
            "héllo wörld.txt",
            "日本語 ファイル.txt",
            "#hash.txt",
        ],
    )
    def test_round_trip_with_reserved_characters(self, tmp_path, name):
        src_root = tmp_path / "source root"
        dst_root = tmp_path / "dest%root+1"
        original = src_root / "dir +%" / name

        mapped = to_destination(original, src_root, dst_root)

        assert mapped == dst_root / "dir +%" / name
        assert to_source(mapped, src_root, dst_root) == original


class TestValidateRoot:
    """Tests for validate_root()."""

    def test_absolute_path_is_returned_normalized(self, tmp_path):
        assert validate_root(str(tmp_path / "a" / ".." / "b")) == tmp_path / "b"

    def test_relative_path_rejected(self):
        with pytest.raises(ValidationError):
            validate_root("relative/folder")

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_undefined_or_blank_rejected(self, value):
        with pytest.raises(ValidationError):
            validate_root(value)

    def test_nul_byte_rejected(self, tmp_path):
        with pytest.raises(ValidationError):
            validate_root(str(tmp_path) + "\x00bad")

    def test_non_path_rejected(self):
        with pytest.raises(ValidationError):
            validate_root(42)
