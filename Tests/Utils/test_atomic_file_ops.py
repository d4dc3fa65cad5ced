"""
Tests for atomic JSON file writes and read-modify-write updates.
"""

import json
import os

import pytest

from inkdoodle.Utils.atomic_file_ops import (
    atomic_update_json,
    atomic_write_json,
    atomic_write_text,
    read_json,
)


class TestAtomicWrite:

    def test_write_creates_parent_directories(self, tmp_path):
        target = tmp_path / "a" / "b" / "file.txt"
        atomic_write_text(target, "hello")
        assert target.read_text(encoding="utf-8") == "hello"

    def test_write_replaces_existing_content(self, tmp_path):
        target = tmp_path / "file.json"
        atomic_write_json(target, {"v": 1})
        atomic_write_json(target, {"v": 2})
        assert read_json(target) == {"v": 2}

    def test_no_temp_files_left_behind(self, tmp_path):
        folder = tmp_path / "out"
        atomic_write_json(folder / "file.json", {"title": "Ünïcode"})
        assert os.listdir(folder) == ["file.json"]
        assert "Ünïcode" in (folder / "file.json").read_text(encoding="utf-8")

    def test_unserializable_data_leaves_target_untouched(self, tmp_path):
        target = tmp_path / "file.json"
        atomic_write_json(target, {"ok": True})
        with pytest.raises(TypeError):
            atomic_write_json(target, {"bad": object()})
        assert read_json(target) == {"ok": True}

    def test_failed_rename_cleans_up(self, tmp_path, monkeypatch):
        def failing_replace(src, dst):
            raise OSError("read-only file system")

        monkeypatch.setattr(os, "replace", failing_replace)
        with pytest.raises(OSError):
            atomic_write_text(tmp_path / "out" / "file.txt", "data")
        assert os.listdir(tmp_path / "out") == []


class TestUpdateJson:

    def test_update_keeps_other_fields(self, tmp_path):
        target = tmp_path / "item.json"
        target.write_text(json.dumps({"id": 1, "title": "Keep me"}), encoding="utf-8")

        def set_code(data):
            data["code"] = "NT-0001-000001"
            return data

        result = atomic_update_json(target, set_code)

        assert result == {"id": 1, "title": "Keep me", "code": "NT-0001-000001"}
        assert read_json(target) == result

    def test_update_rejects_non_objects(self, tmp_path):
        target = tmp_path / "list.json"
        target.write_text("[1, 2]", encoding="utf-8")
        with pytest.raises(ValueError):
            atomic_update_json(target, lambda data: data)

    def test_read_invalid_json(self, tmp_path):
        target = tmp_path / "bad.json"
        target.write_text("{oops", encoding="utf-8")
        with pytest.raises(ValueError):
            read_json(target)
