"""Tests for configuration, the CLI helpers, initial sync and console styling."""

import json
import logging
import os
from pathlib import Path

import pytest

import fs_replicator
from fs_replicator import (
    ALL_KINDS,
    Ansi,
    ChangeKind,
    ColorizingFormatter,
    IgnoreMatcher,
    ReplicationEngine,
    ReplicatorConfig,
    RetryExecutor,
    ValidationError,
    WatchSession,
    build_effective_config,
    files_match,
    format_kinds,
    full_sync,
    load_config_file,
    main,
    parse_args,
    parse_kinds,
    save_config_file,
    validate_roots,
)


@pytest.fixture
def config_path(tmp_path, monkeypatch):
    app_dir = tmp_path / "app"
    path = app_dir / "config.json"
    monkeypatch.setattr(fs_replicator, "APP_DIR", app_dir)
    monkeypatch.setattr(fs_replicator, "CONFIG_PATH", path)
    return path


class TestEventMask:
    """Tests for parse_kinds() / format_kinds()."""

    def test_absent_means_all(self):
        assert parse_kinds(None) == ALL_KINDS

    def test_subset(self):
        assert parse_kinds("Created,Deleted") == {ChangeKind.CREATED, ChangeKind.DELETED}

    def test_unknown_names_and_whitespace(self):
        assert parse_kinds(" changed , Bogus,") == {ChangeKind.CHANGED}

    def test_empty_string_means_none(self):
        assert parse_kinds("") == frozenset()

    def test_format_uses_canonical_order(self):
        assert format_kinds({ChangeKind.DELETED, ChangeKind.CREATED}) == "Created,Deleted"
        assert parse_kinds(format_kinds(ALL_KINDS)) == ALL_KINDS


class TestConfigFile:
    """Tests for the remembered JSON settings."""

    def test_missing_file_is_empty(self, config_path):
        assert load_config_file() == {}

    def test_corrupt_file_is_empty(self, config_path):
        config_path.parent.mkdir(parents=True)
        config_path.write_text("{not json")

        assert load_config_file() == {}

    def test_save_then_load(self, config_path, tmp_path):
        cfg = ReplicatorConfig(
            source_dir=tmp_path / "s",
            destination_dir=tmp_path / "d",
            events=frozenset({ChangeKind.CREATED}),
            ignore_patterns=("*.tmp",),
        )

        save_config_file(cfg)
        saved = load_config_file()

        assert saved["source"] == str(tmp_path / "s")
        assert saved["events"] == "Created"
        assert saved["ignore"] == ["*.tmp"]


class TestBuildEffectiveConfig:
    """Tests for merging CLI arguments with remembered settings."""

    def test_cli_arguments(self, config_path, tmp_path):
        args = parse_args([
            "--source", str(tmp_path / "s"),
            "--destination", str(tmp_path / "d"),
            "--events", "Created,Renamed",
            "--debounce-ms", "250",
            "--retries", "3",
            "--backoff-ms", "10",
            "--workers", "2",
            "--ignore", "*.tmp",
            "--ignore", "build/",
            "--initial-sync",
        ])

        cfg = build_effective_config(args)

        assert cfg.source_dir == tmp_path / "s"
        assert cfg.destination_dir == tmp_path / "d"
        assert cfg.events == {ChangeKind.CREATED, ChangeKind.RENAMED}
        assert cfg.debounce_ms == 250
        assert cfg.retry_attempts == 3
        assert cfg.retry_backoff_ms == 10
        assert cfg.max_workers == 2
        assert cfg.ignore_patterns == ("*.tmp", "build/")
        assert cfg.initial_sync is True

    def test_defaults(self, config_path, tmp_path):
        cfg = build_effective_config(parse_args(["--source", str(tmp_path), "--destination", str(tmp_path / "d")]))

        assert cfg.events == ALL_KINDS
        assert cfg.debounce_ms == 1000
        assert cfg.retry_attempts == 5
        assert cfg.retry_backoff_ms == 1000
        assert cfg.initial_sync is False

    def test_falls_back_to_saved_settings(self, config_path, tmp_path):
        config_path.parent.mkdir(parents=True)
        config_path.write_text(json.dumps({
            "source": str(tmp_path / "saved-src"),
            "destination": str(tmp_path / "saved-dst"),
            "events": "Deleted",
            "debounce_ms": 400,
        }))

        cfg = build_effective_config(parse_args(["--destination", str(tmp_path / "cli-dst")]))

        assert cfg.source_dir == tmp_path / "saved-src"
        assert cfg.destination_dir == tmp_path / "cli-dst"
        assert cfg.events == {ChangeKind.DELETED}
        assert cfg.debounce_ms == 400

    def test_session_from_config(self, tmp_path):
        cfg = ReplicatorConfig(
            source_dir=tmp_path / "s",
            destination_dir=tmp_path / "d",
            events=frozenset({ChangeKind.CHANGED}),
            debounce_ms=300,
        )

        session = WatchSession.from_config(cfg)

        assert session.source_path == tmp_path / "s"
        assert session.enabled_kinds == {ChangeKind.CHANGED}
        assert session.debounce_ms == 300


class TestValidateRoots:
    """Tests for validate_roots()."""

    def test_creates_destination(self, tmp_path):
        src = tmp_path / "src"
        src.mkdir()

        source, destination = validate_roots(src, tmp_path / "dst")

        assert source == src.resolve()
        assert destination.is_dir()

    def test_relative_paths_resolve_against_cwd(self, tmp_path, monkeypatch):
        (tmp_path / "src").mkdir()
        monkeypatch.chdir(tmp_path)

        source, destination = validate_roots(Path("src"), Path("dst"))

        assert source.is_absolute()
        assert destination == (tmp_path / "dst").resolve()

    def test_missing_source(self, tmp_path):
        with pytest.raises(ValidationError):
            validate_roots(tmp_path / "missing", tmp_path / "dst")

    def test_same_folder(self, tmp_path):
        with pytest.raises(ValidationError):
            validate_roots(tmp_path, tmp_path)

    def test_destination_inside_source(self, tmp_path):
        with pytest.raises(ValidationError):
            validate_roots(tmp_path, tmp_path / "inner")

    def test_source_inside_destination(self, tmp_path):
        (tmp_path / "inner").mkdir()
        with pytest.raises(ValidationError):
            validate_roots(tmp_path / "inner", tmp_path)


class TestFullSync:
    """Tests for the one-shot reconciliation."""

    @pytest.fixture
    def engine(self, tmp_path):
        logger = logging.getLogger("tests.sync")
        src = tmp_path / "src"
        dst = tmp_path / "dst"
        src.mkdir()
        dst.mkdir()
        return ReplicationEngine(src, dst, logger, RetryExecutor(logger, backoff=0.0))

    def test_reconciles_trees(self, engine):
        src, dst = engine.source_root, engine.destination_root
        (src / "a.txt").write_text("new")
        (dst / "a.txt").write_text("older")
        (src / "same.txt").write_text("same")
        (dst / "same.txt").write_text("same")
        os.utime(dst / "same.txt", (0, 0))
        (src / "sub").mkdir()
        (src / "sub" / "c.txt").write_text("c")
        (src / "emptydir").mkdir()
        (dst / "stale.txt").write_text("stale")
        (dst / "staledir").mkdir()
        (dst / "staledir" / "x.txt").write_text("x")

        copied, removed = full_sync(engine)

        assert copied == 2
        assert removed == 3
        assert (dst / "a.txt").read_text() == "new"
        assert (dst / "sub" / "c.txt").read_text() == "c"
        assert (dst / "emptydir").is_dir()
        assert (dst / "same.txt").read_text() == "same"
        assert not (dst / "stale.txt").exists()
        assert not (dst / "staledir").exists()

    def test_respects_ignore_rules(self, engine):
        src, dst = engine.source_root, engine.destination_root
        (src / "keep.txt").write_text("k")
        (src / "debug.log").write_text("noise")

        full_sync(engine, IgnoreMatcher(src, ["*.log"]))

        assert (dst / "keep.txt").exists()
        assert not (dst / "debug.log").exists()


class TestFilesMatch:
    """Equality check used by the initial sync."""

    def test_same_size_close_mtime(self, tmp_path):
        a, b = tmp_path / "a", tmp_path / "b"
        a.write_text("1234")
        b.write_text("abcd")

        assert files_match(a, b) is True

    def test_old_mtime_falls_back_to_content(self, tmp_path):
        a, b, c = tmp_path / "a", tmp_path / "b", tmp_path / "c"
        a.write_text("same")
        b.write_text("same")
        c.write_text("diff")
        os.utime(b, (0, 0))
        os.utime(c, (0, 0))

        assert files_match(a, b) is True
        assert files_match(a, c) is False

    def test_size_or_missing_differs(self, tmp_path):
        a, b = tmp_path / "a", tmp_path / "b"
        a.write_text("short")
        b.write_text("longer text")

        assert files_match(a, b) is False
        assert files_match(a, tmp_path / "missing") is False


class TestColorizingFormatter:
    """Tests for console styling."""

    def _record(self, level, action):
        record = logging.LogRecord("t", level, __file__, 1, f"{action} | /a -> /b", None, None)
        record.action = action
        record.path_text = "/b"
        record.is_dir = False
        return record

    def test_plain_without_color(self):
        formatter = ColorizingFormatter(False, fmt="%(message)s")

        assert formatter.format(self._record(logging.INFO, "COPY")) == "COPY | /a -> /b"

    def test_action_and_path_colored(self):
        formatter = ColorizingFormatter(True, fmt="%(message)s")

        text = formatter.format(self._record(logging.INFO, "COPY"))

        assert f"{Ansi.GREEN}COPY{Ansi.RESET}" in text
        assert f"{Ansi.WHITE}/b{Ansi.RESET}" in text

    def test_errors_are_red(self):
        formatter = ColorizingFormatter(True, fmt="%(message)s")

        text = formatter.format(self._record(logging.ERROR, "COPY"))

        assert text.startswith(Ansi.RED)


class TestMain:
    """Tests for the command line entry point."""

    def test_invalid_source_exits_with_2(self, config_path, tmp_path, monkeypatch):
        monkeypatch.setattr(fs_replicator, "colorama_init", lambda: None)
        logger = logging.getLogger(fs_replicator.LOGGER_NAME)
        try:
            code = main([
                "--source", str(tmp_path / "missing"),
                "--destination", str(tmp_path / "dst"),
                "--log-dir", str(tmp_path / "logs"),
            ])
        finally:
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
                handler.close()

        assert code == 2
        assert list((tmp_path / "logs").glob("replicator_*.log"))
        assert not config_path.exists()
