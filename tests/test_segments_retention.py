from __future__ import annotations

import asyncio
import os
from pathlib import Path

import pytest

from clipwatch import segments
from clipwatch.segments import RetentionManager, SegmentPattern


def _make_segments(directory: Path, count: int, base_mtime: int = 1_700_000_000) -> list[Path]:
    paths = []
    for idx in range(count):
        path = directory / f"record_{idx:03d}.mp4"
        path.write_bytes(b"x" * (idx + 1))
        os.utime(path, (base_mtime + idx * 180, base_mtime + idx * 180))
        paths.append(path)
    return paths


def test_prune_keeps_newest_by_mtime(tmp_path):
    paths = _make_segments(tmp_path, 8)
    # record_000 was rewritten last; modification time wins over the index
    os.utime(paths[0], (1_800_000_000, 1_800_000_000))
    (tmp_path / "notes.txt").write_text("keep me", encoding="utf-8")
    (tmp_path / "record_abc.mp4").write_bytes(b"not a segment")

    result = segments.prune_segments(tmp_path, 5)

    assert result.seen == 8
    assert sorted(p.name for p in result.deleted) == [
        "record_001.mp4",
        "record_002.mp4",
        "record_003.mp4",
    ]
    remaining = sorted(p.name for p in tmp_path.iterdir())
    assert remaining == [
        "notes.txt",
        "record_000.mp4",
        "record_004.mp4",
        "record_005.mp4",
        "record_006.mp4",
        "record_007.mp4",
        "record_abc.mp4",
    ]


def test_prune_noop_under_limit(tmp_path):
    _make_segments(tmp_path, 3)
    result = segments.prune_segments(tmp_path, 5)
    assert result.seen == 3
    assert result.deleted == []
    assert len(list(tmp_path.iterdir())) == 3


def test_prune_missing_directory_is_logged_not_raised(tmp_path):
    result = segments.prune_segments(tmp_path / "absent", 5)
    assert result.seen == 0
    assert result.deleted == []


def test_prune_continues_after_delete_failure(tmp_path, monkeypatch):
    paths = _make_segments(tmp_path, 4)
    original_unlink = Path.unlink

    def flaky_unlink(self, *args, **kwargs):
        if self.name == paths[0].name:
            raise PermissionError("file in use")
        return original_unlink(self, *args, **kwargs)

    monkeypatch.setattr(Path, "unlink", flaky_unlink)

    result = segments.prune_segments(tmp_path, 2)

    assert [p.name for p in result.failed] == ["record_000.mp4"]
    assert [p.name for p in result.deleted] == ["record_001.mp4"]
    assert paths[0].exists()
    assert paths[2].exists() and paths[3].exists()


def test_prune_rejects_negative_limit(tmp_path):
    with pytest.raises(ValueError):
        segments.prune_segments(tmp_path, -1)


def test_custom_pattern_and_next_index(tmp_path):
    pattern = SegmentPattern.from_cfg({"segment_prefix": "cap-", "segment_extension": "mkv"})
    assert pattern.extension == ".mkv"
    assert pattern.output_template == "cap-%03d.mkv"
    assert pattern.index_of("cap-012.mkv") == 12
    assert pattern.index_of("record_012.mp4") is None

    assert segments.next_segment_index(tmp_path / "missing", pattern) == 0
    assert segments.next_segment_index(tmp_path, pattern) == 0
    (tmp_path / "cap-004.mkv").write_bytes(b"a")
    (tmp_path / "cap-1000.mkv").write_bytes(b"b")
    assert segments.next_segment_index(tmp_path, pattern) == 1001


def test_newest_first_breaks_ties_by_index(tmp_path):
    _make_segments(tmp_path, 3)
    for path in tmp_path.iterdir():
        os.utime(path, (1_700_000_000, 1_700_000_000))
    ordered = segments.newest_first(segments.list_segments(tmp_path))
    assert [seg.index for seg in ordered] == [2, 1, 0]


def test_retention_manager_runs_periodically(tmp_path):
    _make_segments(tmp_path, 7)

    async def runner():
        manager = RetentionManager(tmp_path, max_segments=5, interval=0.01)
        manager.start()
        try:
            for _ in range(200):
                if manager.passes >= 2:
                    break
                await asyncio.sleep(0.01)
        finally:
            await manager.stop()
        return manager

    manager = asyncio.run(runner())

    assert manager.passes >= 2
    assert sorted(p.name for p in tmp_path.iterdir()) == [
        f"record_{idx:03d}.mp4" for idx in range(2, 7)
    ]


def test_retention_manager_from_cfg(tmp_path):
    cfg = {
        "paths": {"segments_dir": str(tmp_path)},
        "retention": {"max_segments": 3, "interval_sec": 15},
        "recorder": {"segment_prefix": "clip_"},
    }
    manager = RetentionManager.from_cfg(cfg)
    assert manager.max_segments == 3
    assert manager.interval == 15.0
    assert manager.pattern.prefix == "clip_"
    with pytest.raises(ValueError):
        RetentionManager(tmp_path, interval=0)
