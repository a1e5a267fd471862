import datetime as dt

import pytest

from hls_ingest.errors import StorageError
from hls_ingest.workspace import cleanup_workspace, create_workspace, input_extension

NOW = dt.datetime(2025, 6, 1, 12, 0, 3, 114000, tzinfo=dt.timezone.utc)


@pytest.mark.parametrize("url, ext", [
    ("https://v.redd.it/abc123.mp4", ".mp4"),
    ("https://example.com/clip.WEBM?sig=1", ".webm"),
    ("https://v.redd.it/abc123", ".mp4"),
    ("https://example.com/a.b/c", ".mp4"),
])
def test_input_extension(url, ext):
    assert input_extension(url) == ext


def test_create_workspace_layout(tmp_path):
    ws = create_workspace(tmp_path, "v_redd_it_abc123", source_url="https://v.redd.it/abc123.mp4", now=NOW)

    assert ws.root == tmp_path / "v_redd_it_abc123_20250601T120003114000Z"
    assert ws.root.is_dir()
    assert ws.input_path == ws.root / "input.mp4"
    assert ws.playlist_path == ws.root / "output" / "output.m3u8"
    assert ws.meta_path == ws.root / "meta.json"
    # output/ only appears when transcoding starts
    assert not ws.output_dir.exists()
    ws.ensure_output_dir()
    assert ws.output_dir.is_dir()


def test_timestamped_workspaces_never_reuse_a_directory(tmp_path):
    create_workspace(tmp_path, "abc", now=NOW)
    with pytest.raises(StorageError):
        create_workspace(tmp_path, "abc", now=NOW)


def test_plain_workspace_replaces_stale_leftovers(tmp_path):
    stale = tmp_path / "abc"
    (stale / "output").mkdir(parents=True)
    (stale / "output" / "old0.ts").write_bytes(b"old")

    ws = create_workspace(tmp_path, "abc", timestamp_suffix=False)

    assert ws.root == stale
    assert list(ws.root.iterdir()) == []


def test_repeated_failures_keep_only_latest_previous_workspace(tmp_path):
    first = create_workspace(tmp_path, "abc", now=NOW)
    second = create_workspace(tmp_path, "abc", now=NOW + dt.timedelta(minutes=1))
    (second.root / "input.mp4").write_bytes(b"raw")

    third = create_workspace(tmp_path, "abc", now=NOW + dt.timedelta(minutes=2))

    assert not first.root.exists()
    assert (second.root / "input.mp4").is_file()
    assert sorted(p.name for p in tmp_path.iterdir()) == [second.root.name, third.root.name]


def test_pruning_ignores_other_identities_with_shared_prefix(tmp_path):
    other = create_workspace(tmp_path, "abc_def", now=NOW)
    plain = tmp_path / "abc"
    plain.mkdir()
    create_workspace(tmp_path, "abc", now=NOW)

    create_workspace(tmp_path, "abc", keep_previous=0, now=NOW + dt.timedelta(minutes=1))

    assert other.root.is_dir()
    assert plain.is_dir()
    assert sorted(p.name for p in tmp_path.iterdir()) == [
        "abc", "abc_20250601T120103114000Z", "abc_def_20250601T120003114000Z"]


def test_create_workspace_on_unwritable_root(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("not a directory")
    with pytest.raises(StorageError):
        create_workspace(blocker, "abc", now=NOW)


def _populate(ws):
    ws.input_path.write_bytes(b"raw")
    ws.ensure_output_dir()
    ws.playlist_path.write_text("#EXTM3U\n")
    ws.meta_path.write_text("{}")


def test_cleanup_keeps_metadata_by_default(tmp_path):
    ws = create_workspace(tmp_path, "abc", now=NOW)
    _populate(ws)

    assert cleanup_workspace(ws) == []

    assert ws.meta_path.is_file()
    assert not ws.input_path.exists()
    assert not ws.output_dir.exists()


def test_cleanup_can_keep_output(tmp_path):
    ws = create_workspace(tmp_path, "abc", now=NOW)
    _populate(ws)

    cleanup_workspace(ws, keep_metadata=False, keep_output=True)

    assert ws.playlist_path.is_file()
    assert not ws.meta_path.exists()
    assert not ws.input_path.exists()


def test_cleanup_removes_everything_when_nothing_kept(tmp_path):
    ws = create_workspace(tmp_path, "abc", now=NOW)
    _populate(ws)

    cleanup_workspace(ws, keep_metadata=False, keep_output=False)

    assert not ws.root.exists()


def test_cleanup_reports_failures(tmp_path, monkeypatch):
    ws = create_workspace(tmp_path, "abc", now=NOW)
    _populate(ws)

    def refuse(*args, **kwargs):
        raise PermissionError("read-only")
    monkeypatch.setattr("hls_ingest.workspace.shutil.rmtree", refuse)

    failures = cleanup_workspace(ws)

    assert failures == [str(ws.output_dir)]
    assert not ws.input_path.exists()
