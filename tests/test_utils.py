from sitepipe import utils


def test_ensure_clean_dir_and_remove_dir(tmp_path):
    target = tmp_path / "build"
    target.mkdir()
    (target / "old.txt").write_text("old", encoding="utf-8")
    utils.ensure_clean_dir(target)
    assert list(target.iterdir()) == []

    fresh = tmp_path / "a" / "b"
    utils.ensure_clean_dir(fresh)
    assert fresh.is_dir()

    assert utils.remove_dir(tmp_path / "a") is True
    assert utils.remove_dir(tmp_path / "a") is False


def test_swap_dir_replaces_non_empty_target(tmp_path):
    target = tmp_path / "serve"
    (target / "css").mkdir(parents=True)
    (target / "css" / "old.css").write_text("old", encoding="utf-8")
    staging = tmp_path / "serve.staging"
    staging.mkdir()
    (staging / "index.html").write_text("new", encoding="utf-8")

    utils.swap_dir(staging, target)

    assert (target / "index.html").read_text(encoding="utf-8") == "new"
    assert not (target / "css").exists()
    assert not staging.exists()
    assert not (tmp_path / "serve.old").exists()


def test_swap_dir_into_missing_target(tmp_path):
    staging = tmp_path / "staging"
    staging.mkdir()
    utils.swap_dir(staging, tmp_path / "serve")
    assert (tmp_path / "serve").is_dir()


def test_iter_files_lists_sorted_posix_paths(tmp_path):
    (tmp_path / "b").mkdir()
    (tmp_path / ".well-known").mkdir()
    (tmp_path / "b" / "z.css").write_text("", encoding="utf-8")
    (tmp_path / "a.html").write_text("", encoding="utf-8")
    (tmp_path / ".well-known" / "security.txt").write_text("", encoding="utf-8")
    assert utils.iter_files(tmp_path) == [".well-known/security.txt", "a.html", "b/z.css"]
    assert utils.iter_files(tmp_path / "missing") == []


def test_matches_any():
    assert utils.matches_any("css/site.css", ["*.css"])
    assert utils.matches_any("assets/app.js", ["assets/*.js"])
    assert not utils.matches_any("assets/vendor/app.js", ["assets/*.js"])
    assert not utils.matches_any("index.html", [])


def test_format_size():
    assert utils.format_size(0) == "0 B"
    assert utils.format_size(1536) == "1.5 KiB"
    assert utils.format_size(5 * 1024 * 1024) == "5.0 MiB"

