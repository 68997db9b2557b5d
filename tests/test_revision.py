import json
import re
from pathlib import Path

import pytest

from sitepipe.errors import ConfigurationError
from sitepipe.revision import (
    ExclusionRules,
    PathPattern,
    Revisioner,
    fingerprint,
    fingerprint_name,
)

PNG_BYTES = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR fake image payload"


def write_tree(root: Path, files: dict) -> None:
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, str):
            content = content.encode("utf-8")
        path.write_bytes(content)


def fingerprint_of(final_path: str) -> str:
    match = re.search(r"\.([0-9a-f]{8})(\.[^./]+)?$", final_path)
    assert match, final_path
    return match.group(1)


def site_files() -> dict:
    return {
        "index.html": (
            '<link rel="stylesheet" href="/css/main.css">'
            '<img src="img/logo.png" alt="logo">'
            '<script src="/js/app.js"></script>'
            '<a href="https://cdn.example.com/css/main.css">cdn</a>'
            '<img src="missing.png" alt="">'
        ),
        "css/main.css": "body{background:url(../img/logo.png)}",
        "js/app.js": 'var icon = "/img/" + id + ".png"; load("/img/logo.png");',
        "img/logo.png": PNG_BYTES,
        "robots.txt": "Sitemap: /sitemap.xml",
    }


def html_rules() -> ExclusionRules:
    return ExclusionRules.from_lists(skip_rename=[r"re:\.html$", "robots.txt"])


def test_references_resolve_to_fingerprinted_names(tmp_path):
    src, dest = tmp_path / "build", tmp_path / "serve"
    write_tree(src, site_files())

    result = Revisioner(html_rules()).revision(src, dest)

    css = result.mapping["css/main.css"]
    logo = result.mapping["img/logo.png"]
    js = result.mapping["js/app.js"]
    assert css.startswith("css/main.") and css.endswith(".css") and css != "css/main.css"
    assert logo.startswith("img/logo.") and logo.endswith(".png")
    assert result.mapping["index.html"] == "index.html"

    html = (dest / "index.html").read_text(encoding="utf-8")
    assert f'href="/{css}"' in html
    assert f'src="{logo}"' in html
    assert f'src="/{js}"' in html
    assert (dest / css).read_text(encoding="utf-8") == f"body{{background:url(../{logo})}}"
    assert (dest / logo).read_bytes() == PNG_BYTES
    assert not (dest / "css" / "main.css").exists()


def test_unresolved_and_absolute_references_are_untouched(tmp_path):
    src, dest = tmp_path / "build", tmp_path / "serve"
    write_tree(src, site_files())

    result = Revisioner(html_rules()).revision(src, dest)

    html = (dest / "index.html").read_text(encoding="utf-8")
    assert 'href="https://cdn.example.com/css/main.css"' in html
    assert 'src="missing.png"' in html
    script = (dest / result.mapping["js/app.js"]).read_text(encoding="utf-8")
    # Dynamically built paths are a known limitation: left as-is.
    assert '"/img/" + id + ".png"' in script
    assert f'load("/{result.mapping["img/logo.png"]}")' in script


def test_skip_entirely_is_neither_renamed_nor_rewritten(tmp_path):
    src, dest = tmp_path / "build", tmp_path / "serve"
    files = site_files()
    files["vendor/lib.js"] = 'import "/css/main.css";'
    files["index.html"] += '<script src="/vendor/lib.js"></script>'
    write_tree(src, files)

    rules = ExclusionRules.from_lists(
        skip=["/vendor/lib.js"], skip_rename=[r"re:\.html$"]
    )
    result = Revisioner(rules).revision(src, dest)

    assert result.mapping["vendor/lib.js"] == "vendor/lib.js"
    assert (dest / "vendor" / "lib.js").read_text(encoding="utf-8") == 'import "/css/main.css";'
    assert "vendor/lib.js" not in result.rewritten
    assert '<script src="/vendor/lib.js">' in (dest / "index.html").read_text(encoding="utf-8")


@pytest.mark.parametrize(
    "rules",
    [
        ExclusionRules.from_lists(skip=["css/main.css"]),
        ExclusionRules.from_lists(skip=[re.compile(r"^css/")]),
        ExclusionRules.from_lists(skip=[r"re:main\.css$"], skip_rewrite=[r"re:\.js$"]),
        ExclusionRules.from_lists(skip=["css/main.css"], skip_rename=["css/main.css"]),
    ],
)
def test_skip_entirely_holds_for_any_configuration(tmp_path, rules):
    src, dest = tmp_path / "build", tmp_path / "serve"
    write_tree(src, site_files())

    result = Revisioner(rules).revision(src, dest)

    assert result.mapping["css/main.css"] == "css/main.css"
    assert (dest / "css" / "main.css").read_bytes() == (src / "css" / "main.css").read_bytes()


def test_skip_rewrite_renames_but_keeps_content(tmp_path):
    src, dest = tmp_path / "build", tmp_path / "serve"
    write_tree(src, site_files())
    rules = ExclusionRules.from_lists(skip_rename=[r"re:\.html$"], skip_rewrite=["css/main.css"])

    result = Revisioner(rules).revision(src, dest)

    css = result.mapping["css/main.css"]
    assert css != "css/main.css"
    assert (dest / css).read_text(encoding="utf-8") == "body{background:url(../img/logo.png)}"


def test_skip_rename_still_rewrites_references(tmp_path):
    src, dest = tmp_path / "build", tmp_path / "serve"
    write_tree(src, site_files())

    result = Revisioner(html_rules()).revision(src, dest)

    assert "index.html" in result.rewritten
    assert result.mapping["robots.txt"] == "robots.txt"


def test_revision_is_deterministic(tmp_path):
    src = tmp_path / "build"
    write_tree(src, site_files())
    revisioner = Revisioner(html_rules())

    first = revisioner.revision(src, tmp_path / "serve1")
    second = revisioner.revision(src, tmp_path / "serve2")

    assert first.mapping == second.mapping
    for final in first.mapping.values():
        assert (tmp_path / "serve1" / final).read_bytes() == (tmp_path / "serve2" / final).read_bytes()


def test_identical_content_gets_identical_fingerprint():
    revisioner = Revisioner()
    result, _ = revisioner.revision_files(
        {"a.css": b"body{color:red}", "b.css": b"body{color:red}", "c.css": b"body{color:blue}"}
    )
    assert fingerprint_of(result.mapping["a.css"]) == fingerprint_of(result.mapping["b.css"])
    assert fingerprint_of(result.mapping["a.css"]) != fingerprint_of(result.mapping["c.css"])


def test_single_byte_change_changes_fingerprint():
    revisioner = Revisioner()
    before, _ = revisioner.revision_files({"app.js": b"let a = 1;"})
    after, _ = revisioner.revision_files({"app.js": b"let a = 2;"})
    assert fingerprint_of(before.mapping["app.js"]) != fingerprint_of(after.mapping["app.js"])


def test_identical_content_in_different_directories_shares_fingerprint():
    revisioner = Revisioner()
    css = b"body{background:url(bg.png)}"
    result, outputs = revisioner.revision_files(
        {"a/theme.css": css, "b/theme.css": css, "a/bg.png": b"A", "b/bg.png": b"B"}
    )
    a_theme, b_theme = result.mapping["a/theme.css"], result.mapping["b/theme.css"]
    assert fingerprint_of(a_theme) == fingerprint_of(b_theme) == fingerprint(css)
    # each copy still points at its own sibling
    assert result.mapping["a/bg.png"].split("/")[-1].encode() in outputs[a_theme]
    assert result.mapping["b/bg.png"].split("/")[-1].encode() in outputs[b_theme]


def test_fingerprint_depends_on_content_only():
    revisioner = Revisioner()
    css = b"body{background:url(logo.png)}"
    before, _ = revisioner.revision_files({"logo.png": PNG_BYTES, "main.css": css})
    after, _ = revisioner.revision_files({"logo.png": PNG_BYTES + b"!", "main.css": css})
    assert before.mapping["logo.png"] != after.mapping["logo.png"]
    assert before.mapping["main.css"] == after.mapping["main.css"]
    assert len(fingerprint(css)) == 8


def test_reference_cycles_terminate():
    revisioner = Revisioner()
    result, outputs = revisioner.revision_files(
        {"a.js": b'load("b.js")', "b.js": b'load("a.js")'}
    )
    a, b = result.mapping["a.js"], result.mapping["b.js"]
    assert outputs[a] == f'load("{b}")'.encode()
    assert outputs[b] == f'load("{a}")'.encode()


def test_base_path_is_stripped_before_resolving():
    revisioner = Revisioner(ExclusionRules.from_lists(skip_rename=["index.html"]), base_path="/blog/")
    result, outputs = revisioner.revision_files(
        {"index.html": b'<link href="/blog/main.css">', "main.css": b"p{}"}
    )
    assert outputs["index.html"] == f'<link href="/blog/{result.mapping["main.css"]}">'.encode()


def test_manifest_lists_renamed_files_only():
    revisioner = Revisioner(ExclusionRules.from_lists(skip_rename=["index.html"]))
    result, _ = revisioner.revision_files({"index.html": b"", "main.css": b"p{}"})
    manifest = json.loads(result.manifest())
    assert list(manifest) == ["main.css"]
    assert manifest["main.css"] == result.mapping["main.css"]


def test_fingerprint_name_keeps_directory_and_extension():
    assert fingerprint_name("assets/app.min.js", "0123abcd") == "assets/app.min.0123abcd.js"
    assert fingerprint_name("CNAME", "0123abcd") == "CNAME.0123abcd"


def test_path_pattern_forms():
    assert PathPattern("/favicon.ico").matches("favicon.ico")
    assert not PathPattern("favicon.ico").matches("img/favicon.ico")
    assert PathPattern(r"re:\.html$").matches("blog/post.html")
    assert PathPattern(re.compile("^img/")).matches("img/a.png")
    with pytest.raises(ConfigurationError):
        PathPattern("re:[unclosed")
    with pytest.raises(ConfigurationError):
        PathPattern(42)


def test_rules_from_config():
    rules = ExclusionRules.from_config(
        {"revision": {"skip": ["a.js"], "skip_rename": [r"re:\.html$"], "skip_rewrite": None}}
    )
    assert rules.is_skipped("a.js")
    assert not rules.can_rename("index.html")
    assert rules.can_rewrite("index.html")
    assert not rules.can_rewrite("a.js")
