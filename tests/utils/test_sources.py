from pathlib import Path

import pytest

from repic.utils.hashutils import prefetch_filename, url_digest
from repic.utils.sources import (
    extension_for_url,
    is_local_source,
    is_network_source,
    local_file_url,
    origin_of,
)


@pytest.mark.parametrize(
    "source, network, local",
    [
        ("https://example.com/a.jpg", True, False),
        ("http://example.com/a.jpg", True, False),
        ("file:///tmp/a.jpg", False, True),
        ("data:image/png;base64,AAAA", False, True),
        ("ftp://example.com/a.jpg", False, False),
        ("", False, False),
        (None, False, False),
    ],
)
def test_source_classification(source, network, local):
    assert is_network_source(source) is network
    assert is_local_source(source) is local


@pytest.mark.parametrize(
    "url, ext",
    [
        ("https://cdn.example.com/img/photo.PNG", ".png"),
        ("https://cdn.example.com/img/photo.webp?w=200", ".webp"),
        ("https://cdn.example.com/img/photo", ".jpg"),
        ("https://cdn.example.com/img/archive.tar.gz", ".jpg"),
    ],
)
def test_extension_for_url(url, ext):
    assert extension_for_url(url) == ext


def test_origin_of():
    assert origin_of("https://img.example.com:8443/a/b.jpg?x=1") == "https://img.example.com:8443/"
    assert origin_of("not a url") is None


def test_local_file_url(tmp_path: Path):
    target = tmp_path / "a b.jpg"
    assert local_file_url(target).startswith("file://")
    assert "a%20b.jpg" in local_file_url(target)


def test_prefetch_filename_is_deterministic():
    url = "https://example.com/photos/1.png"
    assert prefetch_filename(url) == prefetch_filename(url)
    assert prefetch_filename(url) == url_digest(url) + ".png"
    assert len(url_digest(url)) == 16
    assert prefetch_filename(url) != prefetch_filename(url + "?v=2")
