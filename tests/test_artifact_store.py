import json

import pytest

from canvasgate.service.artifact_store import LocalArtifactStore
from canvasgate.service.fs import PathTraversalError


def test_persist_writes_file_and_metadata(tmp_path):
    store = LocalArtifactStore(tmp_path)

    stored = store.persist(b"\x89PNG", "ai_generated_1_ab.png", "image/png", {"ai_generated": True})

    assert stored.url == f"/media/{stored.id}/ai_generated_1_ab.png"
    assert stored.size_bytes == 4
    assert (tmp_path / "media" / stored.id / "ai_generated_1_ab.png").read_bytes() == b"\x89PNG"
    sidecar = json.loads((tmp_path / "media" / stored.id / "metadata.json").read_text())
    assert sidecar["content_type"] == "image/png"
    assert sidecar["metadata"] == {"ai_generated": True}
    assert store.load_metadata(stored.id) == sidecar


def test_custom_url_prefix(tmp_path):
    store = LocalArtifactStore(tmp_path, url_prefix="assets/")

    stored = store.persist(b"x", "a.gif", "image/gif")

    assert stored.url.startswith("/assets/")


def test_filename_directory_parts_are_dropped(tmp_path):
    store = LocalArtifactStore(tmp_path)

    stored = store.persist(b"x", "../../etc/a.png", "image/png")

    assert stored.filename == "a.png"
    assert (tmp_path / "media" / stored.id / "a.png").exists()


@pytest.mark.parametrize("filename", ["", "..", "metadata.json"])
def test_invalid_filenames_rejected(tmp_path, filename):
    with pytest.raises(PathTraversalError):
        LocalArtifactStore(tmp_path).persist(b"x", filename, "image/png")


def test_load_metadata_rejects_traversal(tmp_path):
    with pytest.raises(PathTraversalError):
        LocalArtifactStore(tmp_path).load_metadata("../../outside")
