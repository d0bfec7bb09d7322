"""Tests for the local artifact store."""

from rbridge.evaluation.artifacts import LocalArtifactStore


class TestLocalArtifactStore:

    def test_store_image(self, tmp_path):
        store = LocalArtifactStore(tmp_path / "vault")
        reference = store.store_image("plot_setup_1.jpg", b"\xff\xd8jpeg")
        assert reference == "plots/plot_setup_1.jpg"
        assert (tmp_path / "vault" / "plots" / "plot_setup_1.jpg").read_bytes() == b"\xff\xd8jpeg"

    def test_store_widget_and_file_url(self, tmp_path):
        store = LocalArtifactStore(tmp_path)
        reference = store.store_widget("widget_setup_1.html", "<html></html>")
        assert reference == "widgets/widget_setup_1.html"
        path = store.absolute_path(reference)
        assert path.read_text(encoding="utf-8") == "<html></html>"
        assert store.file_url(reference) == path.as_uri()
        assert store.file_url(reference).startswith("file://")

    def test_existing_file_is_overwritten(self, tmp_path):
        store = LocalArtifactStore(tmp_path)
        store.store_image("a.jpg", b"old")
        store.store_image("a.jpg", b"new")
        assert (tmp_path / "plots" / "a.jpg").read_bytes() == b"new"

    def test_names_cannot_escape_the_category_folder(self, tmp_path):
        store = LocalArtifactStore(tmp_path / "vault")
        assert store.store_image("../../evil.jpg", b"x") == "plots/evil.jpg"
        assert not (tmp_path / "evil.jpg").exists()
