"""Tests for the command line application helpers."""

import io
from unittest import mock

from wordsync.config import DEFAULT_CONFIG, SettingsStore, _deep_merge
from wordsync.document import Document
from wordsync.element_index import Word
from wordsync.main import ConsoleHighlighter, WordSyncApp, load_document


def make_word(text, parent_tag="p"):
    doc = Document.from_html(f"<{parent_tag}>{text}</{parent_tag}>")
    node = next(doc.root.iter_text_nodes())
    return Word(node=node, start_offset=0, end_offset=len(text), text=text)


class TestLoadDocument:
    """Test load_document() format detection."""

    def test_markdown(self, tmp_path):
        path = tmp_path / "notes.md"
        path.write_text("# Heading\n\nBody text.\n", encoding="utf-8")
        doc = load_document(path)
        assert [h.text_content for h in doc.root.find_all("h1")] == ["Heading"]

    def test_html(self, tmp_path):
        path = tmp_path / "page.HTML"
        path.write_text("<p id='x'>Hello</p>", encoding="utf-8")
        assert load_document(path).root.get_by_id("x").text_content == "Hello"

    def test_plain_text(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("# not a heading\n", encoding="utf-8")
        doc = load_document(path)
        assert doc.root.find_all("h1") == []
        assert [p.text_content for p in doc.root.find_all("p")] == ["# not a heading"]


class TestConsoleHighlighter:
    """Test the console highlight sink."""

    def test_prints_each_word_once(self):
        stream = io.StringIO()
        sink = ConsoleHighlighter(stream)
        word = make_word("Hello")

        sink.highlight(word)
        sink.highlight(word)
        sink.clear()

        assert stream.getvalue() == "Hello \n"

    def test_new_region_starts_new_line(self):
        stream = io.StringIO()
        sink = ConsoleHighlighter(stream)

        sink.highlight(make_word("One"))
        sink.highlight(make_word("Two"))

        assert stream.getvalue() == "One \nTwo "


class TestWordSyncApp:
    """Test keyboard command dispatch."""

    def setup_method(self):
        store = SettingsStore(config=_deep_merge({}, DEFAULT_CONFIG))
        document = Document.from_html("<main><p>One two.</p><p>Three.</p></main>")
        self.app = WordSyncApp(document, mock.Mock(cache_namespace=("m", "v")),
                               store, mock.Mock())
        self.app.navigator = mock.Mock()

    def test_flow(self):
        assert [r.text_content for r in self.app.flow()] == ["One two.", "Three."]

    def test_step_keys(self):
        self.app._handle_key("n")
        self.app._handle_key("b\n")
        assert self.app.navigator.step.call_args_list == [mock.call(1), mock.call(-1)]

    def test_pause_and_resume_keys(self):
        self.app._handle_key("p")
        self.app._handle_key("r")
        self.app.navigator.toggle_pause.assert_called_once_with()
        self.app.navigator.resume.assert_called_once_with()

    def test_quit_key(self):
        self.app.running = True
        self.app._handle_key("q")
        self.app.navigator.stop.assert_called_once_with()
        assert not self.app.running

    def test_settings_changes_reach_navigator(self):
        store = SettingsStore(config=_deep_merge({}, DEFAULT_CONFIG))
        app = WordSyncApp(Document.from_text("Hello."), mock.Mock(cache_namespace=("m", "v")),
                          store, mock.Mock())
        store.update("playback", roam_debounce_ms=50)
        assert app.navigator.settings.roam_debounce_ms == 50
