"""Unit tests for normalisation, chunking, and content sources."""

from __future__ import annotations

import json

import pytest

from kb_indexer.ingestion.chunker import DocumentChunker, estimate_tokens
from kb_indexer.ingestion.normalizer import ContentNormalizer, compute_hash
from kb_indexer.ingestion.source import InMemoryContentSource, JsonlContentSource, SourceItem


# ── ContentNormalizer ───────────────────────────────────────────────────


class TestContentNormalizer:
    def test_strips_markup_and_prepends_title(self) -> None:
        body = "<p>Hello &amp; welcome.</p><script>alert(1)</script><style>p{}</style><p>Second</p>"
        text = ContentNormalizer().normalize("My Title", body)
        assert text == "My Title\n\nHello & welcome.\n\nSecond"

    def test_removes_editor_comments_and_shortcodes(self) -> None:
        body = (
            "<!-- wp:paragraph --><p>Body text [gallery ids=\"1,2\"] here.</p><!-- /wp:paragraph -->"
            "[caption id=\"x\"]Caption[/caption]"
        )
        text = ContentNormalizer().normalize("T", body)
        assert "wp:" not in text
        assert "[gallery" not in text
        assert "[/caption]" not in text
        assert "Body text" in text and "Caption" in text

    def test_drops_boilerplate_containers(self) -> None:
        body = "<nav>Menu</nav><article><p>Main content</p></article><footer>Copyright</footer>"
        text = ContentNormalizer().normalize("", body)
        assert text == "Main content"

    def test_collapses_whitespace(self) -> None:
        body = "<p>a    b\t\tc</p>\n\n\n\n<p>d</p>"
        assert ContentNormalizer().normalize("", body) == "a b c\n\nd"

    def test_br_becomes_newline(self) -> None:
        assert ContentNormalizer().normalize("", "line one<br>line two") == "line one\nline two"

    def test_empty_body_returns_empty_string(self) -> None:
        assert ContentNormalizer().normalize("Title only", "") == ""
        assert ContentNormalizer().normalize("Title", "<script>x()</script>") == ""

    def test_hooks_run_in_order(self) -> None:
        seen = []

        def upper(text, item):
            seen.append(item)
            return text.upper()

        normalizer = ContentNormalizer(hooks=[upper])
        normalizer.add_hook(lambda text, item: text + "!")
        assert normalizer.normalize("t", "<p>x</p>", item="ctx") == "T\n\nX!"
        assert seen == ["ctx"]

    def test_deterministic_hash(self) -> None:
        normalizer = ContentNormalizer()
        a = normalizer.normalize("T", "<p>Same   body</p>")
        b = normalizer.normalize("T", "<div>Same body</div>")
        assert a == b
        assert compute_hash(a) == compute_hash(b)
        assert len(compute_hash(a)) == 64
        assert compute_hash(a) != compute_hash(a + " changed")


# ── DocumentChunker ─────────────────────────────────────────────────────


class TestDocumentChunker:
    def test_splits_long_text_with_contiguous_indices(self) -> None:
        text = "\n\n".join(f"Paragraph {i} " + "word " * 60 for i in range(10))
        chunks = DocumentChunker(chunk_size=256, chunk_overlap=32).split(text, "Guide")
        assert len(chunks) > 1
        assert [c.index for c in chunks] == list(range(len(chunks)))

    def test_title_prefix_and_token_estimate(self) -> None:
        chunks = DocumentChunker().split("A body long enough to pass the minimum chunk length filter.", "Guide")
        assert len(chunks) == 1
        assert chunks[0].text.startswith("[Guide]\n\n")
        assert chunks[0].token_count == estimate_tokens(chunks[0].text)

    def test_short_document_still_gets_one_chunk(self) -> None:
        chunks = DocumentChunker(min_chunk_chars=50).split("Tiny.", "T")
        assert len(chunks) == 1
        assert chunks[0].text == "[T]\n\nTiny."

    def test_short_fragments_dropped(self) -> None:
        text = "x" * 198 + "\n\n" + "tail"
        chunks = DocumentChunker(chunk_size=200, chunk_overlap=0, min_chunk_chars=50).split(text)
        assert [c.text for c in chunks] == ["x" * 198]

    def test_deterministic(self) -> None:
        text = "Sentence number one. " * 80
        chunker = DocumentChunker(chunk_size=300, chunk_overlap=50)
        assert chunker.split(text, "T") == chunker.split(text, "T")

    def test_empty_input(self) -> None:
        assert DocumentChunker().split("", "T") == []

    def test_estimate_tokens_rounds_up(self) -> None:
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2


# ── Content sources ─────────────────────────────────────────────────────


def _items() -> list[SourceItem]:
    return [
        SourceItem(id=3, title="c", body="<p>c</p>", type="page"),
        SourceItem(id=1, title="a", body="<p>a</p>"),
        SourceItem(id=2, title="b", body="<p>b</p>", type="attachment"),
        SourceItem(id=5, title="e", body="<p>e</p>", excluded=True),
    ]


class TestInMemoryContentSource:
    def test_fetch_page_ascending_beyond_cursor(self) -> None:
        source = InMemoryContentSource(_items())
        assert [i.id for i in source.fetch_page(0, 10)] == [1, 2, 3, 5]
        assert [i.id for i in source.fetch_page(1, 2)] == [2, 3]

    def test_fetch_page_type_filter(self) -> None:
        source = InMemoryContentSource(_items())
        assert [i.id for i in source.fetch_page(0, 10, ["post", "page"])] == [1, 3, 5]

    def test_exclusion(self) -> None:
        source = InMemoryContentSource(_items(), excluded_ids=[1])
        assert source.is_excluded(1)
        assert source.is_excluded(5)
        assert not source.is_excluded(3)

    def test_existing_ids(self) -> None:
        source = InMemoryContentSource(_items())
        source.remove(3)
        assert source.existing_ids([1, 3, 99]) == {1}


class TestJsonlContentSource:
    def test_loads_and_skips_malformed_lines(self, tmp_path) -> None:
        path = tmp_path / "items.jsonl"
        path.write_text(
            json.dumps({"id": 7, "title": "Seven", "body": "<p>s</p>", "type": "post"})
            + "\nnot json\n"
            + json.dumps({"title": "missing id"})
            + "\n\n"
            + json.dumps({"id": 8, "body": "x", "url": "https://example.com/8"})
            + "\n"
        )
        source = JsonlContentSource(path)
        page = source.fetch_page(0, 10)
        assert [i.id for i in page] == [7, 8]
        assert page[1].url == "https://example.com/8"

    def test_missing_file_raises(self, tmp_path) -> None:
        with pytest.raises(FileNotFoundError):
            JsonlContentSource(tmp_path / "nope.jsonl")
