"""Unit tests for the chunker."""

import pytest

from speech.chunker import chunk_text, iter_chunks

LONG_SCENARIO = (
    "Hello. This is a fairly long sentence that exceeds the one hundred sixty "
    "character maximum chunk boundary by a noticeable margin, continuing onward."
)

DEFAULT_SCENARIO = (
    "Hello. This is a fairly long sentence that exceeds the one hundred sixty "
    "character maximum chunk boundary by a noticeable margin, continuing onward "
    "until the listener has heard every single word of it."
)


def _reconstruct(text, chunks):
    return "".join(text[c.start:c.end] for c in chunks)


class TestShortText:

    def test_short_text_is_one_trimmed_chunk(self):
        chunks = chunk_text("  halo dunia  ")
        assert [c.content for c in chunks] == ["halo dunia"]
        assert chunks[0].index == 0

    def test_exactly_max_length_is_one_chunk(self):
        text = "x" * 160
        assert [c.content for c in chunk_text(text)] == [text]

    @pytest.mark.parametrize("text", ["", "   ", "\n\t"])
    def test_blank_text_yields_nothing(self, text):
        assert chunk_text(text) == []

    def test_invalid_max_length(self):
        with pytest.raises(ValueError):
            chunk_text("halo", max_length=0)


class TestBoundaries:

    def test_sentence_break_wins(self):
        chunks = chunk_text(LONG_SCENARIO, max_length=120)
        assert len(chunks) >= 2
        assert chunks[0].content == "Hello."

    def test_sentence_break_preferred_over_comma(self):
        text = "satu, dua. tiga empat lima enam tujuh delapan"
        chunks = chunk_text(text, max_length=20)
        assert chunks[0].content == "satu, dua."

    def test_comma_used_without_sentence_break(self):
        text = "satu dua tiga, empat lima enam tujuh delapan"
        chunks = chunk_text(text, max_length=20)
        assert chunks[0].content == "satu dua tiga,"

    def test_last_whitespace_used_without_punctuation(self):
        text = "alpha beta gamma delta epsilon zeta"
        chunks = chunk_text(text, max_length=20)
        assert chunks[0].content == "alpha beta gamma"

    def test_hard_cut_without_any_boundary(self):
        text = "a" * 50
        chunks = chunk_text(text, max_length=20)
        assert [len(c.content) for c in chunks] == [20, 20, 10]

    def test_last_window_split_at_sentence_breaks(self):
        text = "x" * 150 + ". One. Two."
        chunks = chunk_text(text)
        assert [c.content for c in chunks] == ["x" * 150 + ".", "One.", "Two."]

    def test_last_window_split_at_comma(self):
        text = "Kalimat pertama cukup panjang sekali. Akhir, kata penutup"
        chunks = chunk_text(text, max_length=40)
        assert [c.content for c in chunks] == [
            "Kalimat pertama cukup panjang sekali.", "Akhir,", "kata penutup",
        ]

    def test_fitting_tail_without_punctuation_kept_whole(self):
        text = "Kalimat pertama cukup panjang sekali. Akhir kata"
        chunks = chunk_text(text, max_length=40)
        assert [c.content for c in chunks] == ["Kalimat pertama cukup panjang sekali.", "Akhir kata"]

    def test_default_length_scenario(self):
        assert len(DEFAULT_SCENARIO) > 160
        chunks = chunk_text(DEFAULT_SCENARIO)
        assert [c.content for c in chunks] == [
            "Hello.",
            DEFAULT_SCENARIO[7:129],
            "continuing onward until the listener has heard every single word of it.",
        ]
        assert _reconstruct(DEFAULT_SCENARIO, chunks) == DEFAULT_SCENARIO


class TestInvariants:

    @pytest.mark.parametrize("max_length", [20, 35, 60, 120])
    def test_chunks_reconstruct_source(self, max_length):
        chunks = chunk_text(LONG_SCENARIO, max_length=max_length)
        assert _reconstruct(LONG_SCENARIO, chunks) == LONG_SCENARIO

    @pytest.mark.parametrize("max_length", [20, 35, 60, 120])
    def test_no_chunk_exceeds_max_length(self, max_length):
        for chunk in chunk_text(LONG_SCENARIO, max_length=max_length):
            assert len(chunk.content) <= max_length

    def test_indexes_are_sequential(self):
        chunks = chunk_text(LONG_SCENARIO, max_length=30)
        assert [c.index for c in chunks] == list(range(len(chunks)))

    def test_iter_chunks_is_lazy(self):
        gen = iter_chunks(LONG_SCENARIO, max_length=30)
        first = next(gen)
        assert first.index == 0
