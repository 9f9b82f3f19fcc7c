import pytest

from bookcache.precache.extractor import StaticTextExtractor, dedupe_chunks, split_sentences


def test_dedupe_keeps_first_occurrence_in_order():
    assert dedupe_chunks(["b", " a ", "", "b", "a", "   ", "c"]) == ["b", "a", "c"]


def test_split_sentences_per_paragraph():
    body = "Chương 1. Mở đầu!\n\nAnh ấy hỏi: thật sao? Vâng…  Được rồi.\nChương 1."
    assert split_sentences(body) == [
        "Chương 1.", "Mở đầu!", "Anh ấy hỏi: thật sao?", "Vâng…", "Được rồi.",
    ]


def test_split_sentences_keeps_abbreviation_free_text_whole():
    assert split_sentences("no terminal punctuation here") == ["no terminal punctuation here"]
    assert split_sentences("") == []


@pytest.mark.anyio
async def test_static_extractor_returns_copy():
    extractor = StaticTextExtractor(["one", "two", "one", ""])
    chunks = await extractor.extract_chunks("book1")
    assert chunks == ["one", "two"]
    chunks.append("three")
    assert await extractor.extract_chunks("book1") == ["one", "two"]
