import hashlib

from bookcache.cache.keys import (
    DEFAULT_BOOK_ID,
    derive_cache_key,
    extract_book_id,
    normalize_text,
    truncate_key,
)


def test_whitespace_variants_share_a_key():
    v = "Ngọc (nữ miền Bắc)"
    assert derive_cache_key("a  b", v) == derive_cache_key("a b", v)
    assert derive_cache_key(" a b ", v) == derive_cache_key("a b", v)
    assert derive_cache_key("a\t\nb", v) == derive_cache_key("a b", v)


def test_key_is_deterministic_md5_of_text_plus_voice():
    expected = hashlib.md5("Hello worldV".encode()).hexdigest()
    assert derive_cache_key("Hello   world", "V") == expected
    assert derive_cache_key("Hello world", "V") == derive_cache_key("Hello world", "V")


def test_different_voices_give_different_keys():
    voices = ["Vĩnh", "Bình", "Ngọc", "Dung", "Đoan", "Hương", "Ly", "Nguyên", "Sơn", "Tuyên"]
    for text in ["Xin chào", "Hello world", "", "Chương 1."]:
        keys = {derive_cache_key(text, v) for v in voices}
        assert len(keys) == len(voices)


def test_empty_text_is_valid():
    key = derive_cache_key("", "V")
    assert len(key) == 32
    assert derive_cache_key("   ", "V") == key


def test_normalize_text():
    assert normalize_text("  many   spaces\there ") == "many spaces here"
    assert normalize_text("") == ""


def test_extract_book_id_drops_session_suffix():
    assert extract_book_id("abc123-1700000000") == "abc123"
    assert extract_book_id("abc123-x-y") == "abc123"
    assert extract_book_id("abc123") == "abc123"


def test_extract_book_id_defaults():
    assert extract_book_id(None) == DEFAULT_BOOK_ID
    assert extract_book_id("") == DEFAULT_BOOK_ID
    assert extract_book_id("-suffix") == DEFAULT_BOOK_ID


def test_truncate_key():
    key = derive_cache_key("x", "v")
    assert truncate_key(key) == key[:12]
