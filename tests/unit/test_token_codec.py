import re

import pytest

from core.exceptions import TokenGenerationError
from services import token_codec
from services.token_codec import TOKEN_LENGTH, build_link, build_qr_code_url, generate_token

TOKEN_RE = re.compile(r"^[0-9A-Z]{8}$")


def test_token_shape():
    for _ in range(200):
        token = generate_token()
        assert len(token) == TOKEN_LENGTH
        assert TOKEN_RE.match(token), token


def test_tokens_do_not_repeat_in_a_large_batch():
    # Eight characters carry four random bytes: a 2**32 space gives roughly a 1%
    # chance of a single collision in 10k draws, and a negligible one of three.
    tokens = {generate_token() for _ in range(10_000)}
    assert len(tokens) >= 10_000 - 2


def test_bytes_are_rendered_two_base36_chars_each(monkeypatch):
    # 0x00 -> "00", 0x23 (35) -> "0z", 0xff (255) -> "73", 0x24 (36) -> "10"
    monkeypatch.setattr(token_codec.secrets, "token_bytes", lambda n: bytes([0x00, 0x23, 0xFF, 0x24, 0x01, 0x02]))
    assert generate_token() == "000Z7310"


def test_no_secure_random_source_fails_closed(monkeypatch):
    def unavailable(n):
        raise NotImplementedError("no urandom")

    monkeypatch.setattr(token_codec.secrets, "token_bytes", unavailable)
    with pytest.raises(TokenGenerationError):
        generate_token()


def test_build_link_strips_trailing_slash():
    assert build_link("AB12CD34", "https://survey.example.org/") == "https://survey.example.org/survey/AB12CD34"


def test_qr_code_url_encodes_the_link():
    url = build_qr_code_url("https://survey.example.org/survey/AB12CD34", size=150)
    assert "size=150x150" in url
    assert "https%3A%2F%2Fsurvey.example.org%2Fsurvey%2FAB12CD34" in url
