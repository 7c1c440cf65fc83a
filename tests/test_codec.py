"""
Unit tests for chunk payload generation.
"""
import struct

import pytest

from lookingglass.speedtest.codec import (
    PERIOD,
    decode_pattern,
    expected_words,
    fill_pattern,
    parse_chunk_id,
    pattern_chunk,
    pattern_seed,
    random_chunk,
    verify_pattern,
)


class TestParseChunkId:
    """Tests for extracting the chunk index from identity tokens."""

    @pytest.mark.parametrize(
        "token, expected",
        [
            ("abc-5", 5),
            ("1700000000000-12", 12),
            ("a-b-7", 7),
            ("abc", 0),
            ("abc-", 0),
            ("abc-x", 0),
            ("", 0),
            (None, 0),
        ],
    )
    def test_tokens(self, token, expected):
        """Test the last dash-separated segment is the index, else 0."""
        assert parse_chunk_id(token) == expected


class TestPatternChunk:
    """Tests for the deterministic pattern payload."""

    def test_seed(self):
        """Test the seed mixes the low 16 bits with the low byte shifted up."""
        assert pattern_seed(42) == 42 | (42 << 16)
        assert pattern_seed(0x12345) == 0x2345 | (0x45 << 16)

    def test_word_layout(self):
        """Test each little-endian word holds seed plus its byte offset."""
        data = pattern_chunk(42, 16)
        seed = pattern_seed(42)
        assert struct.unpack("<4I", data) == (seed, seed + 4, seed + 8, seed + 12)

    def test_exact_size(self):
        """Test the payload is exactly the requested size."""
        assert len(pattern_chunk(5, 4 * 1024 * 1024)) == 4 * 1024 * 1024
        assert len(pattern_chunk(5, PERIOD + 10)) == PERIOD + 10
        assert pattern_chunk(5, 0) == b""

    def test_repeats_every_period(self):
        """Test the word sequence repeats every 64 KiB."""
        data = pattern_chunk(9, 3 * PERIOD)
        assert data[:PERIOD] == data[PERIOD : 2 * PERIOD] == data[2 * PERIOD :]

    def test_deterministic(self):
        """Test two independent calls produce identical bytes."""
        assert pattern_chunk(42, 256 * 1024) == pattern_chunk(42, 256 * 1024)
        assert pattern_chunk(42, 1024) != pattern_chunk(43, 1024)

    def test_decode_recovers_sequence(self):
        """Test decoding chunk 42 recovers the expected 32-bit sequence."""
        data = pattern_chunk(42, 2 * PERIOD)
        words = decode_pattern(data)
        assert words == expected_words(42, len(data) // 4)
        assert decode_pattern(pattern_chunk(42, 2 * PERIOD)) == words

    def test_verify(self):
        """Test verification accepts the right id only."""
        data = pattern_chunk(7, 1000)
        assert verify_pattern(data, 7)
        assert not verify_pattern(data, 8)


class TestFillPattern:
    """Tests for in-place filling of upload buffers."""

    def test_matches_pattern_chunk(self):
        """Test filling a buffer produces the same bytes as generating one."""
        buffer = bytearray(PERIOD * 2 + 100)
        assert fill_pattern(buffer, 3) is buffer
        assert bytes(buffer) == pattern_chunk(3, len(buffer))

    def test_refill_for_new_id(self):
        """Test a reused buffer is fully overwritten for the next chunk."""
        buffer = fill_pattern(bytearray(4096), 1)
        fill_pattern(buffer, 2)
        assert verify_pattern(bytes(buffer), 2)


class TestRandomChunk:
    """Tests for the random payload."""

    def test_size_and_variation(self):
        """Test random payloads have the right size and differ per call."""
        assert len(random_chunk(1024)) == 1024
        assert random_chunk(64) != random_chunk(64)
        assert random_chunk(0) == b""
