"""
Unit tests for the live stream wire codec.
"""
from lookingglass.probe.stream import (
    StreamDecoder,
    decode_messages,
    encode_message,
    system_info_message,
)


class TestEncoding:
    """Tests for message framing."""

    def test_encode(self):
        """Test messages are framed as server-sent events."""
        assert encode_message({"output": "x 0 1"}) == 'data: {"output": "x 0 1"}\n\n'

    def test_system_info(self):
        """Test the system info message shape."""
        assert system_info_message("lg1", ["192.0.2.10"]) == {
            "type": "system_info",
            "hostname": "lg1",
            "ips": ["192.0.2.10"],
        }


class TestDecoding:
    """Tests for decoding one or more messages per read."""

    def test_several_messages(self):
        """Test a read holding several messages decodes all of them."""
        text = encode_message(system_info_message("lg1", [])) + encode_message({"output": "h 0 10.0.0.1\n"})
        messages = decode_messages(text)
        assert messages[0]["type"] == "system_info"
        assert messages[1] == {"output": "h 0 10.0.0.1\n"}

    def test_bad_fragment_skipped(self):
        """Test fragments that are not JSON objects are skipped."""
        text = 'data: {"output": "a"}\n\ndata: {broken\n\ndata: [1, 2]\n\ndata: {"error": "b"}\n\n'
        assert decode_messages(text) == [{"output": "a"}, {"error": "b"}]


class TestStreamDecoder:
    """Tests for incremental decoding."""

    def test_split_message(self):
        """Test a message split across reads is decoded once complete."""
        wire = encode_message({"output": "x 0 1\nx 0 2\n"})
        decoder = StreamDecoder()
        assert decoder.feed(wire[:10]) == []
        assert decoder.feed(wire[10:]) == [{"output": "x 0 1\nx 0 2\n"}]

    def test_keeps_trailing_partial(self):
        """Test a complete message is returned while the next stays buffered."""
        first = encode_message({"output": "1"})
        second = encode_message({"output": "2"})
        decoder = StreamDecoder()
        assert decoder.feed(first + second[:5]) == [{"output": "1"}]
        assert decoder.feed(second[5:]) == [{"output": "2"}]

    def test_flush(self):
        """Test flush decodes whatever is left without a terminator."""
        decoder = StreamDecoder()
        decoder.feed('data: {"error": "closed"}')
        assert decoder.flush() == [{"error": "closed"}]
        assert decoder.flush() == []
