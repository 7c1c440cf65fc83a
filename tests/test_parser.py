"""
Unit tests for the mtr raw output parser.
"""
import pytest

from lookingglass.probe.parser import (
    HostDiscovered,
    ProbeEventParser,
    ProbeReceived,
    ProbeSent,
    parse_probe_line,
    parse_probe_output,
)


class TestParseProbeLine:
    """Tests for single line parsing."""

    def test_host_discovery(self):
        """Test h lines produce host events."""
        assert parse_probe_line("h 3 10.0.0.1") == HostDiscovered(hop=3, host="10.0.0.1")

    def test_received_probe(self):
        """Test p lines carry the round trip in milliseconds."""
        assert parse_probe_line("p 0 12.5 7") == ProbeReceived(hop=0, rtt=12.5, seq=7)

    def test_sent_probe(self):
        """Test x lines produce sent events."""
        assert parse_probe_line("x 2 41") == ProbeSent(hop=2, seq=41)

    def test_extra_whitespace(self):
        """Test tokens may be separated by any whitespace."""
        assert parse_probe_line("  p\t1   3.0  2 ") == ProbeReceived(hop=1, rtt=3.0, seq=2)

    @pytest.mark.parametrize(
        "line",
        [
            "",
            "h",
            "h 1",
            "h -1 10.0.0.1",
            "h one 10.0.0.1",
            "p 1 abc 2",
            "p 1 0 2",
            "p 1 -3.5 2",
            "p 1 inf 2",
            "p 1 nan 2",
            "p 1 3.5",
            "p 1 3.5 x",
            "x 1",
            "x 1 1.5",
            "x 0 1_0",
            "x 0 ١",
            "p 1 3.5 1_0",
            "h 1_0 10.0.0.1",
            "d 1 router.example.net",
            "t 1 12345",
            "garbage line here",
        ],
    )
    def test_unusable_lines_are_dropped(self, line):
        """Test malformed or unknown lines yield no event."""
        assert parse_probe_line(line) is None


class TestParseProbeOutput:
    """Tests for block parsing."""

    def test_mixed_block(self):
        """Test only recognised lines survive, in order."""
        events = parse_probe_output("x 0 1\nd 0 gw.local\n\np 0 1.5 1\nbogus\nh 0 192.168.1.1\n")
        assert events == [
            ProbeSent(hop=0, seq=1),
            ProbeReceived(hop=0, rtt=1.5, seq=1),
            HostDiscovered(hop=0, host="192.168.1.1"),
        ]

    def test_windows_line_endings(self):
        """Test CRLF separated output parses the same."""
        assert len(parse_probe_output("x 0 1\r\nx 0 2\r\n")) == 2


class TestProbeEventParser:
    """Tests for dispatching parsed events to an aggregator."""

    def test_feed_applies_events_in_order(self, mocker):
        """Test every recognised event reaches the aggregator in arrival order."""
        aggregator = mocker.Mock()
        parser = ProbeEventParser(aggregator)

        applied = parser.feed("h 1 10.0.0.1\nnoise\nx 1 5\n")

        assert applied == 2
        assert aggregator.apply.call_args_list == [
            mocker.call(HostDiscovered(hop=1, host="10.0.0.1")),
            mocker.call(ProbeSent(hop=1, seq=5)),
        ]

    def test_feed_nothing_usable(self, mocker):
        """Test a block of noise applies nothing."""
        aggregator = mocker.Mock()
        assert ProbeEventParser(aggregator).feed("d 1 a\nt 1 2\n") == 0
        aggregator.apply.assert_not_called()
