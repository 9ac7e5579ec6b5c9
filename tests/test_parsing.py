"""Tests for combined log line and timestamp parsing."""

import datetime

import pytest

import matomo_log_importer as mli
from conftest import SAMPLE_LINE

UTC = datetime.timezone.utc


class TestParseApacheDatetime:
    def test_utc_offset(self):
        ts = mli.parse_apache_datetime("25/Sep/2025:11:24:17 +0000")
        assert ts == datetime.datetime(2025, 9, 25, 11, 24, 17, tzinfo=UTC)

    def test_positive_offset_normalized_to_utc(self):
        ts = mli.parse_apache_datetime("25/Sep/2025:11:24:17 +0100")
        assert ts == datetime.datetime(2025, 9, 25, 10, 24, 17, tzinfo=UTC)
        assert ts.utcoffset() == datetime.timedelta(0)

    def test_negative_offset_crosses_midnight(self):
        ts = mli.parse_apache_datetime("10/Oct/2000:23:55:36 -0700")
        assert ts == datetime.datetime(2000, 10, 11, 6, 55, 36, tzinfo=UTC)

    def test_missing_offset_assumed_utc(self):
        ts = mli.parse_apache_datetime("25/Sep/2025:11:24:17")
        assert ts == datetime.datetime(2025, 9, 25, 11, 24, 17, tzinfo=UTC)

    def test_surrounding_whitespace(self):
        assert mli.parse_apache_datetime(" 25/Sep/2025:11:24:17 +0000 ") is not None

    @pytest.mark.parametrize("text", ["", "yesterday", "25/Foo/2025:11:24:17 +0000", "2025-09-25T11:24:17Z"])
    def test_garbage_returns_none(self, text):
        assert mli.parse_apache_datetime(text) is None


class TestParseCombinedLine:
    def test_sample_line(self):
        entry = mli.parse_combined_line(SAMPLE_LINE)
        assert entry is not None
        assert entry.client_ip == "1.2.3.4"
        assert entry.raw_datetime == "25/Sep/2025:11:24:17 +0000"
        assert entry.timestamp == datetime.datetime(2025, 9, 25, 11, 24, 17, tzinfo=UTC)
        assert entry.method == "GET"
        assert entry.request_uri == "/matomo.php?idsite=3&action_name=Home"
        assert entry.status_code == 200
        assert entry.bytes_sent == 512
        assert entry.referer == ""
        assert entry.user_agent == "UA/1.0"

    def test_dash_bytes_is_zero(self):
        line = '1.2.3.4 - - [25/Sep/2025:11:24:17 +0000] "GET /x HTTP/1.1" 304 - "-" "-"'
        entry = mli.parse_combined_line(line)
        assert entry.bytes_sent == 0
        assert entry.user_agent == ""

    def test_referer_and_agent_kept(self):
        line = ('10.0.0.1 - bob [25/Sep/2025:11:24:17 +0000] "POST /piwik.php HTTP/1.0" 204 0 '
                '"https://example.org/page" "Mozilla/5.0 (X11; Linux)"')
        entry = mli.parse_combined_line(line)
        assert entry.method == "POST"
        assert entry.request_uri == "/piwik.php"
        assert entry.referer == "https://example.org/page"
        assert entry.user_agent == "Mozilla/5.0 (X11; Linux)"

    def test_request_line_without_protocol(self):
        line = '1.2.3.4 - - [25/Sep/2025:11:24:17 +0000] "GET /matomo.php?a=b" 200 1 "-" "-"'
        entry = mli.parse_combined_line(line)
        assert entry.method == "GET"
        assert entry.request_uri == "/matomo.php?a=b"

    def test_extra_request_fields_discarded(self):
        line = '1.2.3.4 - - [25/Sep/2025:11:24:17 +0000] "GET /matomo.php HTTP/1.1 extra" 200 1 "-" "-"'
        entry = mli.parse_combined_line(line)
        assert entry.request_uri == "/matomo.php"

    @pytest.mark.parametrize("size,expected", [("512", 512), ("-", 0), ("\u00b2", 0), ("\u0663", 0), ("12abc", 0), ("+5", 0)])
    def test_bytes_token_coerced(self, size, expected):
        line = f'1.2.3.4 - - [25/Sep/2025:11:24:17 +0000] "GET /matomo.php HTTP/1.1" 200 {size} "-" "-"'
        entry = mli.parse_combined_line(line)
        assert entry is not None
        assert entry.bytes_sent == expected

    def test_bad_timestamp_keeps_entry(self):
        line = '1.2.3.4 - - [not a date] "GET /matomo.php HTTP/1.1" 200 1 "-" "-"'
        entry = mli.parse_combined_line(line)
        assert entry is not None
        assert entry.timestamp is None
        assert entry.raw_datetime == "not a date"

    @pytest.mark.parametrize("line", [
        "",
        "garbage",
        '1.2.3.4 - - [25/Sep/2025:11:24:17 +0000] GET /matomo.php HTTP/1.1 200 1 "-" "-"',
        '1.2.3.4 - - [25/Sep/2025:11:24:17 +0000] "GET /matomo.php HTTP/1.1" 20 1 "-" "-"',
        '1.2.3.4 - - [25/Sep/2025:11:24:17 +0000] "GET /matomo.php HTTP/1.1" 2000 1 "-" "-"',
        '1.2.3.4 - - [25/Sep/2025:11:24:17 +0000] "GET /matomo.php HTTP/1.1" 200 1',
        '1.2.3.4 - - 25/Sep/2025:11:24:17 +0000 "GET /matomo.php HTTP/1.1" 200 1 "-" "-"',
    ])
    def test_malformed_returns_none(self, line):
        assert mli.parse_combined_line(line) is None

    def test_entry_is_frozen(self):
        entry = mli.parse_combined_line(SAMPLE_LINE)
        with pytest.raises(AttributeError):
            entry.client_ip = "5.6.7.8"


class TestOpenLogfile:
    def test_plain_text(self, tmp_path):
        path = tmp_path / "access.log"
        path.write_bytes(b"line one\nbad \xff byte\n")
        with mli.open_logfile(str(path)) as fh:
            lines = fh.read().splitlines()
        assert lines[0] == "line one"
        assert "�" in lines[1]

    def test_gzip(self, tmp_path):
        import gzip
        path = tmp_path / "access.log.gz"
        with gzip.open(path, "wt") as fh:
            fh.write(SAMPLE_LINE + "\n")
        with mli.open_logfile(str(path)) as fh:
            assert fh.readline().strip() == SAMPLE_LINE

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(OSError):
            mli.open_logfile(str(tmp_path / "nope.log"))
