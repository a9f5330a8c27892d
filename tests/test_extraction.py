"""Extraction rules against literal capture text."""

import pytest

from vpn_tester import (
    PLACEHOLDER,
    bench_io_avg,
    censor_bad_lines,
    extract,
    ip_type,
    ipregion_asn,
    ipregion_ipv4,
    moscow_ping,
    report_link,
    strip_ansi,
    sysbench_events_per_second,
    yabs_tcp_cc,
)

HEADER = '===== step.txt =====\ndate: 2026-01-02T03:04:05+00:00\nurl: https://example.invalid\nargs: \n\n'

SYSBENCH = HEADER + """\
sysbench 1.0.20 (using system LuaJIT 2.1.0-beta3)

Running the test with following options:
Number of threads: 1

CPU speed:
    events per second:  1187.40

General statistics:
    total time:                          10.0007s
"""

IPREGION = HEADER + """\
\x1b[1;32mIPv4:\x1b[0m 203.0.113.7
\x1b[1;32mASN:\x1b[0m AS64500 Example Hosting
IPv4: 198.51.100.1
"""

CENSOR = HEADER + """\
YouTube ........ OK
Netflix ........ Blocked
ChatGPT ........ Denied
Spotify ........ TIMEOUT
Discord ........ connection failed
Twitch ......... OK
"""

IPERF = HEADER + """\
Server              Upload        Download      Ping
Moscow              4296.3 Mbps   4298.7 Mbps   42 ms
Saint Petersburg    2100.0 Mbps   2200.5 Mbps   48 ms
Moscow              4100.1 Mbps   4000.0 Mbps   39.5 ms
"""

YABS = HEADER + """\
Basic System Information:
---------------------------------
Processor  : Intel Xeon Processor (Skylake)
TCP CC     : bbr
Virtualization : KVM
"""

IP_CHECK_PLACE = HEADER + """\
Report Link: https://Report.Check.Place/ip/OLD.svg
Report Link: https://Report.Check.Place/ip/ABC123.svg
"""

BENCH = HEADER + """\
 I/O Speed(1st run)    : 512 MB/s
 I/O Speed(2nd run)    : 498 MB/s
 I/O Speed(average)    : 505.0   MB/s
"""

CHECK_PLACE = HEADER + """\
IP Type:     Hosting
IP Type:     Residential
"""


def test_strip_ansi():
    assert strip_ansi('\x1b[1;31mBlocked\x1b[0m') == 'Blocked'


def test_sysbench_takes_last_value():
    text = SYSBENCH + '    events per second:  1201.00\n'
    assert sysbench_events_per_second(SYSBENCH) == '1187.40'
    assert sysbench_events_per_second(text) == '1201.00'


def test_ipregion_first_lines_without_colour():
    assert ipregion_ipv4(IPREGION) == 'IPv4: 203.0.113.7'
    assert ipregion_asn(IPREGION) == 'ASN: AS64500 Example Hosting'


def test_censor_counts_bad_lines_case_insensitively():
    assert censor_bad_lines(CENSOR) == '4'


def test_censor_zero_is_a_value():
    assert extract(censor_bad_lines, HEADER + 'YouTube OK\n') == '0'


def test_moscow_ping_last_row():
    assert moscow_ping(IPERF) == '39.5 ms'


def test_moscow_ping_without_unit():
    assert moscow_ping('Moscow 100 200 37\n') == '37'


def test_yabs_tcp_cc():
    assert yabs_tcp_cc(YABS) == 'bbr'


def test_report_link_last_line():
    assert report_link(IP_CHECK_PLACE) == 'Report Link: https://Report.Check.Place/ip/ABC123.svg'


def test_bench_io_average():
    assert bench_io_avg(BENCH) == '505.0 MB/s'


def test_ip_type_first():
    assert ip_type(CHECK_PLACE) == 'Hosting'


def test_label_without_value():
    assert extract(yabs_tcp_cc, 'TCP CC     :   \n') == PLACEHOLDER


@pytest.mark.parametrize('rule', [
    sysbench_events_per_second,
    ipregion_ipv4,
    ipregion_asn,
    moscow_ping,
    yabs_tcp_cc,
    report_link,
    bench_io_avg,
    ip_type,
])
def test_missing_labels_degrade_to_placeholder(rule):
    unrelated = HEADER + 'curl: (6) Could not resolve host\nsomething else entirely\n'
    assert extract(rule, unrelated) == PLACEHOLDER
    assert extract(rule, '') == PLACEHOLDER
