"""vpn_tester.py

Прогон набора проверок VPS/VPN-узла (ipregion, censorcheck, iperf3, yabs, IP.Check.Place,
bench.sh, Check.Place, sysbench) с сохранением сырого вывода и краткой сводкой.

Every step writes its combined output to a capture file under one run directory
(<outdir>/vpn-test_<timestamp>[_<tag>]/), a few values are scraped out of the captures
into summary.txt / summary.json.

Usage:
    sudo vpn-test --tag th-de-01
    sudo vpn-test --outdir /root/tests --tag cs-nl-01 --timeout 35 --lang en

Dependencies: requests, tqdm
"""
import argparse
import json
import logging
import os
import platform
import re
import shlex
import shutil
import socket
import subprocess
import sys
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Tuple

import requests
from tqdm import tqdm
from tqdm.contrib.logging import logging_redirect_tqdm

__version__ = '1.0.0'

SCRIPT_NAME = 'vpn-test'
LANGS = ('en', 'ru')
DEFAULT_TIMEOUT = 25
PLACEHOLDER = 'n/a'
DNS_TAG_SUFFIX = '.nolim.cloud'

SUMMARY_FILE = 'summary.txt'
SUMMARY_JSON_FILE = 'summary.json'
META_FILE = 'meta.txt'
INSTALL_LOG = '00-install-deps.log'

IPREGION_URL = 'https://ipregion.vrnt.xyz'
CENSOR_URL = 'https://raw.githubusercontent.com/vernette/censorcheck/master/censorcheck.sh'
RU_IPERF_URL = 'https://raw.githubusercontent.com/itdoginfo/russian-iperf3-servers/main/speedtest.sh'
YABS_URL = 'https://yabs.sh'
IP_CHECK_PLACE_URL = 'https://IP.Check.Place'
BENCH_URL = 'https://bench.sh'
CHECK_PLACE_URL = 'https://Check.Place'

# Some of these hosts only hand out the raw script to curl-like clients.
FETCH_HEADERS = {'User-Agent': 'curl/8.5.0', 'Accept': '*/*'}

NETWORK_STATE_CMD = 'ip -4 addr show; echo; ip -4 route show; echo; echo "resolver:"; cat /etc/resolv.conf || true'
PUBLIC_IP_CMD = (
    'echo "ifconfig.me:"; curl -fsS --connect-timeout 10 --max-time 20 https://ifconfig.me || true; echo; '
    'echo "ipinfo.io/ip:"; curl -fsS --connect-timeout 10 --max-time 20 https://ipinfo.io/ip || true; echo'
)

# (flag suffix, help); --skip-<suffix> clears RunConfig.run_<suffix with underscores>
SKIP_FLAGS = (
    ('ipregion', 'Skip ipregion test'),
    ('censor-geoblock', 'Skip censorcheck geoblock mode'),
    ('censor-dpi', 'Skip censorcheck dpi mode'),
    ('ru-iperf', 'Skip russian-iperf3-servers test'),
    ('yabs', 'Skip yabs'),
    ('ipblock', 'Skip IP.Check.Place -l <lang>'),
    ('bench', 'Skip bench.sh'),
    ('ipquality', 'Skip Check.Place -EI'),
    ('sysbench', 'Skip sysbench cpu run'),
)

_DEB_PACKAGES = ('curl', 'wget', 'dnsutils', 'ca-certificates', 'jq', 'sysbench', 'mtr-tiny', 'iproute2', 'netcat-openbsd')
_RPM_PACKAGES = ('curl', 'wget', 'bind-utils', 'ca-certificates', 'jq', 'sysbench', 'mtr', 'iproute', 'nmap-ncat')

# first one found on PATH wins
PACKAGE_MANAGERS = (
    ('apt-get', (('apt-get', 'update', '-y'), ('apt-get', 'install', '-y') + _DEB_PACKAGES)),
    ('dnf', (('dnf', 'install', '-y') + _RPM_PACKAGES,)),
    ('yum', (('yum', 'install', '-y') + _RPM_PACKAGES,)),
)

REQUIRED_TOOLS = ('curl', 'wget')

ANSI_RE = re.compile(r'\x1b\[[0-9;?]*[A-Za-z]')
TAG_UNSAFE_RE = re.compile(r'[^A-Za-z0-9_.-]')
CENSOR_BAD_RE = re.compile(r'Denied|Blocked|timeout|fail', re.IGNORECASE)

log = logging.getLogger('vpn_tester')


class VpnTestError(Exception):
    """Base error for a run that cannot continue."""


class PreconditionError(VpnTestError):
    """Missing privilege, missing tool or an unusable output directory."""


class RemoteScriptError(VpnTestError):
    """A remote script could not be fetched or exited non-zero."""


@dataclass(frozen=True)
class RunConfig:
    outdir: Path
    tag: str = ''
    lang: str = 'en'
    install_deps: bool = True
    timeout: int = DEFAULT_TIMEOUT
    run_ipregion: bool = True
    run_censor_geoblock: bool = True
    run_censor_dpi: bool = True
    run_ru_iperf: bool = True
    run_yabs: bool = True
    run_ipblock: bool = True
    run_bench: bool = True
    run_ipquality: bool = True
    run_sysbench: bool = True
    abort_on_remote_failure: bool = False
    show_progress: bool = True


@dataclass(frozen=True)
class RunContext:
    timestamp: str
    tag: str
    run_name: str
    outdir: Path

    def path(self, name):
        return self.outdir / name

    @property
    def summary_path(self):
        return self.path(SUMMARY_FILE)

    @property
    def meta_path(self):
        return self.path(META_FILE)


@dataclass(frozen=True)
class Extraction:
    key: str
    rule: Callable[[str], Optional[str]]


@dataclass(frozen=True)
class Step:
    """One check: a local command or a remote script, plus what to scrape from its capture."""
    name: str
    enabled: bool
    command: Tuple[str, ...] = ()
    url: Optional[str] = None
    args: Tuple[str, ...] = ()
    extractions: Tuple[Extraction, ...] = ()
    requires: Optional[str] = None

    @property
    def remote(self):
        return self.url is not None


@dataclass(frozen=True)
class StepOutcome:
    path: Path
    text: str
    ok: bool
    returncode: Optional[int] = None
    error: Optional[str] = None


# ----------------------------
# Options
# ----------------------------

def _dest(suffix):
    return suffix.replace('-', '_')


def positive_int(value):
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f'invalid int value: {value!r}')
    if number <= 0:
        raise argparse.ArgumentTypeError(f'must be a positive number of seconds, got {number}')
    return number


def build_parser():
    parser = argparse.ArgumentParser(
        prog=SCRIPT_NAME,
        description='VPS/VPN quality checks: runs local and community test scripts, '
                    'captures their output and writes a short summary.',
        epilog='Examples:\n'
               f'  sudo {SCRIPT_NAME} --tag th-de-01\n'
               f'  sudo {SCRIPT_NAME} --outdir /root/tests --tag cs-nl-01 --timeout 35 --lang en\n',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        allow_abbrev=False,
    )
    parser.add_argument('--outdir', help='Base output directory (default: current dir)')
    parser.add_argument('--tag', default='', help='Add tag to result folder name (e.g. "th-de-01")')
    parser.add_argument('--lang', choices=LANGS, default='en', help='Output language hint for IP.Check.Place (default: en)')
    parser.add_argument('--no-install', action='store_true', help='Do not install dependencies')
    parser.add_argument('--timeout', type=positive_int, default=DEFAULT_TIMEOUT,
                        help='Connect timeout in seconds for remote scripts; total fetch time is twice that (default: 25)')
    for suffix, help_text in SKIP_FLAGS:
        parser.add_argument(f'--skip-{suffix}', action='store_true', help=help_text)
    parser.add_argument('--abort-on-remote-failure', action='store_true',
                        help='Stop the whole run when a remote script fails (default: record it and continue)')
    parser.add_argument('--no-progress', action='store_true', help='Disable progress bar output')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def parse_config(argv=None):
    args = build_parser().parse_args(argv)
    runs = {f'run_{_dest(suffix)}': not getattr(args, f'skip_{_dest(suffix)}') for suffix, _ in SKIP_FLAGS}
    return RunConfig(
        outdir=Path(args.outdir) if args.outdir else Path.cwd(),
        tag=args.tag,
        lang=args.lang,
        install_deps=not args.no_install,
        timeout=args.timeout,
        abort_on_remote_failure=args.abort_on_remote_failure,
        show_progress=not args.no_progress,
        **runs,
    )


def setup_logging(level=None):
    if level is None:
        level = os.getenv('VPN_TEST_LOG_LEVEL', 'INFO').upper()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter('[%(asctime)s] %(message)s', datefmt='%Y-%m-%dT%H:%M:%S%z'))
    log.handlers.clear()
    log.addHandler(handler)
    log.setLevel(getattr(logging, level, logging.INFO))
    log.propagate = False


# ----------------------------
# Environment
# ----------------------------

def now_iso():
    return datetime.now().astimezone().isoformat(timespec='seconds')


def require_root():
    if os.geteuid() != 0:
        raise PreconditionError(f'Run as root (use: sudo {SCRIPT_NAME} ...)')


def sanitize_tag(tag):
    """Spaces and slashes become underscores, anything outside [A-Za-z0-9_.-] is dropped."""
    return TAG_UNSAFE_RE.sub('', tag.replace(' ', '_').replace('/', '_'))


def run_name(timestamp, tag=''):
    return f'vpn-test_{timestamp}_{tag}' if tag else f'vpn-test_{timestamp}'


def make_context(config, now=None):
    timestamp = (now or datetime.now()).strftime('%Y%m%d-%H%M%S')
    tag = sanitize_tag(config.tag)
    name = run_name(timestamp, tag)
    return RunContext(timestamp=timestamp, tag=tag, run_name=name, outdir=Path(config.outdir) / name)


def create_run_dir(ctx):
    try:
        ctx.outdir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise PreconditionError(f'Cannot create output directory {ctx.outdir}: {exc}') from exc


def hostname():
    return socket.getfqdn() or socket.gethostname()


def os_pretty_name(path='/etc/os-release'):
    try:
        with open(path, 'r', encoding='utf-8') as fh:
            for line in fh:
                if line.startswith('PRETTY_NAME='):
                    return line.split('=', 1)[1].strip().strip('"')
    except OSError:
        # minimal images may not ship os-release
        return ''
    return ''


def write_meta(ctx, config):
    meta = {
        'script': SCRIPT_NAME,
        'version': __version__,
        'timestamp': ctx.timestamp,
        'tag': ctx.tag,
        'hostname': hostname(),
        'kernel': platform.release(),
        'os': os_pretty_name(),
        'arch': platform.machine(),
        'lang': config.lang,
    }
    with open(ctx.meta_path, 'w', encoding='utf-8') as fh:
        for key, value in meta.items():
            fh.write(f'{key}={value}\n')
    return meta


def install_deps(ctx):
    """Install the helper tools with the first package manager found. Returns True on success."""
    for manager, commands in PACKAGE_MANAGERS:
        if shutil.which(manager):
            break
    else:
        log.warning('No supported package manager found. Skipping auto-install. '
                    'Ensure curl/wget/dig/sysbench are installed.')
        return False

    log.info('Installing deps (%s)...', manager)
    env = dict(os.environ, DEBIAN_FRONTEND='noninteractive')
    install_log = ctx.path(INSTALL_LOG)
    with open(install_log, 'w', encoding='utf-8') as fh:
        for cmd in commands:
            try:
                rc = _tee(cmd, fh, env=env)
            except OSError as exc:
                log.warning('Failed to run %s: %s', cmd[0], exc)
                return False
            if rc != 0:
                log.warning('%s exited with status %s, see %s', shlex.join(cmd), rc, install_log)
                return False
    return True


def check_required_tools():
    for tool in REQUIRED_TOOLS:
        if not shutil.which(tool):
            raise PreconditionError(f'{tool} not found')


# ----------------------------
# Runner
# ----------------------------

def echo(line):
    # keeps an active progress bar intact
    tqdm.write(line)


def _emit(fh, line):
    fh.write(line + '\n')
    echo(line)


def _write_header(fh, name, lines):
    _emit(fh, f'===== {name} =====')
    _emit(fh, f'date: {now_iso()}')
    for line in lines:
        _emit(fh, line)
    _emit(fh, '')


def _tee(cmd, fh, stdin=None, env=None):
    """Run cmd, copying combined stdout/stderr line by line to fh and the console."""
    proc = subprocess.Popen(cmd, stdin=stdin, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                            env=env, text=True, errors='replace')
    with proc.stdout:
        for line in proc.stdout:
            fh.write(line)
            echo(line.rstrip('\n'))
    return proc.wait()


def _read(path):
    return Path(path).read_text(encoding='utf-8', errors='replace')


def run_local(ctx, name, cmd):
    """Run a local command into capture file `name`. The exit status is recorded, not judged."""
    path = ctx.path(name)
    rc = None
    error = None
    with open(path, 'w', encoding='utf-8') as fh:
        _write_header(fh, name, [f'cmd: {shlex.join(cmd)}'])
        try:
            rc = _tee(list(cmd), fh)
        except OSError as exc:
            error = f'Failed to start {cmd[0]}: {exc}'
            _emit(fh, error)
        _emit(fh, '')
    return StepOutcome(path=path, text=_read(path), ok=error is None, returncode=rc, error=error)


def fetch_timeouts(timeout):
    """(connect, total) seconds for a remote script download."""
    return timeout, timeout * 2


def _download(url, connect, total, result, stop):
    try:
        resp = requests.get(url, headers=FETCH_HEADERS, timeout=(connect, total), stream=True, allow_redirects=True)
        try:
            resp.raise_for_status()
            for chunk in resp.iter_content(chunk_size=64 * 1024):
                if stop.is_set():
                    return
                result['body'].extend(chunk)
        finally:
            resp.close()
    except requests.RequestException as exc:
        result['error'] = exc
        return
    result['done'] = True


def fetch_script(url, timeout):
    """Download a script; the whole attempt is bounded by the total timeout, however slowly the body arrives."""
    connect, total = fetch_timeouts(timeout)
    result = {'body': bytearray(), 'error': None, 'done': False}
    stop = threading.Event()
    worker = threading.Thread(target=_download, args=(url, connect, total, result, stop), daemon=True)
    worker.start()
    worker.join(timeout=total)
    if worker.is_alive():
        # the worker drops the body at its next chunk, or when the read timeout fires
        stop.set()
        raise RemoteScriptError(f'Timed out after {total}s fetching {url}')
    if result['error'] is not None:
        raise RemoteScriptError(f'Failed to fetch {url}: {result["error"]}') from result['error']
    if not result['done']:
        raise RemoteScriptError(f'Download of {url} was aborted')
    if not result['body']:
        raise RemoteScriptError(f'Empty response from {url}')
    return bytes(result['body'])


def run_remote(ctx, name, url, args, timeout):
    """Fetch a script over HTTPS and run it as `bash -s -- args`, capturing output into `name`."""
    path = ctx.path(name)
    rc = None
    error = None
    with open(path, 'w', encoding='utf-8') as fh:
        _write_header(fh, name, [f'url: {url}', f'args: {" ".join(args)}'])
        try:
            body = fetch_script(url, timeout)
            with tempfile.TemporaryFile() as script:
                script.write(body)
                script.seek(0)
                rc = _tee(['bash', '-s', '--', *args], fh, stdin=script)
            if rc != 0:
                error = f'exit status {rc}'
        except RemoteScriptError as exc:
            error = str(exc)
        except OSError as exc:
            error = f'cannot run bash: {exc}'
        if error:
            _emit(fh, f'Remote run failed for {url}: {error}')
        _emit(fh, '')
    return StepOutcome(path=path, text=_read(path), ok=error is None, returncode=rc, error=error)


# ----------------------------
# Extraction rules: captured text -> value or None
# ----------------------------

def strip_ansi(text):
    return ANSI_RE.sub('', text)


def _matching(text, pattern, flags=0):
    rx = re.compile(pattern, flags)
    return [line for line in strip_ansi(text).splitlines() if rx.search(line)]


def _field_after_colon(line):
    parts = line.split(':')
    if len(parts) < 2:
        return None
    return ' '.join(parts[1].split()) or None


def sysbench_events_per_second(text):
    values = re.findall(r'events per second:\s*(\S+)', strip_ansi(text))
    return values[-1] if values else None


def ipregion_ipv4(text):
    lines = _matching(text, r'IPv4:')
    return lines[0].strip() if lines else None


def ipregion_asn(text):
    lines = _matching(text, r'ASN:')
    return lines[0].strip() if lines else None


def censor_bad_lines(text):
    return str(len(_matching(text, CENSOR_BAD_RE)))


def moscow_ping(text):
    # e.g. "Moscow  4296.3 Mbps  4298.7 Mbps  42 ms"
    lines = _matching(text, r'^Moscow')
    if not lines:
        return None
    row = lines[-1]
    m = re.search(r'(\d+(?:\.\d+)?)\s*ms\s*$', row)
    if m:
        return f'{m.group(1)} ms'
    return row.split()[-1]


def yabs_tcp_cc(text):
    lines = _matching(text, r'TCP CC')
    return _field_after_colon(lines[0]) if lines else None


def report_link(text):
    lines = _matching(text, r'Report Link:')
    return lines[-1].strip() if lines else None


def bench_io_avg(text):
    lines = _matching(text, r'I/O Speed\(average\)')
    return _field_after_colon(lines[-1]) if lines else None


def ip_type(text):
    lines = _matching(text, r'IP Type:')
    return _field_after_colon(lines[0]) if lines else None


def extract(rule, text):
    return rule(text) or PLACEHOLDER


# ----------------------------
# Steps
# ----------------------------

def build_steps(config, ctx):
    dns_enabled = bool(ctx.tag) and DNS_TAG_SUFFIX in ctx.tag
    tag = shlex.quote(ctx.tag)
    return [
        Step('01-ip-a.txt', True, command=('bash', '-lc', NETWORK_STATE_CMD)),
        Step('02-public-ip.txt', True, command=('bash', '-lc', PUBLIC_IP_CMD)),
        Step('03-sysbench-cpu.txt', config.run_sysbench,
             command=('sysbench', 'cpu', 'run', '--threads=1'), requires='sysbench',
             extractions=(Extraction('sysbench.events_per_second', sysbench_events_per_second),)),
        Step('10-ipregion.txt', config.run_ipregion, url=IPREGION_URL,
             extractions=(Extraction('ipregion.ipv4', ipregion_ipv4), Extraction('ipregion.asn', ipregion_asn))),
        Step('11-censorcheck-geoblock.txt', config.run_censor_geoblock, url=CENSOR_URL, args=('--mode', 'geoblock'),
             extractions=(Extraction('censorcheck.geoblock.bad_lines', censor_bad_lines),)),
        Step('12-censorcheck-dpi.txt', config.run_censor_dpi, url=CENSOR_URL, args=('--mode', 'dpi'),
             extractions=(Extraction('censorcheck.dpi.bad_lines', censor_bad_lines),)),
        Step('20-ru-iperf3.txt', config.run_ru_iperf, url=RU_IPERF_URL,
             extractions=(Extraction('ru-iperf3.moscow.ping', moscow_ping),)),
        Step('30-yabs.txt', config.run_yabs, url=YABS_URL, args=('-4',),
             extractions=(Extraction('yabs.tcp_cc', yabs_tcp_cc),)),
        Step('40-ip-check-place.txt', config.run_ipblock, url=IP_CHECK_PLACE_URL, args=('-l', config.lang),
             extractions=(Extraction('ip.check.place.report', report_link),)),
        Step('50-benchsh.txt', config.run_bench, url=BENCH_URL,
             extractions=(Extraction('bench.io_avg', bench_io_avg),)),
        Step('60-check-place-EI.txt', config.run_ipquality, url=CHECK_PLACE_URL, args=('-EI',),
             extractions=(Extraction('check.place.ip_type', ip_type),)),
        Step(f'90-dns-dig-{ctx.tag}.txt', dns_enabled,
             command=('bash', '-lc', f'dig +short A {tag}; dig +short AAAA {tag}; dig {tag}')),
    ]


def run_steps(config, ctx, steps, report):
    """Run enabled steps in order, appending their extracted values to the report."""
    outcomes = {}
    enabled = [step for step in steps if step.enabled]
    for step in tqdm(enabled, desc='Checks', unit='step', disable=not config.show_progress):
        if step.requires and not shutil.which(step.requires):
            log.warning('%s not found, skipping %s', step.requires, step.name)
            report.append(step.requires, 'missing')
            continue

        log.info('Running %s', step.name)
        if step.remote:
            outcome = run_remote(ctx, step.name, step.url, step.args, config.timeout)
        else:
            outcome = run_local(ctx, step.name, step.command)
        outcomes[step.name] = outcome

        if step.remote and not outcome.ok:
            if config.abort_on_remote_failure:
                raise RemoteScriptError(f'{step.name}: remote run failed for {step.url}: {outcome.error}')
            log.warning('%s failed (%s), continuing', step.name, outcome.error)
            for extraction in step.extractions:
                report.append(extraction.key, PLACEHOLDER)
            continue

        for extraction in step.extractions:
            report.append(extraction.key, extract(extraction.rule, outcome.text))
    return outcomes


# ----------------------------
# Summary
# ----------------------------

class SummaryReport:
    """Append-only summary.txt; values are also kept in order for summary.json."""

    def __init__(self, path):
        self.path = Path(path)
        self.values = {}

    def start(self, ctx, host):
        with open(self.path, 'w', encoding='utf-8') as fh:
            fh.write('=== VPN VPS Test Summary ===\n')
            fh.write(f'Run: {ctx.run_name}\n')
            fh.write(f'Time: {now_iso()}\n')
            fh.write(f'Host: {host}\n')
            fh.write('\n')

    def append(self, key, value):
        self.values[key] = value
        with open(self.path, 'a', encoding='utf-8') as fh:
            fh.write(f'{key}={value}\n')

    def write_json(self, ctx, meta):
        data = {
            'generated_at': now_iso(),
            'run': ctx.run_name,
            'host': meta.get('hostname'),
            'meta': meta,
            'values': self.values,
        }
        with open(ctx.path(SUMMARY_JSON_FILE), 'w', encoding='utf-8') as fo:
            json.dump(data, fo, ensure_ascii=False, indent=2)

    def finish(self, ctx):
        names = sorted(p.name for p in ctx.outdir.iterdir())
        with open(self.path, 'a', encoding='utf-8') as fh:
            fh.write('\n=== Files generated ===\n')
            for name in names:
                fh.write(f' - {name}\n')
            fh.write(f'\nSummary: {self.path}\n')


# ----------------------------
# Entry point
# ----------------------------

def run(config, now=None):
    require_root()
    ctx = make_context(config, now)
    create_run_dir(ctx)
    meta = write_meta(ctx, config)
    log.info('Output directory: %s', ctx.outdir)
    log.info('Writing meta: %s', ctx.meta_path)

    if config.install_deps:
        install_deps(ctx)
    else:
        log.info('Skipping dependency install (--no-install).')
    check_required_tools()

    report = SummaryReport(ctx.summary_path)
    report.start(ctx, meta['hostname'])
    with logging_redirect_tqdm(loggers=[log]):
        outcomes = run_steps(config, ctx, build_steps(config, ctx), report)
    failed = [name for name, outcome in outcomes.items() if not outcome.ok]
    if failed:
        log.warning('%d step(s) failed: %s', len(failed), ', '.join(failed))
    report.write_json(ctx, meta)
    report.finish(ctx)

    log.info('Done. Summary: %s', ctx.summary_path)
    return ctx


def main(argv=None):
    config = parse_config(argv)
    setup_logging()
    try:
        run(config)
    except VpnTestError as exc:
        print(f'ERROR: {exc}', file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        log.warning('Interrupted')
        return 130
    return 0


if __name__ == '__main__':
    sys.exit(main())
