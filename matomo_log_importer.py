#!/usr/bin/env python3
"""
matomo_log_importer.py

Matomo Access Log Replayer (optional YAML configuration)

Reads an Apache combined access log, picks out the requests that were sent to the
Matomo tracking endpoint (/matomo.php or /piwik.php), rebuilds their tracking
parameters and replays each one against a Matomo Tracking API. Site ids can be
filtered, defaulted or overridden, the original hit time and visitor IP are
carried over as cdt/cip (authenticated with token_auth), and failed hits are
retried once without the auth-adjacent fields.

Compatible with Python 3.8+.

Requires:
    - requests
    - pyyaml

License: GNU GPL v3 or later

"""

import os
import re
import sys
import gzip
import time
import signal
import logging
import argparse
import datetime
import warnings
import dataclasses
import typing
import urllib.parse
import requests
import yaml
from requests.packages.urllib3.exceptions import InsecureRequestWarning

TRACKING_PATHS = ('/matomo.php', '/piwik.php')
TRACKING_SCRIPT = '/matomo.php'
DEFAULT_TIMEOUT_SECONDS = 30
DEFAULT_USER_AGENT = 'MatomoLogImporter/1.0'
FORM_CONTENT_TYPE = 'application/x-www-form-urlencoded'
AUTH_ADJACENT_PARAMS = ('token_auth', 'cip', 'cdt')
CDT_FORMAT = '%Y-%m-%d %H:%M:%S'
MAX_LOGGED_BODY = 2000

# --- Logging Setup ---

class ISO8601Formatter(logging.Formatter):
    """
    Logging formatter producing ISO8601 timestamps with milliseconds and timezone.

    Returns timestamps in the format: YYYY-MM-DDTHH:MM:SS.mmm+ZZZZ
    """
    def formatTime(self, record, datefmt=None):
        t = time.localtime(record.created)
        s = time.strftime('%Y-%m-%dT%H:%M:%S', t)
        return f"{s}.{int(record.msecs):03d}{time.strftime('%z', t)}"

def setup_logging(debug: bool = False, stream: typing.Optional[typing.TextIO] = None) -> None:
    """
    Send all records, progress and diagnostics alike, to a single stdout handler.

    Args:
        debug (bool): Enable debug-level logging (skip diagnostics) if True.
        stream (TextIO, optional): Stream to write to instead of sys.stdout.
    """
    level = logging.DEBUG if debug else logging.INFO
    logger = logging.getLogger()
    logger.handlers.clear()
    logger.setLevel(level)
    console = logging.StreamHandler(stream if stream is not None else sys.stdout)
    console.setFormatter(ISO8601Formatter('%(asctime)s %(levelname)s %(message)s'))
    console.setLevel(level)
    logger.addHandler(console)

# --- Signal Handling ---

def handle_signal(signum, frame):
    """
    Handle SIGINT/SIGTERM. There is no checkpoint, an interrupted import starts over.
    """
    logging.info("Received signal %s, stopping import...", signum)
    sys.exit(0)

def install_signal_handlers() -> None:
    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

# --- Argument Parsing ---

def parse_args(argv: typing.Optional[list] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Flags default to None rather than False so that values from the YAML
    configuration file are only overridden by options actually given.

    Args:
        argv (list, optional): Argument list, defaults to sys.argv[1:].

    Returns:
        argparse.Namespace: Parsed arguments.
    """
    parser = argparse.ArgumentParser(
        description="Import Apache access logs containing Matomo tracking requests "
                    "and replay them to the Tracking API"
    )
    parser.add_argument('logfile', nargs='?', help='Path to Apache access log file (.gz supported)')
    parser.add_argument('--config', help='Path to optional YAML configuration file')
    parser.add_argument('--matomo-url', help='Matomo base URL inc. scheme (e.g. https://matomo.loc)')
    parser.add_argument('--idsite', help='Matomo site id to attribute hits to (fallback if not in query)')
    parser.add_argument('--only-idsite', help='Process only log entries where original idsite equals this value')
    parser.add_argument('--token-auth', help='Matomo token_auth used when sending cip/cdt')
    parser.add_argument('--token-auth-env', help='Env var name to read token_auth from')
    parser.add_argument('--override-idsite', help='Force all hits to use this idsite (overrides any original)')
    parser.add_argument('--strip-auth-fields', action='store_true', default=None,
                        help='Remove cip/cdt if no token_auth is provided')
    parser.add_argument('--dry-run', action='store_true', default=None,
                        help='Parse and print but do not send to tracking API')
    parser.add_argument('--prefer-post', action='store_true', default=None,
                        help='Send tracking request using HTTP POST instead of GET')
    parser.add_argument('--no-xff', action='store_true', default=None,
                        help='Do not send X-Forwarded-For header even if token_auth is present')
    parser.add_argument('--no-fallback', action='store_true', default=None,
                        help='Do not retry without auth fields; keep original cdt even on errors')
    parser.add_argument('--limit', type=int, help='Max number of lines to process')
    parser.add_argument('--sleep-us', type=int, help='Microseconds to sleep between requests')
    parser.add_argument('--timeout', dest='timeout_seconds', type=float,
                        help=f'HTTP timeout in seconds (default {DEFAULT_TIMEOUT_SECONDS})')
    parser.add_argument('--insecure', action='store_true', default=None,
                        help='Disable TLS certificate verification for the Matomo URL')
    parser.add_argument('--debug', action='store_true', default=None, help='Verbose debug output')
    parser.add_argument('--log-requests', action='store_true', default=None,
                        help='Log each tracking request and response (redacted)')
    return parser.parse_args(argv)

# --- Configuration Loading and Validation ---

class ConfigError(ValueError):
    """Raised for any problem that must stop the import before the first line is read."""

CONFIG_KEYS = frozenset([
    'logfile', 'matomo_url', 'idsite', 'only_idsite', 'token_auth', 'token_auth_env',
    'override_idsite', 'strip_auth_fields', 'dry_run', 'prefer_post', 'no_xff',
    'no_fallback', 'limit', 'sleep_us', 'timeout_seconds', 'debug', 'log_requests', 'tls',
])
TLS_KEYS = frozenset(['insecure', 'ca_cert', 'client_cert', 'client_key'])

@dataclasses.dataclass(frozen=True)
class RunConfig:
    """Fully resolved settings for one import run."""
    logfile: str
    matomo_url: str = ''
    default_idsite: typing.Optional[str] = None
    only_idsite: typing.Optional[str] = None
    token_auth: typing.Optional[str] = None
    override_idsite: typing.Optional[str] = None
    strip_auth_fields: bool = False
    dry_run: bool = False
    prefer_post: bool = False
    no_xff: bool = False
    no_fallback: bool = False
    limit: typing.Optional[int] = None
    sleep_us: int = 0
    debug: bool = False
    log_requests: bool = False
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    verify_tls: bool = True
    ca_cert: typing.Optional[str] = None
    client_cert: typing.Optional[str] = None
    client_key: typing.Optional[str] = None

def load_config_file(config_path: str) -> dict:
    """
    Load YAML configuration from file and check its keys.

    Args:
        config_path (str): Path to YAML configuration file.

    Returns:
        dict: Parsed configuration (empty for an empty file).

    Raises:
        ConfigError: If the file cannot be read or parsed, or has unknown keys.
    """
    try:
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {config_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file {config_path}: {e}") from e
    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")
    unknown = set(config) - CONFIG_KEYS
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")
    tls_opts = config.get('tls') or {}
    if not isinstance(tls_opts, dict):
        raise ConfigError("Config key 'tls' must be a mapping")
    unknown = set(tls_opts) - TLS_KEYS
    if unknown:
        raise ConfigError(f"Unknown tls config keys: {', '.join(sorted(unknown))}")
    return config

def _as_str(value) -> typing.Optional[str]:
    # YAML hands back ints for bare site ids
    if value is None:
        return None
    return str(value)

def _as_number(name: str, value, convert=int):
    if value is None:
        return None
    try:
        return convert(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be a number, got {value!r}") from e

def build_run_config(
    args: argparse.Namespace,
    file_config: typing.Optional[dict] = None,
    environ: typing.Optional[typing.Mapping[str, str]] = None
) -> RunConfig:
    """
    Merge command-line options over the YAML configuration into a RunConfig.

    Args:
        args (argparse.Namespace): Parsed command-line arguments.
        file_config (dict, optional): Configuration loaded from YAML.
        environ (Mapping, optional): Environment used for token_auth_env, defaults to os.environ.

    Returns:
        RunConfig: Resolved configuration (not yet validated).
    """
    file_config = file_config or {}
    environ = os.environ if environ is None else environ
    tls_opts = file_config.get('tls') or {}

    def pick(name, default=None):
        value = getattr(args, name, None)
        if value is not None:
            return value
        value = file_config.get(name)
        return default if value is None else value

    token_auth = _as_str(pick('token_auth')) or None
    token_auth_env = pick('token_auth_env')
    if not token_auth and token_auth_env:
        token_auth = environ.get(token_auth_env) or None

    timeout = _as_number('timeout_seconds', pick('timeout_seconds', DEFAULT_TIMEOUT_SECONDS), float)
    return RunConfig(
        logfile=_as_str(pick('logfile')),
        matomo_url=str(pick('matomo_url', '')).rstrip('/'),
        default_idsite=_as_str(pick('idsite')),
        only_idsite=_as_str(pick('only_idsite')),
        token_auth=token_auth,
        override_idsite=_as_str(pick('override_idsite')),
        strip_auth_fields=bool(pick('strip_auth_fields', False)),
        dry_run=bool(pick('dry_run', False)),
        prefer_post=bool(pick('prefer_post', False)),
        no_xff=bool(pick('no_xff', False)),
        no_fallback=bool(pick('no_fallback', False)),
        limit=_as_number('limit', pick('limit')),
        sleep_us=_as_number('sleep_us', pick('sleep_us', 0)),
        debug=bool(pick('debug', False)),
        log_requests=bool(pick('log_requests', False)),
        timeout_seconds=timeout,
        verify_tls=not (getattr(args, 'insecure', None) or tls_opts.get('insecure', False)),
        ca_cert=_as_str(tls_opts.get('ca_cert')),
        client_cert=_as_str(tls_opts.get('client_cert')),
        client_key=_as_str(tls_opts.get('client_key')),
    )

def validate_run_config(config: RunConfig) -> None:
    """
    Pre-flight checks. Nothing is read or sent when one of these fails.

    Args:
        config (RunConfig): Configuration to check.

    Raises:
        ConfigError: Describing the first problem found.
    """
    if not config.logfile:
        raise ConfigError("A log file path is required")
    if not os.path.isfile(config.logfile) or not os.access(config.logfile, os.R_OK):
        raise ConfigError(f"Log file not readable: {config.logfile}")
    if not config.dry_run and not config.matomo_url:
        raise ConfigError("--matomo-url is required when not using --dry-run")
    if not config.dry_run and not config.token_auth:
        raise ConfigError("--token-auth (or --token-auth-env) is required")
    if config.limit is not None and config.limit < 1:
        raise ConfigError(f"--limit must be at least 1, got {config.limit}")
    if config.sleep_us < 0:
        raise ConfigError(f"--sleep-us must not be negative, got {config.sleep_us}")
    if config.timeout_seconds <= 0:
        raise ConfigError(f"timeout must be positive, got {config.timeout_seconds}")
    if bool(config.client_cert) != bool(config.client_key):
        raise ConfigError("tls.client_cert and tls.client_key must be given together")

def get_verify_from_tls_opts(verify_tls: bool, ca_cert: typing.Optional[str] = None):
    """
    Determine the requests 'verify' argument.

    Args:
        verify_tls (bool): False disables certificate verification.
        ca_cert (str, optional): Path to a CA bundle to verify against.

    Returns:
        bool or str: True/False or path to CA cert.
    """
    if not verify_tls:
        warnings.simplefilter('ignore', InsecureRequestWarning)
        return False
    return ca_cert if ca_cert else True

# --- Log Line Parsing ---

# %h %l %u %t "%r" %>s %b "%{Referer}i" "%{User-agent}i"
COMBINED_LOG_REGEX = re.compile(
    r'^(\S+)\s+(\S+)\s+(\S+)\s+\[([^\]]+)\]\s+"([^"]*)"\s+(\d{3})\s+(\S+)\s+"([^"]*)"\s+"([^"]*)"'
)

APACHE_DATETIME_FORMATS = [
    # 25/Sep/2025:11:24:17 +0000
    ("%d/%b/%Y:%H:%M:%S %z", False),
    # 25/Sep/2025:11:24:17, taken as UTC
    ("%d/%b/%Y:%H:%M:%S", True),
]

@dataclasses.dataclass(frozen=True)
class LogEntry:
    client_ip: str
    timestamp: typing.Optional[datetime.datetime]
    raw_datetime: str
    method: str
    request_uri: str
    status_code: int
    bytes_sent: int
    referer: str
    user_agent: str

def parse_apache_datetime(text: str) -> typing.Optional[datetime.datetime]:
    """
    Convert an Apache log timestamp to an aware UTC datetime.

    Args:
        text (str): Bracket contents, e.g. '25/Sep/2025:11:24:17 +0100'.

    Returns:
        datetime.datetime or None: UTC instant, or None if no format matches.
    """
    text = text.strip()
    for fmt, assume_utc in APACHE_DATETIME_FORMATS:
        try:
            parsed = datetime.datetime.strptime(text, fmt)
        except ValueError:
            continue
        if assume_utc:
            return parsed.replace(tzinfo=datetime.timezone.utc)
        return parsed.astimezone(datetime.timezone.utc)
    return None

def _bytes_sent(size: str) -> int:
    # '-' and any non-numeric token count as zero
    if size.isascii() and size.isdigit():
        return int(size)
    return 0

def parse_combined_line(line: str) -> typing.Optional[LogEntry]:
    """
    Parse one combined-format access log line.

    An entry whose timestamp does not parse is still returned, with
    timestamp set to None.

    Args:
        line (str): Trimmed log line.

    Returns:
        LogEntry or None: Parsed entry, or None if the line does not match.
    """
    m = COMBINED_LOG_REGEX.match(line)
    if not m:
        return None
    ip, _ident, _user, raw_dt, request, status, size, referer, user_agent = m.groups()
    parts = request.split(' ', 2)
    return LogEntry(
        client_ip=ip,
        timestamp=parse_apache_datetime(raw_dt),
        raw_datetime=raw_dt,
        method=parts[0],
        request_uri=parts[1] if len(parts) > 1 else '',
        status_code=int(status),
        bytes_sent=_bytes_sent(size),
        referer=referer if referer != '-' else '',
        user_agent=user_agent if user_agent != '-' else '',
    )

def open_logfile(filename: str, encoding: str = 'utf-8') -> typing.TextIO:
    """
    Open a log file for forward-only text reading, supporting gzip-compressed files.

    Args:
        filename (str): Path to log file.
        encoding (str): Encoding to use; undecodable bytes are replaced.

    Returns:
        file object: Opened text file handle.

    Raises:
        OSError: If the file cannot be opened.
    """
    if filename.endswith('.gz'):
        return gzip.open(filename, mode='rt', encoding=encoding, errors='replace')
    return open(filename, mode='rt', encoding=encoding, errors='replace')

# --- Request Filtering ---

def split_request_uri(request_uri: str) -> typing.Tuple[str, typing.Dict[str, str]]:
    """
    Split a logged request URI into its path and decoded query parameters.

    A repeated query key keeps its first position and takes its last value.

    Args:
        request_uri (str): Path and query as logged.

    Returns:
        tuple: (path, ordered dict of parameters).

    Raises:
        ValueError: If the URI cannot be split, e.g. a bogus IPv6 authority.
    """
    parts = urllib.parse.urlsplit(request_uri)
    params = {}
    for key, value in urllib.parse.parse_qsl(parts.query, keep_blank_values=True):
        params[key] = value
    return parts.path, params

def select_tracking_params(
    entry: LogEntry,
    only_idsite: typing.Optional[str] = None
) -> typing.Optional[typing.Dict[str, str]]:
    """
    Return the query parameters of an entry that targets the tracking endpoint.

    Args:
        entry (LogEntry): Parsed log entry.
        only_idsite (str, optional): Keep only hits whose original idsite equals this.

    Returns:
        dict or None: Decoded parameters, or None if the entry is out of scope.
    """
    try:
        path, params = split_request_uri(entry.request_uri)
    except ValueError:
        return None
    if path not in TRACKING_PATHS:
        return None
    if only_idsite is not None and params.get('idsite') != str(only_idsite):
        return None
    return params

# --- Parameter Transformation ---

def format_cdt(timestamp: datetime.datetime) -> str:
    return timestamp.astimezone(datetime.timezone.utc).strftime(CDT_FORMAT)

def transform_params(params: typing.Dict[str, str], entry: LogEntry, config: RunConfig) -> typing.Dict[str, str]:
    """
    Build the outbound tracking parameters for one hit.

    The steps run in a fixed order, each may depend on the previous ones:
    site id, cdt, cip, h/m/s removal, token_auth handling, apiv.

    Args:
        params (dict): Decoded original query parameters (left untouched).
        entry (LogEntry): The log entry the hit came from.
        config (RunConfig): Run configuration.

    Returns:
        dict: New ordered parameter mapping.
    """
    out = dict(params)
    if config.override_idsite:
        out['idsite'] = config.override_idsite
    elif 'idsite' not in out and config.default_idsite:
        out['idsite'] = config.default_idsite

    # Matomo expects cdt in UTC
    if 'cdt' not in out and entry.timestamp is not None:
        out['cdt'] = format_cdt(entry.timestamp)
    if 'cip' not in out and entry.client_ip:
        out['cip'] = entry.client_ip
    if 'cdt' in out:
        for key in ('h', 'm', 's'):
            out.pop(key, None)

    if (out.get('cip') or out.get('cdt')) and 'token_auth' not in params:
        if config.token_auth:
            out['token_auth'] = config.token_auth
        elif config.strip_auth_fields:
            out.pop('cip', None)
            out.pop('cdt', None)

    out['apiv'] = '1'
    return out

@dataclasses.dataclass(frozen=True)
class OutboundRequest:
    method: str
    url: str
    body: typing.Optional[str]
    headers: typing.Dict[str, str]
    params: typing.Dict[str, str]

    @property
    def display_url(self) -> str:
        """The hit as a single URL, whichever method carries it."""
        if self.body is not None:
            return f"{self.url}?{self.body}"
        return self.url

def header_safe(value: str) -> str:
    """
    Make a logged header value sendable as-is.

    http.client encodes header values as Latin-1, so non-Latin-1 text is
    handed over as its UTF-8 bytes, the same bytes the log line carried.
    """
    try:
        value.encode('latin-1')
    except UnicodeEncodeError:
        return value.encode('utf-8', 'replace').decode('latin-1')
    return value

def build_headers(params: typing.Dict[str, str], entry: LogEntry, config: RunConfig) -> typing.Dict[str, str]:
    """
    Build the outbound headers for a hit.

    X-Forwarded-For is only sent alongside a usable token_auth, since Matomo
    ignores forwarded IPs on unauthenticated requests.

    Args:
        params (dict): Final parameters of the request.
        entry (LogEntry): Source log entry.
        config (RunConfig): Run configuration.

    Returns:
        dict: Ordered headers.
    """
    headers = {}
    if config.prefer_post:
        headers['Content-Type'] = FORM_CONTENT_TYPE
    headers['User-Agent'] = header_safe(entry.user_agent) or DEFAULT_USER_AGENT
    headers['Referer'] = header_safe(entry.referer)
    if params.get('token_auth') and not config.strip_auth_fields and not config.no_xff and entry.client_ip:
        headers['X-Forwarded-For'] = entry.client_ip
    return headers

def build_outbound_request(params: typing.Dict[str, str], entry: LogEntry, config: RunConfig) -> OutboundRequest:
    """
    Encode final parameters into a GET or POST tracking request.

    Args:
        params (dict): Final parameters, encoded in insertion order.
        entry (LogEntry): Source log entry.
        config (RunConfig): Run configuration.

    Returns:
        OutboundRequest: Request ready to send.
    """
    tracking_url = config.matomo_url + TRACKING_SCRIPT
    query = urllib.parse.urlencode(params)
    headers = build_headers(params, entry, config)
    if config.prefer_post:
        return OutboundRequest('POST', tracking_url, query, headers, dict(params))
    return OutboundRequest('GET', f"{tracking_url}?{query}", None, headers, dict(params))

# --- Redaction ---

REDACTIONS = [
    (re.compile(r'(token_auth=)[^&]+', re.IGNORECASE), r'\1***'),
    (re.compile(r'(Authorization:\s*Bearer\s+)\S+', re.IGNORECASE), r'\1***'),
]

def redact_sensitive(text: str) -> str:
    """
    Mask token_auth values and bearer credentials in text about to be printed.

    Args:
        text (str): URL, header line, body or free text.

    Returns:
        str: Text with secrets replaced by '***'.
    """
    for regex, replacement in REDACTIONS:
        text = regex.sub(replacement, text)
    return text

def shorten(text: str, max_len: int = MAX_LOGGED_BODY) -> str:
    if len(text) <= max_len:
        return text
    return text[:max_len] + '...'

# --- HTTP Sending ---

@dataclasses.dataclass(frozen=True)
class SendResult:
    status: int
    body: str = ''
    error_code: typing.Optional[str] = None
    error: typing.Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status >= 400 or self.error_code is not None

class TrackingClient:
    """
    Owns the HTTP session used for every tracking call of one run.

    Args:
        timeout (float): HTTP timeout in seconds per call.
        verify (bool or str): requests 'verify' value (False disables TLS checks).
        cert (tuple, optional): (client_cert, client_key) for mutual TLS.
        session (requests.Session, optional): Session to use, e.g. a test double.
    """
    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        verify=True,
        cert: typing.Optional[typing.Tuple[str, str]] = None,
        session: typing.Optional[requests.Session] = None
    ):
        self.timeout = timeout
        self.verify = verify
        self.cert = cert
        self.session = session if session is not None else requests.Session()

    @classmethod
    def from_config(cls, config: RunConfig, session: typing.Optional[requests.Session] = None) -> 'TrackingClient':
        verify = get_verify_from_tls_opts(config.verify_tls, config.ca_cert)
        if verify is False:
            logging.warning("TLS certificate verification is disabled for %s", config.matomo_url)
        cert = (config.client_cert, config.client_key) if config.client_cert and config.client_key else None
        return cls(timeout=config.timeout_seconds, verify=verify, cert=cert, session=session)

    def send(self, request: OutboundRequest) -> SendResult:
        """
        Perform one tracking call. Redirects are not followed.

        Args:
            request (OutboundRequest): Request to send.

        Returns:
            SendResult: HTTP status and body, or status 0 with the transport error.
        """
        try:
            resp = self.session.request(
                request.method,
                request.url,
                data=request.body,
                headers=request.headers,
                timeout=self.timeout,
                verify=self.verify,
                cert=self.cert,
                allow_redirects=False,
            )
        except (requests.RequestException, ValueError) as e:
            # ValueError covers header values http.client refuses to encode
            return SendResult(status=0, error_code=type(e).__name__, error=str(e))
        return SendResult(status=resp.status_code, body=resp.text or '')

    def close(self) -> None:
        self.session.close()

def log_request(scope: str, request: OutboundRequest) -> None:
    logging.info("[request][%s] %s %s", scope, request.method, redact_sensitive(request.url))
    for name, value in request.headers.items():
        logging.info("[request][%s] H: %s", scope, redact_sensitive(f"{name}: {value}"))
    if request.body:
        logging.info("[request][%s] B: %s", scope, shorten(redact_sensitive(request.body)))

def log_response(scope: str, result: SendResult) -> None:
    status_line = f"status={result.status}, error_code={result.error_code or '-'}"
    if result.error:
        status_line += f", error={redact_sensitive(result.error)}"
    logging.info("[response][%s] %s", scope, status_line)
    if result.body:
        logging.info("[response][%s] B: %s", scope, shorten(redact_sensitive(result.body)))

def report_failure(scope: str, request: OutboundRequest, result: SendResult) -> None:
    """
    Emit the error lines for a failed tracking call.

    Args:
        scope (str): 'PRIMARY' or 'RETRY'.
        request (OutboundRequest): The request that failed.
        result (SendResult): Its result.
    """
    logging.error(
        "[error] %s request failed: status=%d, error=%s, url=%s",
        scope, result.status, result.error_code or '-', redact_sensitive(request.url)
    )
    if result.body:
        label = 'Response body' if scope == 'PRIMARY' else 'Retry response body'
        logging.error("[error] %s: %s", label, shorten(redact_sensitive(result.body)))

def dispatch(scope: str, request: OutboundRequest, client: TrackingClient, log_requests: bool = False) -> SendResult:
    """Send a request through the client, with request logging and failure reporting."""
    if log_requests:
        log_request(scope, request)
    result = client.send(request)
    if log_requests:
        log_response(scope, result)
    if result.failed:
        report_failure(scope, request, result)
    return result

# --- Fallback Retry ---

def should_retry(result: SendResult, params: typing.Dict[str, str], config: RunConfig) -> bool:
    """
    Decide whether a failed primary call gets its single retry.

    Any failure qualifies as long as the hit carried token_auth, cip or cdt;
    plain hits that fail are not retried.

    Args:
        result (SendResult): Result of the primary call.
        params (dict): Parameters of the primary call.
        config (RunConfig): Run configuration.

    Returns:
        bool: True if a retry should be made.
    """
    if not result.failed or config.no_fallback:
        return False
    return any(key in params for key in AUTH_ADJACENT_PARAMS)

def build_retry_params(params: typing.Dict[str, str]) -> typing.Dict[str, str]:
    """
    Reduce a parameter set for the retry.

    With a token the hit keeps token_auth and cdt and only loses cip,
    without one both cip and cdt are dropped.

    Args:
        params (dict): Parameters of the failed primary call.

    Returns:
        dict: New parameter mapping.
    """
    retry = dict(params)
    retry.pop('cip', None)
    if not retry.get('token_auth'):
        retry.pop('cdt', None)
    return retry

# --- Progress Reporting ---

@dataclasses.dataclass
class ProgressState:
    total_eligible: int
    processed: int = 0
    next_report_pct: int = 1
    start_time: float = dataclasses.field(default_factory=time.time)

    def __post_init__(self):
        if self.total_eligible <= 0:
            self.next_report_pct = 0

def count_eligible_records(
    lines: typing.Iterable[str],
    only_idsite: typing.Optional[str] = None,
    limit: typing.Optional[int] = None
) -> int:
    """
    Scan pass: count lines that parse and target the tracking endpoint.

    Timestamps are not checked here, so a line with a broken date is
    counted but later skipped by the execute pass.

    Args:
        lines (Iterable[str]): Raw log lines.
        only_idsite (str, optional): Site id filter.
        limit (int, optional): Stop counting once this many are found.

    Returns:
        int: Number of eligible records.
    """
    total = 0
    for line in lines:
        line = line.strip()
        if not line:
            continue
        entry = parse_combined_line(line)
        if entry is None or select_tracking_params(entry, only_idsite) is None:
            continue
        total += 1
        if limit is not None and total >= limit:
            break
    return total

def advance_progress(state: ProgressState, now: typing.Optional[float] = None) -> typing.List[int]:
    """
    Count one processed record and log every percentage point it crosses.

    Args:
        state (ProgressState): Progress of the execute pass.
        now (float, optional): Current time, defaults to time.time().

    Returns:
        list: Percentages reported by this call.
    """
    state.processed += 1
    reported = []
    if state.total_eligible <= 0:
        return reported
    pct = min(state.processed * 100 // state.total_eligible, 100)
    while 0 < state.next_report_pct <= pct:
        elapsed = (time.time() if now is None else now) - state.start_time
        logging.info(
            "Progress: %d%% (%d/%d) - elapsed: %.2fs",
            state.next_report_pct, state.processed, state.total_eligible, elapsed
        )
        reported.append(state.next_report_pct)
        state.next_report_pct += 1
    return reported

# --- Replay ---

@dataclasses.dataclass
class ReplayOutcome:
    request: OutboundRequest
    result: typing.Optional[SendResult] = None
    retried: bool = False
    retry_request: typing.Optional[OutboundRequest] = None
    retry_result: typing.Optional[SendResult] = None

def replay_entry(
    entry: LogEntry,
    params: typing.Dict[str, str],
    config: RunConfig,
    client: typing.Optional[TrackingClient] = None
) -> ReplayOutcome:
    """
    Transform, send and if needed retry a single tracking hit.

    Args:
        entry (LogEntry): Eligible log entry with a valid timestamp.
        params (dict): Its decoded query parameters.
        config (RunConfig): Run configuration.
        client (TrackingClient, optional): Client to send with; unused in dry-run.

    Returns:
        ReplayOutcome: What was sent and how it went.
    """
    final_params = transform_params(params, entry, config)
    request = build_outbound_request(final_params, entry, config)
    if config.dry_run:
        logging.info("[DRY] %s", redact_sensitive(request.display_url))
        return ReplayOutcome(request=request)

    outcome = ReplayOutcome(request=request, result=dispatch('PRIMARY', request, client, config.log_requests))
    if should_retry(outcome.result, final_params, config):
        outcome.retried = True
        outcome.retry_request = build_outbound_request(build_retry_params(final_params), entry, config)
        outcome.retry_result = dispatch('RETRY', outcome.retry_request, client, config.log_requests)
    return outcome

def run_import(config: RunConfig, client: typing.Optional[TrackingClient] = None) -> int:
    """
    Run the scan pass and the execute pass over the log file.

    Args:
        config (RunConfig): Validated run configuration.
        client (TrackingClient, optional): Client to use; built from config if omitted.

    Returns:
        int: Number of records processed.

    Raises:
        OSError: If the log file cannot be opened.
    """
    with open_logfile(config.logfile) as fh:
        total = count_eligible_records(fh, config.only_idsite, config.limit)
    logging.info("Total lines to process: %d", total)

    owns_client = client is None and not config.dry_run
    if owns_client:
        client = TrackingClient.from_config(config)
    progress = ProgressState(total_eligible=total)
    try:
        with open_logfile(config.logfile) as fh:
            for line in fh:
                line = line.strip()
                if not line:
                    continue
                entry = parse_combined_line(line)
                if entry is None:
                    logging.debug("[debug] Skip unparsable line: %s", redact_sensitive(line))
                    continue
                if entry.timestamp is None:
                    logging.debug("[debug] Skip: failed to parse datetime: %s", redact_sensitive(entry.raw_datetime))
                    continue
                params = select_tracking_params(entry, config.only_idsite)
                if params is None:
                    continue

                replay_entry(entry, params, config, client)
                if not config.dry_run and config.sleep_us > 0:
                    time.sleep(config.sleep_us / 1_000_000)

                advance_progress(progress)
                if config.limit is not None and progress.processed >= config.limit:
                    break
    finally:
        if owns_client:
            client.close()

    logging.info("Processed: %d lines", progress.processed)
    return progress.processed

def main(argv: typing.Optional[list] = None) -> int:
    """
    Main entry point for the log importer.

    Returns:
        int: Exit status, 0 on success, 1 if the log file cannot be read, 2 on configuration errors.
    """
    args = parse_args(argv)
    setup_logging(debug=bool(args.debug))
    install_signal_handlers()
    try:
        file_config = load_config_file(args.config) if args.config else {}
        config = build_run_config(args, file_config)
        validate_run_config(config)
    except ConfigError as e:
        logging.error("Configuration error: %s", e)
        return 2
    if config.debug and not args.debug:
        setup_logging(debug=True)

    logging.info(
        "Matomo log import started: logfile=%s, matomo_url=%s, dry_run=%s, method=%s",
        config.logfile, config.matomo_url or '-', config.dry_run, 'POST' if config.prefer_post else 'GET'
    )
    try:
        run_import(config)
    except OSError as e:
        logging.error("Failed to read log file %s: %s", config.logfile, e)
        return 1
    logging.info("Matomo log import finished.")
    return 0

if __name__ == '__main__':
    sys.exit(main())
