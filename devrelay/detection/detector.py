"""Dev-Server Detector — spot "server is up" lines in streaming output.

Heuristic by nature. Patterns are tried in order against each chunk; the
first one that matches wins. A pattern may capture a full URL (group
``url``) or just a port (group ``port``); phrases without either fall back
to any ``:NNNN`` token in the same chunk, which is best-effort only.

OutputScanner wraps the detector for one process: it carries a short tail of
the previous chunk so a phrase split across two reads is still seen, while
keeping every ``feed()`` O(chunk).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from urllib.parse import urlsplit

import psutil
import structlog

logger = structlog.get_logger().bind(component="detection.detector")

MIN_PORT = 1000
MAX_PORT = 65535
LOOPBACK_HOSTS = frozenset(["localhost", "127.0.0.1", "0.0.0.0", "::", "::1"])

_URL = r"(?P<url>https?://[^\s'\"<>]+)"
_PORT = r"(?P<port>\d{4,5})\b"


@dataclass(frozen=True)
class ServerDetection:
    detected: bool
    port: int | None = None
    url: str | None = None
    pattern: str | None = None


NOT_DETECTED = ServerDetection(detected=False)

# (name, regex). Ordered: URL-bearing toolchain phrasings first, then
# port-bearing generic phrasings, then bare phrases with no port at all.
DEFAULT_PATTERNS: tuple[tuple[str, str], ...] = (
    # URL-bearing
    ("flutter_web", r"A web server for Flutter web application is available at:?\s*" + _URL),
    ("serving_at", r"\bServing at:?\s*" + _URL),
    ("vite_local", r"\bLocal:\s*" + _URL),
    ("next_ready", r"\bready\b.*?(?:started server on|url:)\s*(?:" + _URL + r"|[\w.\[\]:]*:" + _PORT + r")"),
    ("dev_server_running_at", r"\b(?:dev|development) server (?:is )?running at:?\s*" + _URL),
    ("django", r"\bStarting development server at\s*" + _URL),
    ("flask", r"\bRunning on\s*" + _URL),
    ("uvicorn", r"\bUvicorn running on\s*" + _URL),
    ("php_builtin", r"\bDevelopment Server \(" + _URL + r"\)"),
    ("laravel", r"\bServer running on \[?" + _URL),
    ("angular", r"\bAngular Live Development Server is listening on\s*[\w.]+:" + _PORT),
    ("jupyter", r"\bJupyter Server .*? is running at:?\s*" + _URL),
    ("streamlit", r"\b(?:Local|Network) URL:\s*" + _URL),
    # Port-bearing generic phrasings
    ("server_running_port", r"\bserver\b.{0,40}?\brunning\b.{0,40}?\b(?:port|on)\b\D{0,20}?" + _PORT),
    ("listening_on", r"\blistening\b.{0,20}?\b(?:on|at|port)\b\D{0,30}?" + _PORT),
    ("started_server", r"\bstarted\b.{0,20}?\bserver\b\D{0,40}?" + _PORT),
    ("serving_on", r"\bserving\b.{0,20}?\b(?:on|at|port)\b\D{0,30}?" + _PORT),
    ("available_on", r"\bavailable\b.{0,20}?\b(?:on|at|port)\b\D{0,30}?" + _PORT),
    ("tomcat", r"\bTomcat started on port\(?s?\)?:?\s*" + _PORT),
    ("gin", r"\bListening and serving HTTP on\s*[\w.]*:" + _PORT),
    ("echo", r"\bhttp server started on\s*[\w.\[\]:]*:" + _PORT),
    ("puma", r"\bListening on\s*(?:tcp|http)://[\w.\[\]]+:" + _PORT),
    ("rocket", r"\bRocket has launched from\s*" + _URL),
    ("loopback_url", r"(?P<url>https?://(?:localhost|127\.0\.0\.1|0\.0\.0\.0|\[::\]):\d{4,5}[^\s'\"<>]*)"),
    # Bare phrases (port found by fallback, if at all)
    ("webpack_compiled", r"\bwebpack compiled successfully\b"),
    ("react_available", r"\breact app (?:is )?available\b"),
    ("vue_running", r"\bvue app (?:is )?running\b"),
    ("ng_serve", r"\bng serve\b"),
    ("django_dev_server", r"\bdjango development server\b"),
    ("flask_running", r"\bflask (?:app )?running\b"),
    ("spring_started", r"\bStarted \w+Application\b"),
    ("rails_server", r"\bRails \S+ application starting\b"),
    ("puma_starting", r"\bpuma starting\b"),
    ("actix_starting", r"\bactix\b.*?\bstarting\b"),
    ("flutter_web_server", r"\bflutter web server\b"),
    ("webpack_dev_server", r"\bwebpack-dev-server\b"),
    ("parcel_server", r"\bServer running at\b"),
)

_BARE_PORT = re.compile(r"(?<!\d):(\d{4,5})\b")


def _valid_port(value: str | int | None) -> int | None:
    if value is None:
        return None
    port = int(value)
    return port if MIN_PORT <= port <= MAX_PORT else None


class DevServerDetector:
    """Stateless matcher over single chunks of output."""

    def __init__(self, patterns: tuple[tuple[str, str], ...] | None = None) -> None:
        source = patterns if patterns is not None else DEFAULT_PATTERNS
        self._patterns = [(name, re.compile(rx, re.IGNORECASE)) for name, rx in source]

    def scan(self, chunk: str) -> ServerDetection:
        """Return the first matching detection in ``chunk``, or NOT_DETECTED."""
        if not chunk:
            return NOT_DETECTED
        for name, compiled in self._patterns:
            match = compiled.search(chunk)
            if not match:
                continue
            groups = match.groupdict()
            url = groups.get("url")
            if url:
                url = url.rstrip(".,;)]")
            port = _valid_port(groups.get("port"))
            if port is None and url:
                try:
                    port = _valid_port(urlsplit(url).port)
                except ValueError:
                    port = None
            if port is None:
                port = self._bare_port(chunk)
            return ServerDetection(detected=True, port=port, url=url, pattern=name)
        return NOT_DETECTED

    @staticmethod
    def _bare_port(chunk: str) -> int | None:
        for match in _BARE_PORT.finditer(chunk):
            port = _valid_port(match.group(1))
            if port is not None:
                return port
        return None


# ── Server type labels ────────────────────────────────────────────────────────

# label → keywords (first label with a matching keyword wins). Used for
# display and telemetry only.
SERVER_TYPES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Flutter Web", ("flutter",)),
    ("Next.js", ("next.js", "next dev", "next start", "next-server")),
    ("Nuxt.js", ("nuxt",)),
    ("Vite", ("vite",)),
    ("React", ("react-scripts", "react app", "create-react-app")),
    ("Vue.js", ("vue-cli-service", "@vue/cli", "vue app")),
    ("Angular", ("angular", "ng serve")),
    ("Django", ("django", "manage.py runserver")),
    ("Flask", ("flask",)),
    ("FastAPI", ("uvicorn", "fastapi")),
    ("Jupyter", ("jupyter",)),
    ("Streamlit", ("streamlit",)),
    ("Ruby on Rails", ("rails", "puma")),
    ("Laravel", ("laravel", "artisan serve")),
    ("PHP", ("php -s", "development server (http")),
    ("Spring Boot", ("spring", "tomcat")),
    ("Go Web Server", ("gin", "echo", "go run")),
    ("Rust Web Server", ("actix", "rocket", "cargo run")),
    ("Webpack Dev Server", ("webpack",)),
    ("Parcel", ("parcel",)),
    ("Gatsby", ("gatsby",)),
    ("Express.js", ("express", "node ")),
)

_TYPE_RULES = [
    (label, [re.compile(r"(?<![\w-])" + re.escape(k) + r"(?![\w-])", re.IGNORECASE) for k in keywords])
    for label, keywords in SERVER_TYPES
]


def classify_server_type(output: str, command: str = "") -> str:
    """Best-effort label for the kind of dev server that produced ``output``."""
    haystack = f"{command}\n{output}"
    for label, rules in _TYPE_RULES:
        if any(rule.search(haystack) for rule in rules):
            return label
    return "Web Server"


# ── Incremental scanning ──────────────────────────────────────────────────────


@dataclass
class OutputScanner:
    """Feeds one process's output to a detector, chunk by chunk.

    ``detection`` holds the best result so far. Once a port is resolved the
    scanner stops matching and ``server_type`` is classified exactly once.
    """

    command: str = ""
    detector: DevServerDetector = field(default_factory=DevServerDetector)
    tail_chars: int = 256
    recent_chars: int = 4096
    detection: ServerDetection = NOT_DETECTED
    server_type: str | None = None
    _tail: str = ""
    _recent: str = ""

    @property
    def resolved(self) -> bool:
        return self.detection.port is not None

    def feed(self, chunk: str) -> ServerDetection:
        if self.resolved or not chunk:
            return self.detection

        self._recent = (self._recent + chunk)[-self.recent_chars:]
        window = self._tail + chunk
        self._tail = chunk[-self.tail_chars:]

        hit = self.detector.scan(window)
        if hit.detected and (not self.detection.detected or hit.port is not None):
            self.detection = hit
            if hit.port is not None:
                self.server_type = classify_server_type(self._recent, self.command)
                logger.info(
                    "dev_server_detected",
                    port=hit.port,
                    url=hit.url,
                    pattern=hit.pattern,
                    server_type=self.server_type,
                )
        return self.detection

    def sink(self, _stream: str, text: str) -> None:
        """Adapter for ManagedProcess output sinks."""
        self.feed(text)


# ── Socket fallback ───────────────────────────────────────────────────────────


def find_listening_ports(pid: int) -> list[int]:
    """TCP ports in LISTEN state owned by ``pid`` or its descendants."""
    try:
        root = psutil.Process(pid)
        procs = [root] + root.children(recursive=True)
    except psutil.NoSuchProcess:
        return []

    ports: set[int] = set()
    for proc in procs:
        try:
            getter = getattr(proc, "net_connections", None) or proc.connections
            conns = getter(kind="tcp")
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
        for conn in conns:
            if conn.status == psutil.CONN_LISTEN and conn.laddr:
                port = _valid_port(conn.laddr.port)
                if port is not None:
                    ports.add(port)
    return sorted(ports)
