"""Routing policy — deterministic lookup tables.

No I/O. Pure Python rules for:
- Command normalization (dash glyphs typed on phones)
- Light/heavy classification
- Which toolchain commands need a project (repository) context
- Which commands should start a dev server rather than run to completion
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import structlog

logger = structlog.get_logger().bind(component="routing.policy")

LIGHT = "light"
HEAVY = "heavy"

# ── Normalization ─────────────────────────────────────────────────────────────

# Mobile keyboards autocorrect "--" into these
_DASH_GLYPHS = re.compile("[\u2012\u2013\u2014\u2015\u2212]")


def normalize_command(command: str) -> str:
    return _DASH_GLYPHS.sub("--", command or "").strip()


# ── Heavy catalogue ───────────────────────────────────────────────────────────

# category → toolchain executables known to be resource-intensive
HEAVY_TOOLCHAINS: dict[str, frozenset[str]] = {
    "mobile_sdk": frozenset([
        "flutter", "dart", "pod", "xcodebuild", "swift", "adb", "emulator",
    ]),
    "interpreted_runtime": frozenset([
        "python", "python3", "pip", "pip3", "pytest", "uvicorn", "gunicorn", "django-admin",
        "node", "npm", "npx", "yarn", "pnpm",
        "ruby", "bundle", "rails", "rake", "php", "composer",
    ]),
    "web_build": frozenset([
        "webpack", "vite", "rollup", "next", "nuxt", "ng", "vue", "vue-cli-service",
    ]),
    "jvm_native_build": frozenset([
        "java", "javac", "mvn", "maven", "gradle", "./gradlew", "./mvnw", "spring-boot",
        "go", "cargo", "rustc", "gcc", "g++", "clang", "clang++", "make", "cmake", "ninja",
        "dotnet", "msbuild",
    ]),
    "package_manager": frozenset(["apt-get", "apt", "yum", "brew"]),
    "generic_verb": frozenset(["build", "compile", "install", "deploy", "download", "upload"]),
}

_HEAVY_TOKENS: frozenset[str] = frozenset().union(*HEAVY_TOOLCHAINS.values())

# Versioned interpreters: python3.12, pip3.11
_VERSIONED_RUNTIME = re.compile(r"^(?:python|pip)\d+(?:\.\d+)*$")

# Shell operators and whitespace separate tokens; quotes are dropped
_TOKEN_SPLIT = re.compile(r"[\s;&|()<>`'\"]+")


def _tokens(command: str) -> list[str]:
    return [t for t in _TOKEN_SPLIT.split(command.lower()) if t]


@dataclass(frozen=True)
class RoutingDecision:
    route: str
    reason: str
    category: str = ""
    matched: str = ""


def classify(command: str, force_heavy: bool = False) -> RoutingDecision:
    """First match wins: override, catalogue, default light."""
    if force_heavy:
        return RoutingDecision(route=HEAVY, reason="forced")

    for token in _tokens(normalize_command(command)):
        # Strip a leading path so /usr/bin/python3 still matches
        name = token if token.startswith("./") else token.rsplit("/", 1)[-1]
        if name in _HEAVY_TOKENS or _VERSIONED_RUNTIME.match(name):
            category = next(
                (cat for cat, names in HEAVY_TOOLCHAINS.items() if name in names),
                "interpreted_runtime",
            )
            return RoutingDecision(route=HEAVY, reason="catalogue", category=category, matched=name)

    return RoutingDecision(route=LIGHT, reason="default")


# ── Project-context requirements ──────────────────────────────────────────────


@dataclass(frozen=True)
class ProjectRequirement:
    toolchain: str
    project_type: str
    markers: tuple[str, ...]
    prefix: str

    def message(self, command: str) -> str:
        expected = ", ".join(self.markers) if self.markers else "a project directory"
        return (
            f"Repository required: Command '{command}' requires a {self.project_type}.\n\n"
            f"Expected files: {expected}\n"
            "Please select a repository first or create a new project."
        )


# toolchain → (project type, marker files, command prefixes)
PROJECT_REQUIREMENTS: dict[str, tuple[str, tuple[str, ...], tuple[str, ...]]] = {
    "flutter": ("Flutter project", ("pubspec.yaml",), (
        "flutter run", "flutter build", "flutter test", "flutter pub get",
        "flutter pub upgrade", "flutter clean", "flutter analyze",
    )),
    "dart": ("Dart project", ("pubspec.yaml",), (
        "dart run", "dart compile", "dart test", "dart pub get", "dart pub upgrade",
    )),
    "react": ("React/Next.js project", ("package.json",), (
        "npm start", "npm run build", "npm run test", "yarn start", "yarn build", "yarn test",
        "next dev", "next build", "next start",
    )),
    "vue": ("Vue.js project", ("package.json", "vue.config.js"), (
        "npm run serve", "yarn serve", "vue-cli-service",
    )),
    "node": ("Node.js project", ("package.json",), (
        "npm run", "npm test", "npm install", "npm update", "npm audit",
        "yarn run", "yarn install", "yarn upgrade",
    )),
    "python": ("Python project", ("requirements.txt", "pyproject.toml", "setup.py", "manage.py"), (
        "python -m", "python3 -m", "pip install -r", "pip3 install -r", "pytest",
        "python manage.py", "python3 manage.py", "uvicorn", "gunicorn", "flask run", "django-admin",
    )),
    "spring": ("Spring Boot project", ("pom.xml", "build.gradle"), (
        "./gradlew bootrun", "./mvnw spring-boot:run", "gradle bootrun", "mvn spring-boot:run",
    )),
    "java": ("Java project", ("pom.xml", "build.gradle", "build.gradle.kts"), (
        "mvn compile", "mvn test", "mvn package", "mvn install",
        "gradle build", "gradle test", "gradle run", "./gradlew", "./mvnw",
    )),
    "go": ("Go project", ("go.mod",), (
        "go run", "go build", "go test", "go mod tidy", "go mod download", "go install",
    )),
    "rust": ("Rust project", ("Cargo.toml",), (
        "cargo run", "cargo build", "cargo test", "cargo check", "cargo update", "cargo install",
    )),
    "angular": ("Angular project", ("angular.json", "package.json"), (
        "ng serve", "ng build", "ng test", "ng e2e", "ng generate", "ng add",
    )),
    "docker": ("Docker project", ("Dockerfile", "docker-compose.yml", "docker-compose.yaml"), (
        "docker-compose up", "docker-compose build", "docker-compose down", "docker build .",
        "docker run",
    )),
    "generic": ("project directory", (), (
        "make", "cmake", "dotnet run", "dotnet build", "dotnet test",
        "composer install", "composer update", "php artisan",
        "bundle install", "bundle exec", "rails server", "rails console",
        "swift run", "swift build", "swift test",
    )),
}


def _prefix_matches(command: str, prefix: str) -> bool:
    # Single words and multi-word prefixes alike must end on a word boundary
    return command == prefix or command.startswith(prefix + " ")


def required_project(command: str) -> ProjectRequirement | None:
    """Return the project requirement a command triggers, if any.

    Tables are checked in declaration order, so more specific toolchains
    (React before plain Node, Spring before plain Java) win.
    """
    normalized = " ".join(normalize_command(command).lower().split())
    if not normalized:
        return None
    for toolchain, (project_type, markers, prefixes) in PROJECT_REQUIREMENTS.items():
        for prefix in prefixes:
            if _prefix_matches(normalized, prefix):
                return ProjectRequirement(
                    toolchain=toolchain,
                    project_type=project_type,
                    markers=markers,
                    prefix=prefix,
                )
    return None


# ── Dev-server start intents ──────────────────────────────────────────────────

_DEV_SERVER_INTENTS = (
    re.compile(r"^flutter\s+run\b.*\s-d\s+(?:web(?:-server)?|chrome)\b"),
    re.compile(r"^flutter\s+web\b"),
    re.compile(r"^start\s+(?:flutter\s+web\s+app|dev\s+server)\b"),
)

_PORT_FLAG = re.compile(r"--(?:web-)?port[=\s]+(\d{2,5})")


def dev_server_intent(command: str) -> int | None:
    """If the command asks to start a dev server, return the requested port (0 = default)."""
    normalized = " ".join(normalize_command(command).lower().split())
    if not any(pattern.search(normalized) for pattern in _DEV_SERVER_INTENTS):
        return None
    match = _PORT_FLAG.search(normalized)
    return int(match.group(1)) if match else 0
