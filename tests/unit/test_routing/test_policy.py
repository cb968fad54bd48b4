"""Tests for the routing lookup tables — pure functions, no I/O."""

from __future__ import annotations

import pytest

from devrelay.routing.policy import (
    HEAVY,
    LIGHT,
    classify,
    dev_server_intent,
    normalize_command,
    required_project,
)


# ── Normalization ─────────────────────────────────────────────────────────────


@pytest.mark.parametrize("glyph", ["‒", "–", "—", "―", "−"])
def test_dash_glyphs_become_double_hyphen(glyph):
    assert normalize_command(f"flutter {glyph}version") == "flutter --version"


def test_normalize_strips_and_handles_none():
    assert normalize_command("  ls  ") == "ls"
    assert normalize_command(None) == ""


# ── Classification ────────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "command",
    [
        "flutter build apk",
        "FLUTTER BUILD APK",
        "   flutter build apk   ",
        "npm install",
        "python3.12 -m venv .venv",
        "/usr/bin/python3 app.py",
        "cd app && flutter build web",
        "./gradlew assembleDebug",
        "cargo build --release",
        "apt-get install -y curl",
    ],
)
def test_catalogued_commands_are_heavy(command):
    assert classify(command).route == HEAVY


@pytest.mark.parametrize("command", ["ls -la", "cat README.md", "git status", "echo hello", "mkdir src", "test -f x"])
def test_other_commands_are_light(command):
    decision = classify(command)
    assert decision.route == LIGHT
    assert decision.reason == "default"


def test_classification_reports_category_and_token():
    decision = classify("xcodebuild -scheme App")
    assert decision.category == "mobile_sdk"
    assert decision.matched == "xcodebuild"
    assert decision.reason == "catalogue"


def test_versioned_runtime_category():
    assert classify("pip3.11 install flask").category == "interpreted_runtime"


def test_force_heavy_overrides():
    decision = classify("ls", force_heavy=True)
    assert decision.route == HEAVY
    assert decision.reason == "forced"


def test_substring_is_not_a_match():
    # "gopher" contains "go", "nodes" contains "node"
    assert classify("cat gopher.txt nodes.txt").route == LIGHT


# ── Project requirements ──────────────────────────────────────────────────────


@pytest.mark.parametrize(
    ("command", "toolchain"),
    [
        ("flutter build apk", "flutter"),
        ("npm start", "react"),
        ("npm run dev", "node"),
        ("npm run serve", "vue"),
        ("./gradlew bootRun", "spring"),
        ("./gradlew assembleDebug", "java"),
        ("go test ./...", "go"),
        ("cargo run", "rust"),
        ("python manage.py runserver", "python"),
        ("ng serve", "angular"),
        ("docker build .", "docker"),
        ("make", "generic"),
        ("dotnet build", "generic"),
    ],
)
def test_required_project(command, toolchain):
    requirement = required_project(command)
    assert requirement is not None
    assert requirement.toolchain == toolchain


@pytest.mark.parametrize("command", ["ls", "flutter --version", "npm --version", "makefile-lint", "python3 script.py", ""])
def test_no_requirement(command):
    assert required_project(command) is None


def test_requirement_message():
    requirement = required_project("flutter build apk")
    message = requirement.message("flutter build apk")
    assert message.startswith("Repository required: Command 'flutter build apk' requires a Flutter project.")
    assert "pubspec.yaml" in message
    assert message.endswith("Please select a repository first or create a new project.")


# ── Dev-server intents ────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    ("command", "port"),
    [
        ("flutter run -d web-server --web-port=9090", 9090),
        ("flutter run -d chrome", 0),
        ("flutter web", 0),
        ("start flutter web app", 0),
        ("Start dev server", 0),
    ],
)
def test_dev_server_intent(command, port):
    assert dev_server_intent(command) == port


@pytest.mark.parametrize("command", ["flutter run", "flutter build web", "npm start", "ls"])
def test_not_a_dev_server_intent(command):
    assert dev_server_intent(command) is None
