from gitdeck.config import (
    AppConfig,
    load_config,
    merge_settings,
    normalize_string_list,
    parse_settings,
)
from gitdeck.models import DEFAULT_IGNORE_PATTERNS, GuestRoot, Settings


def test_normalize_string_list() -> None:
    assert normalize_string_list(None) == []
    assert normalize_string_list("node_modules") == ["node_modules"]
    assert normalize_string_list("  ") == []
    assert normalize_string_list(["dist", "", None, "build"]) == [
        "dist",
        "build",
    ]


def test_load_config_from_path(tmp_path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        "state_path: ~/gitdeck-state.json\n"
        "guest_bridge: /mnt/c/Windows/System32/wsl.exe\n"
        "history_limit: 10\n"
        "scan_max_depth: 3\n"
        "fetch_timeout: 60\n"
        "status_timeout: -5\n"
        "terminal_command: kitty --directory <path>\n"
        "log_level: debug\n",
        encoding="utf-8",
    )

    config = load_config(str(config_path))

    assert config.state_path.endswith("gitdeck-state.json")
    assert not config.state_path.startswith("~")
    assert config.guest_bridge == "/mnt/c/Windows/System32/wsl.exe"
    assert config.history_limit == 10
    assert config.scan_max_depth == 3
    assert config.fetch_timeout == 60.0
    assert config.status_timeout == AppConfig().status_timeout
    assert config.terminal_command == "kitty --directory <path>"
    assert config.log_level == "DEBUG"


def test_load_config_missing_or_invalid_falls_back(tmp_path) -> None:
    assert load_config(str(tmp_path / "absent.yaml")) == AppConfig()

    broken = tmp_path / "broken.yaml"
    broken.write_text("history_limit: [unclosed\n", encoding="utf-8")
    assert load_config(str(broken)) == AppConfig()


def test_parse_settings_defaults() -> None:
    settings = parse_settings(None)

    assert settings == Settings()
    assert settings.ignore_patterns == DEFAULT_IGNORE_PATTERNS
    assert settings.refresh_interval_seconds == 180
    assert settings.fetch_on_refresh is True


def test_parse_settings_coerces_values() -> None:
    settings = parse_settings(
        {
            "native_roots": "/home/me/src",
            "guest_roots": [
                {"id": "r1", "guest_id": "Ubuntu", "path": "/home/me/code"},
                {"guest_id": "", "path": "/skipped"},
                "not-a-root",
            ],
            "refresh_interval_seconds": "10",
            "fetch_on_refresh": "no",
            "editor_command_guest": "   ",
        }
    )

    assert settings.native_roots == ("/home/me/src",)
    assert settings.guest_roots == (GuestRoot("r1", "Ubuntu", "/home/me/code"),)
    assert settings.refresh_interval_seconds == 30
    assert settings.fetch_on_refresh is False
    assert settings.editor_command_guest == Settings().editor_command_guest


def test_merge_settings_only_touches_given_keys() -> None:
    base = Settings(native_roots=("/a",), refresh_interval_seconds=300)

    merged = merge_settings(base, {"ignore_patterns": ["vendor"], "bogus": 1})

    assert merged.native_roots == ("/a",)
    assert merged.refresh_interval_seconds == 300
    assert merged.ignore_patterns == ("vendor",)


def test_settings_round_trip_through_dict() -> None:
    settings = Settings(
        native_roots=("/a", "/b"),
        guest_roots=(GuestRoot("r1", "Debian", "/srv"),),
        ignored_repositories=("native:/a/x",),
    )

    assert parse_settings(settings.to_dict()) == settings
