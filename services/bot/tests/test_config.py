from common.config import Settings, _env_float, _env_int, _env_list


def test_defaults_are_valid():
    s = Settings()
    assert s.validate() == []
    assert s.cache_ttl_seconds == 168 * 3600
    assert not s.llm_enabled


def test_validate_reports_every_problem():
    s = Settings(cache_ttl_hours=0, scraper_rate=0, max_messages_per_reply=6, warmup_modules=("id", "weather"))
    problems = s.validate()
    assert len(problems) == 4
    assert any("weather" in p for p in problems)


def test_line_credentials_required_for_the_server():
    problems = Settings().validate(require_line=True)
    assert problems == ["LINE_CHANNEL_SECRET is required", "LINE_CHANNEL_ACCESS_TOKEN is required"]
    assert Settings(line_channel_secret="s", line_channel_access_token="t").validate(require_line=True) == []


def test_env_helpers(monkeypatch):
    monkeypatch.setenv("WARMUP_MODULES", " ID, contact ,, Course ")
    assert _env_list("WARMUP_MODULES", ("program",)) == ("id", "contact", "course")
    monkeypatch.delenv("WARMUP_MODULES")
    assert _env_list("WARMUP_MODULES", ("program",)) == ("program",)

    monkeypatch.setenv("SCRAPER_WORKERS", "many")
    assert _env_int("SCRAPER_WORKERS", 5) == 5
    monkeypatch.setenv("SCRAPER_RATE", "2.5")
    assert _env_float("SCRAPER_RATE", 0.5) == 2.5
