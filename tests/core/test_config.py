import pytest

from damflow_core.config import Config, get_config


def test_config_defaults(monkeypatch):
    for name in (
        "THUMBNAIL_MAX_EDGE",
        "SCRUB_FRAME_COUNT",
        "SCRUB_FRAME_WIDTH",
        "VIDEO_THUMBNAIL_POSITION",
        "VISION_MODEL_NAME",
        "EMBEDDING_MODEL_NAME",
        "TRANSCRIBE_MAX_BYTES",
        "TRASH_RETENTION_DAYS",
        "VECTOR_MATCH_DISTANCE",
        "RELATED_MAX_DISTANCE",
        "SEARCH_FALLBACK_LIMIT",
    ):
        monkeypatch.delenv(name, raising=False)

    cfg = Config.from_env()
    assert cfg.thumbnail_max_edge == 400
    assert cfg.scrub_frame_count == 10
    assert cfg.scrub_frame_width == 320
    assert cfg.video_thumbnail_position == 0.2
    assert cfg.vision_model_name == "gpt-4o-mini"
    assert cfg.embedding_model_name == "text-embedding-3-small"
    assert cfg.transcribe_max_bytes == 25 * 1024 * 1024
    assert cfg.trash_retention_days == 30
    assert cfg.vector_match_distance == 0.45
    assert cfg.related_max_distance == 0.60
    assert cfg.search_fallback_limit == 20
    assert cfg.public_url_base is None
    assert cfg.public_url_for("thumbnails/a.jpg") is None


def test_config_overrides(monkeypatch):
    monkeypatch.setenv("PUBLIC_URL_BASE", "https://cdn.example.com/assets/")
    monkeypatch.setenv("SCRUB_FRAME_COUNT", "6")
    monkeypatch.setenv("MODEL_CALLS_PER_MIN", "30")
    monkeypatch.setenv("TRASH_RETENTION_DAYS", "7")

    cfg = Config.from_env()
    assert cfg.scrub_frame_count == 6
    assert cfg.model_calls_per_min == 30
    assert cfg.trash_retention_days == 7
    assert (
        cfg.public_url_for("/thumbnails/a.jpg")
        == "https://cdn.example.com/assets/thumbnails/a.jpg"
    )


def test_config_requires_core_settings(monkeypatch):
    monkeypatch.delenv("STORAGE_ROOT", raising=False)
    monkeypatch.delenv("DATABASE_PATH", raising=False)
    with pytest.raises(ValueError) as excinfo:
        Config.from_env()
    assert "STORAGE_ROOT" in str(excinfo.value)
    assert "DATABASE_PATH" in str(excinfo.value)


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("PUBLIC_URL_BASE", "cdn.example.com"),
        ("VIDEO_THUMBNAIL_POSITION", "1.5"),
        ("SCRUB_FRAME_COUNT", "0"),
        ("MAX_RAW_BYTES", "lots"),
        ("FFMPEG_TIMEOUT_S", "soon"),
    ],
)
def test_config_rejects_invalid_values(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        Config.from_env()


def test_get_config_is_cached():
    assert get_config() is get_config()
    get_config.cache_clear()
    assert get_config() == get_config()
