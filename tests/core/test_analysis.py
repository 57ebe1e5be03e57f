import dataclasses

import pytest

from damflow_core.assets.types import Specificity
from damflow_core.enrichment.analysis import (
    AnalysisEngine,
    AnalysisInput,
    flatten_frames,
    keyframe_fractions,
)
from damflow_core.enrichment.client import parse_json_object
from damflow_core.enrichment.prompts import (
    PALETTE,
    normalize_colors,
    normalize_tags,
    palette_color,
)
from damflow_core.enrichment.transcribe import GIF_TRANSCRIPT
from damflow_core.errors import PermanentError
from damflow_core.ingestion.media import MediaInfo, probe


def _input(path, mime, tmp_path, **kwargs) -> AnalysisInput:
    return AnalysisInput(
        asset_id="asset-1",
        local_path=str(path),
        mime_type=mime,
        info=kwargs.pop("info", MediaInfo()),
        scratch_dir=str(tmp_path),
        **kwargs,
    )


def _image_parts(call) -> int:
    content = call["content"]
    if isinstance(content, str):
        return 0
    return sum(1 for part in content if part["type"] == "image_url")


def test_image_general_analysis(config, fake_client, media, tmp_path):
    engine = AnalysisEngine(config, fake_client)
    ai_data = engine.analyze(_input(media.image(), "image/jpeg", tmp_path))

    assert 8 <= len(ai_data.tags) <= 10
    assert ai_data.colors == ["Blue", "Red", "Green"]
    assert ai_data.asset_type == "image"
    assert ai_data.educational_context == "Sales onboarding"
    call = fake_client.calls[0]
    assert call["temperature"] == pytest.approx(0.4)
    assert call["model"] == config.vision_model_name
    assert _image_parts(call) == 1


def test_image_high_specificity_returns_more_tags(
    config, fake_client, media, tmp_path
):
    engine = AnalysisEngine(config, fake_client)
    ai_data = engine.analyze(
        _input(media.image(), "image/jpeg", tmp_path, specificity=Specificity.HIGH)
    )
    assert 20 <= len(ai_data.tags) <= 25


def test_creativity_overrides_temperature(config, fake_client, media, tmp_path):
    engine = AnalysisEngine(config, fake_client)
    engine.analyze(_input(media.image(), "image/jpeg", tmp_path, creativity=0.9))
    assert fake_client.calls[0]["temperature"] == pytest.approx(0.9)


def test_missing_colors_fall_back_to_dominant_color(
    config, fake_client, media, tmp_path
):
    fake_client.colors = ["plaid"]
    engine = AnalysisEngine(config, fake_client)
    ai_data = engine.analyze(
        _input(media.image(color=(220, 38, 38)), "image/jpeg", tmp_path)
    )
    assert ai_data.colors == ["Red"]


def test_unknown_keys_are_preserved(config, fake_client, media, tmp_path):
    fake_client.extra = {"mood": "calm"}
    engine = AnalysisEngine(config, fake_client)
    ai_data = engine.analyze(_input(media.image(), "image/jpeg", tmp_path))
    assert ai_data.extra == {"mood": "calm"}
    assert ai_data.to_dict()["mood"] == "calm"


def test_document_analysis_uses_extracted_text(
    config, fake_client, media, tmp_path
):
    engine = AnalysisEngine(config, fake_client)
    pdf = media.pdf(text="Forklift safety refresher for warehouse staff")
    ai_data = engine.analyze(_input(pdf, "application/pdf", tmp_path))

    assert ai_data.asset_type == "document"
    assert ai_data.topic == "Sales onboarding"
    call = fake_client.calls[0]
    assert isinstance(call["content"], str)
    assert "Forklift safety refresher" in call["content"]
    assert call["temperature"] == pytest.approx(0.2)


def test_document_without_text_is_permanent_failure(
    config, fake_client, media, tmp_path
):
    engine = AnalysisEngine(config, fake_client)
    with pytest.raises(PermanentError):
        engine.analyze(_input(media.pdf(text=""), "application/pdf", tmp_path))
    assert fake_client.calls == []


def test_gif_uses_visual_marker_and_keyframes(
    config, fake_client, media, tmp_path
):
    engine = AnalysisEngine(config, fake_client)
    gif = media.gif(frames=6)
    ai_data = engine.analyze(
        _input(gif, "image/gif", tmp_path, info=probe(str(gif), "image/gif", config))
    )

    assert ai_data.transcript == GIF_TRANSCRIPT
    assert ai_data.is_video_analysis is True
    assert fake_client.transcripts == []
    assert _image_parts(fake_client.calls[0]) == 2
    assert fake_client.calls[0]["temperature"] == pytest.approx(0.3)


def test_audio_is_analyzed_from_transcript(
    config, fake_client, media, tmp_path
):
    engine = AnalysisEngine(config, fake_client)
    clip = media.blob("talk.mp3")
    ai_data = engine.analyze(_input(clip, "audio/mpeg", tmp_path))

    assert fake_client.transcripts == [str(clip)]
    assert ai_data.transcript == fake_client.transcript
    assert ai_data.asset_type == "audio"
    assert ai_data.is_video_analysis is False
    assert isinstance(fake_client.calls[0]["content"], str)
    assert fake_client.transcript in fake_client.calls[0]["content"]


def test_audio_without_transcript_fails(config, fake_client, media, tmp_path):
    fake_client.transcribe_error = PermanentError("unsupported audio")
    engine = AnalysisEngine(config, fake_client)
    with pytest.raises(PermanentError):
        engine.analyze(_input(media.blob("talk.mp3"), "audio/mpeg", tmp_path))
    assert fake_client.calls == []


def test_oversized_audio_skips_transcription(
    config, fake_client, media, tmp_path
):
    small_limit = dataclasses.replace(config, transcribe_max_bytes=100)
    engine = AnalysisEngine(small_limit, fake_client)
    with pytest.raises(PermanentError):
        engine.analyze(_input(media.blob("talk.mp3"), "audio/mpeg", tmp_path))
    assert fake_client.transcripts == []


def test_unsupported_type_is_permanent(config, fake_client, media, tmp_path):
    engine = AnalysisEngine(config, fake_client)
    with pytest.raises(PermanentError):
        engine.analyze(_input(media.blob("data.zip"), "application/zip", tmp_path))


@pytest.mark.ffmpeg
def test_video_analysis_with_transcript(config, fake_client, media, tmp_path):
    engine = AnalysisEngine(config, fake_client)
    clip = media.video(seconds=5)
    info = probe(str(clip), "video/mp4", config)
    ai_data = engine.analyze(_input(clip, "video/mp4", tmp_path, info=info))

    assert ai_data.asset_type == "video"
    assert ai_data.is_video_analysis is True
    assert ai_data.transcript == fake_client.transcript
    assert _image_parts(fake_client.calls[0]) == 2


@pytest.mark.ffmpeg
def test_silent_video_is_not_transcribed(config, fake_client, media, tmp_path):
    engine = AnalysisEngine(config, fake_client)
    clip = media.video(seconds=2, audio=False)
    info = probe(str(clip), "video/mp4", config)
    ai_data = engine.analyze(_input(clip, "video/mp4", tmp_path, info=info))
    assert fake_client.transcripts == []
    assert ai_data.transcript is None


@pytest.mark.parametrize(
    ("duration", "expected"),
    [
        (None, [0.0]),
        (0.0, [0.0]),
        (30.0, [0.2, 0.8]),
        (60.0, [0.2, 0.8]),
        (61.0, [0.1, 0.5, 0.9]),
    ],
)
def test_keyframe_fractions(duration, expected):
    assert keyframe_fractions(duration) == expected


def test_flatten_frames_merges_per_frame_output():
    payload = {
        "frames": [
            {"tags": ["forklift"], "description": "Loading dock", "colors": ["Red"]},
            {"tags": ["helmet"], "description": "Safety briefing"},
            "garbage",
        ],
        "instructionalApproach": "Demo",
    }
    flattened = flatten_frames(payload)
    assert flattened["tags"] == ["forklift", "helmet"]
    assert flattened["colors"] == ["Red"]
    assert flattened["description"] == "Loading dock Safety briefing"
    assert flattened["instructionalApproach"] == "Demo"
    assert "frames" not in flattened


def test_parse_json_object_tolerates_fences():
    assert parse_json_object('```json\n{"tags": ["a"]}\n```') == {"tags": ["a"]}
    with pytest.raises(PermanentError):
        parse_json_object("no json here")
    with pytest.raises(PermanentError):
        parse_json_object("")
    with pytest.raises(PermanentError):
        parse_json_object("{not valid}")


def test_normalize_colors_maps_into_palette():
    assert normalize_colors(["grey", "#ff0000", "Navy", "teal"]) == [
        "Gray",
        "Red",
        "Blue",
    ]
    assert normalize_colors("red, light blue") == ["Red", "Blue"]
    assert normalize_colors(["plaid", 7, None]) == []
    assert normalize_colors(None) == []
    for value in ("crimson red", "#123456", "WHITE"):
        assert palette_color(value) in PALETTE


def test_normalize_tags_dedupes_and_caps():
    assert normalize_tags(["Safety", " safety ", "fork  lift", 3, ""], 10) == [
        "Safety",
        "fork lift",
    ]
    assert normalize_tags([f"t{i}" for i in range(30)], 25) == [
        f"t{i}" for i in range(25)
    ]
    assert normalize_tags("a, b", 10) == ["a", "b"]
