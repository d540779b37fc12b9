import json

from app.models.generation import ArtifactReference, NoArtifact, OutputKind
from app.services.normalizer import (
    collect_artifacts,
    is_video_reference,
    normalize_artifact,
    pick_video_artifact,
)


def test_video_preferred_over_earlier_image():
    output = {
        "images": [{"filename": "preview.png", "subfolder": ""}],
        "gifs": [{"filename": "scene_00001.mp4?download=1", "subfolder": "output"}],
    }

    artifact = pick_video_artifact(output)

    assert isinstance(artifact, ArtifactReference)
    assert artifact.value == "scene_00001.mp4?download=1"
    assert artifact.kind == "name"
    assert artifact.media == OutputKind.VIDEO
    assert artifact.metadata == {"subfolder": "output"}


def test_video_url_with_query_string():
    assert is_video_reference("https://cdn.example.com/a/b/clip.webm?sig=abc&x=.png")
    assert is_video_reference("clip.MOV")
    assert not is_video_reference("https://cdn.example.com/frame.png?v=clip.mp4")


def test_message_envelope_is_unwrapped():
    raw = {
        "message": json.dumps(
            {"outputs": {"42": {"videos": [{"type": "s3_url", "data": "https://bucket.example.com/out.mp4"}]}}}
        )
    }

    artifact = pick_video_artifact(raw)

    assert isinstance(artifact, ArtifactReference)
    assert artifact.value == "https://bucket.example.com/out.mp4"
    assert artifact.is_url
    assert artifact.metadata.get("public") is True


def test_images_only_yields_no_artifact_with_snippet():
    raw = {"images": [{"filename": "still.png"}], "status": "ok"}

    artifact = pick_video_artifact(raw)

    assert isinstance(artifact, NoArtifact)
    assert "still.png" in artifact.snippet
    assert len(artifact.snippet) <= 500


def test_depth_limit_stops_recursion():
    nested = {"output": "deep.mp4"}
    for _ in range(10):
        nested = {"result": nested}

    assert collect_artifacts(nested) == []
    assert isinstance(pick_video_artifact(nested), NoArtifact)


def test_normalize_artifact_shapes():
    assert normalize_artifact("https://x.test/v.mp4").is_url
    assert normalize_artifact({"name": "a.webm"}).value == "a.webm"
    assert normalize_artifact({"path": "/tmp/out.avi"}).media == OutputKind.VIDEO
    assert normalize_artifact({"unrelated": 1}) is None
    assert normalize_artifact("   ") is None
