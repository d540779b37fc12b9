import subprocess

import pytest

from app.clients import media as media_module
from app.clients.media import MediaToolkit


@pytest.fixture
def commands(monkeypatch):
    captured = []

    def fake_run(cmd, check, capture_output):
        captured.append(cmd)
        return subprocess.CompletedProcess(cmd, 0, b"", b"")

    monkeypatch.setattr(media_module.subprocess, "run", fake_run)
    return captured


def test_merge_mixes_narration_and_looped_music(commands, monkeypatch, tmp_path):
    toolkit = MediaToolkit()
    monkeypatch.setattr(toolkit, "duration", lambda path: 6.0)
    output = str(tmp_path / "final.mp4")

    result = toolkit.merge("scene.mp4", "voice.mp3", "music.mp3", output)

    assert result == output
    cmd = commands[0]
    graph = cmd[cmd.index("-filter_complex") + 1]
    assert "aloop=loop=-1" in graph and "atrim=0:6.000" in graph
    assert "volume=0.2" in graph
    assert "amix=inputs=2" in graph
    assert cmd[cmd.index("-c:v") + 1] == "copy"
    assert cmd[cmd.index("-b:a") + 1] == "192k"
    assert "-shortest" in cmd
    assert cmd[-1] == output


def test_merge_music_only_uses_louder_bed(commands, monkeypatch, tmp_path):
    toolkit = MediaToolkit()
    monkeypatch.setattr(toolkit, "duration", lambda path: 8.0)

    toolkit.merge("scene.mp4", None, "music.mp3", str(tmp_path / "out.mp4"))

    graph = commands[0][commands[0].index("-filter_complex") + 1]
    assert "volume=0.3" in graph
    assert "amix" not in graph


def test_merge_without_audio_is_noop(commands):
    assert MediaToolkit().merge("scene.mp4") == "scene.mp4"
    assert commands == []


def test_concatenate_writes_concat_list(commands, tmp_path):
    clips = [str(tmp_path / f"clip_{n}.mp4") for n in (1, 2, 3)]
    output = str(tmp_path / "scene.mp4")

    MediaToolkit().concatenate(clips, output)

    cmd = commands[0]
    list_path = cmd[cmd.index("-i") + 1]
    with open(list_path, encoding="utf-8") as handle:
        lines = handle.read().splitlines()
    assert lines == [f"file '{clip}'" for clip in clips]
    assert cmd[cmd.index("-f") + 1] == "concat"
    assert cmd[-1] == output


def test_ffmpeg_failure_is_runtime_error(monkeypatch, tmp_path):
    def failing_run(cmd, check, capture_output):
        raise subprocess.CalledProcessError(1, cmd, stderr=b"Invalid data found")

    monkeypatch.setattr(media_module.subprocess, "run", failing_run)

    with pytest.raises(RuntimeError, match="Invalid data found"):
        MediaToolkit().concatenate([str(tmp_path / "a.mp4"), str(tmp_path / "b.mp4")], str(tmp_path / "c.mp4"))


def test_normalize_adds_silent_track_to_mute_clip(commands, monkeypatch, tmp_path):
    toolkit = MediaToolkit()
    monkeypatch.setattr(toolkit, "has_audio", lambda path: False)
    output = str(tmp_path / "norm.mp4")

    toolkit.normalize("veo.mp4", output)

    cmd = commands[0]
    assert "anullsrc=channel_layout=stereo:sample_rate=44100" in cmd
    assert cmd[cmd.index("-vf") + 1].startswith("scale=1280:720")
    assert cmd[cmd.index("-c:v") + 1] == "libx264"
    assert cmd[cmd.index("-pix_fmt") + 1] == "yuv420p"
    assert cmd[-1] == output


def test_normalize_keeps_existing_audio(commands, monkeypatch, tmp_path):
    toolkit = MediaToolkit()
    monkeypatch.setattr(toolkit, "has_audio", lambda path: True)

    toolkit.normalize("narrated.mp4", str(tmp_path / "norm.mp4"))

    assert "lavfi" not in commands[0]
    assert "-map" not in commands[0]


def test_music_bed_mixes_under_scene_audio(commands, monkeypatch, tmp_path):
    toolkit = MediaToolkit()
    monkeypatch.setattr(toolkit, "duration", lambda path: 20.0)

    toolkit.add_music_bed("story.mp4", "music.mp3", str(tmp_path / "final.mp4"))

    cmd = commands[0]
    graph = cmd[cmd.index("-filter_complex") + 1]
    assert "atrim=0:20.000" in graph and "volume=0.2" in graph
    assert "[0:a][mus]amix=inputs=2:duration=first" in graph
